import pytest

from keplermeter.stats import (
    UINT64_MAX,
    StatOverflowError,
    UInt64Stat,
    UInt64StatCollection,
)


def test_add_new_delta_accumulates():
    stat = UInt64Stat()
    stat.add_new_delta(7)
    stat.add_new_delta(5)
    assert stat.delta == 7 + 5
    assert stat.aggr == 7 + 5


def test_set_new_delta_replaces_delta_but_accumulates_aggr():
    stat = UInt64Stat()
    stat.set_new_delta(7)
    stat.set_new_delta(5)
    assert stat.delta == 5
    assert stat.aggr == 7 + 5


def test_zero_delta_is_ignored():
    stat = UInt64Stat(aggr=3, delta=2)
    stat.add_new_delta(0)
    stat.set_new_delta(0)
    assert (stat.aggr, stat.delta) == (3, 2)


def test_reset_delta_keeps_aggregate():
    stat = UInt64Stat()
    stat.add_new_delta(9)
    stat.reset_delta_values()
    assert stat.delta == 0
    assert stat.aggr == 9


def test_set_new_aggr_first_read_has_no_delta():
    stat = UInt64Stat()
    stat.set_new_aggr(10)
    assert stat.aggr == 10
    assert stat.delta == 0


def test_set_new_aggr_second_read_computes_delta():
    stat = UInt64Stat()
    stat.set_new_aggr(10)
    stat.set_new_aggr(20)
    assert stat.aggr == 20
    assert stat.delta == 10


def test_set_new_aggr_decrease_keeps_delta():
    stat = UInt64Stat()
    stat.set_new_aggr(10)
    stat.set_new_aggr(20)
    stat.set_new_aggr(15)
    assert stat.aggr == 15
    assert stat.delta == 10


def test_set_new_aggr_ignores_zero_and_unchanged():
    stat = UInt64Stat(aggr=20, delta=10)
    stat.set_new_aggr(0)
    stat.set_new_aggr(20)
    assert (stat.aggr, stat.delta) == (20, 10)


def test_set_new_aggr_overflow_raises_and_resets():
    stat = UInt64Stat(aggr=5)
    with pytest.raises(StatOverflowError):
        stat.set_new_aggr(UINT64_MAX)
    assert stat.aggr == 0


def test_add_new_delta_overflow_raises_and_resets():
    stat = UInt64Stat(aggr=UINT64_MAX - 4)
    with pytest.raises(StatOverflowError, match="overflowed"):
        stat.add_new_delta(4)
    assert stat.aggr == 0
    assert stat.delta == 4


def test_stat_str():
    assert str(UInt64Stat(aggr=7, delta=5)) == "5 (7)"


def test_collection_set_aggr_stat_creates_and_updates():
    coll = UInt64StatCollection()
    coll.set_aggr_stat("containerA", 10)
    coll.set_aggr_stat("containerA", 20)
    assert list(coll.stat) == ["containerA"]
    assert coll.stat["containerA"].delta == 10
    assert coll.sum_all_aggr_values() == 20


def test_collection_sums_across_keys():
    coll = UInt64StatCollection()
    coll.add_delta_stat("0", 3)
    coll.add_delta_stat("1", 4)
    coll.add_delta_stat("1", 6)
    assert coll.sum_all_delta_values() == 3 + 4 + 6
    assert coll.sum_all_aggr_values() == coll.sum_all_delta_values()


def test_collection_set_delta_stat_replaces():
    coll = UInt64StatCollection()
    coll.set_delta_stat("sensor0", 8)
    coll.set_delta_stat("sensor0", 2)
    assert coll.stat["sensor0"].delta == 2
    assert coll.stat["sensor0"].aggr == 8 + 2


def test_collection_reset_delta_values():
    coll = UInt64StatCollection()
    coll.add_delta_stat("a", 3)
    coll.add_delta_stat("b", 4)
    coll.reset_delta_values()
    assert coll.sum_all_delta_values() == 0
    assert coll.sum_all_aggr_values() == 3 + 4


def test_collection_overflow_is_swallowed():
    coll = UInt64StatCollection()
    coll.set_aggr_stat("k", 5)
    coll.set_aggr_stat("k", UINT64_MAX)
    assert coll.stat["k"].aggr == 0


def test_collection_str():
    coll = UInt64StatCollection({"a": UInt64Stat(aggr=9, delta=4)})
    assert str(coll) == "4 (9)"


def test_empty_collection_sums():
    coll = UInt64StatCollection()
    assert coll.sum_all_delta_values() == 0
    assert coll.sum_all_aggr_values() == 0