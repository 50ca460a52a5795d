"""Counters that track a per-interval delta and a running aggregate."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

UINT64_MAX = (1 << 64) - 1


class StatOverflowError(OverflowError):
    """The aggregated value reached the 64-bit limit and was reset to 0."""

    def __init__(self) -> None:
        super().__init__("the aggregated value has overflowed")


@dataclass
class UInt64Stat:
    """A 64-bit unsigned counter with a delta and an aggregate."""

    aggr: int = 0
    delta: int = 0

    def __str__(self) -> str:
        return f"{self.delta} ({self.aggr})"

    def reset_delta_values(self) -> None:
        self.delta = 0

    def add_new_delta(self, new_delta: int) -> None:
        """Add a freshly read delta to the current delta."""
        self.set_new_delta_value(new_delta, True)

    def set_new_delta(self, new_delta: int) -> None:
        """Replace the current delta with a freshly read delta."""
        self.set_new_delta_value(new_delta, False)

    def set_new_delta_value(self, new_delta: int, accumulate: bool) -> None:
        """Sum or replace the delta and add it to the aggregate.

        A zero delta is ignored. Raises StatOverflowError when the aggregate
        reaches the 64-bit maximum, after resetting it to 0.
        """
        if new_delta == 0:
            return
        if accumulate:
            self.delta = (self.delta + new_delta) & UINT64_MAX
        else:
            self.delta = new_delta
        self.aggr = (self.aggr + new_delta) & UINT64_MAX
        if self.aggr == UINT64_MAX:
            self.aggr = 0
            raise StatOverflowError()

    def set_new_aggr(self, new_aggr: int) -> None:
        """Record a freshly read aggregate and derive the delta from the previous one.

        Zero or unchanged values are ignored. Raises StatOverflowError when the
        value is the 64-bit maximum, after resetting the aggregate to 0.
        """
        if new_aggr == 0 or new_aggr == self.aggr:
            return
        if new_aggr == UINT64_MAX:
            self.aggr = 0
            raise StatOverflowError()
        old_aggr = self.aggr
        self.aggr = new_aggr
        if old_aggr > 0 and new_aggr > old_aggr:
            self.delta = new_aggr - old_aggr


@dataclass
class UInt64StatCollection:
    """Named UInt64Stat counters, e.g. one per package or sensor."""

    stat: dict[str, UInt64Stat] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.sum_all_delta_values()} ({self.sum_all_aggr_values()})"

    def set_aggr_stat(self, key: str, new_aggr: int) -> None:
        try:
            self.stat.setdefault(key, UInt64Stat()).set_new_aggr(new_aggr)
        except StatOverflowError as err:
            log.debug("%s: %s", key, err)

    def add_delta_stat(self, key: str, new_delta: int) -> None:
        try:
            self.stat.setdefault(key, UInt64Stat()).add_new_delta(new_delta)
        except StatOverflowError as err:
            log.debug("%s: %s", key, err)

    def set_delta_stat(self, key: str, new_delta: int) -> None:
        try:
            self.stat.setdefault(key, UInt64Stat()).set_new_delta(new_delta)
        except StatOverflowError as err:
            log.debug("%s: %s", key, err)

    def sum_all_delta_values(self) -> int:
        return sum(s.delta for s in self.stat.values()) & UINT64_MAX

    def sum_all_aggr_values(self) -> int:
        return sum(s.aggr for s in self.stat.values()) & UINT64_MAX

    def reset_delta_values(self) -> None:
        for s in self.stat.values():
            s.reset_delta_values()