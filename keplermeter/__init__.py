"""Energy accounting for nodes, containers and processes, with Prometheus text export."""

__version__ = "0.1.0"

__all__ = [
    "config",
    "stats",
    "features",
    "process_metric",
    "container_metric",
    "node_metric",
    "descriptors",
    "exporter",
]