"""Open-world grouping of sessions."""

from hidesis.world.aggregator import OpenWorldAggregator, aggregate

__all__ = ["OpenWorldAggregator", "aggregate"]
