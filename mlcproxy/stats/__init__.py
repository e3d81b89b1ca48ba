"""
MLCProxy Statistics Module

Per-client traffic aggregation and the web interface that reports it.
"""

from mlcproxy.stats.aggregator import StatsAggregator
from mlcproxy.stats.app import create_stats_app

__all__ = [
    "StatsAggregator",
    "create_stats_app",
]
