"""Balance and activity aggregation per (address, token)."""

from evm_indexer.aggregator.aggregator import StatsAggregator
from evm_indexer.aggregator.models import TransferEvent

__all__ = ["StatsAggregator", "TransferEvent"]
