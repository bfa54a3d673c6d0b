"""Health observation and classification."""

from .collector import ObservationCollector
from .evaluator import evaluate
from .rpc import ConsensusClient, ExecutionClient, parse_hex_quantity

__all__ = ["ObservationCollector", "evaluate", "ExecutionClient", "ConsensusClient", "parse_hex_quantity"]
