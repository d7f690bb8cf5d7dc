from quantlab.strategy.base import (
    ExecutionMode,
    InvalidParameterError,
    Strategy,
    StrategyMetadata,
    StrategyParams,
    StrategyResult,
)
from quantlab.strategy.registry import StrategyNotFoundError, StrategyRegistry, default_registry

__all__ = [
    "ExecutionMode",
    "InvalidParameterError",
    "Strategy",
    "StrategyMetadata",
    "StrategyParams",
    "StrategyResult",
    "StrategyNotFoundError",
    "StrategyRegistry",
    "default_registry",
]
