"""
Strategy contract.

Every strategy is a pure function of a candle history and its own parameters.
Subclasses describe a single bar (`signals_at`); the base class decides which
bars are scanned for the requested `ExecutionMode`:

    BACKTEST  every bar with enough lookback, signals are historical
    SCREEN    the last bar only, signals are actionable
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from quantlab.models import Candle, RawSignal, Side


class ExecutionMode(str, Enum):
    BACKTEST = "BACKTEST"
    SCREEN = "SCREEN"


class InvalidParameterError(ValueError):
    """Raised before any scanning when a strategy parameter is out of range."""


_TRUE = {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class StrategyParams:
    """Named numeric/boolean options with typed, defaulted accessors."""

    values: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def of(cls, **values: Any) -> "StrategyParams":
        return cls(dict(values))

    def get_int(self, key: str, default: int) -> int:
        value = self.values.get(key)
        if value is None:
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    def get_float(self, key: str, default: float) -> float:
        value = self.values.get(key)
        if value is None:
            return default
        try:
            return float(value)
        except (TypeError, ValueError):
            return default

    def get_bool(self, key: str, default: bool) -> bool:
        value = self.values.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in _TRUE

    def get_str(self, key: str, default: str) -> str:
        value = self.values.get(key)
        return default if value is None else str(value)

    def __contains__(self, key: object) -> bool:
        return key in self.values


@dataclass(frozen=True)
class StrategyResult:
    signals: Tuple[RawSignal, ...] = ()
    is_actionable: bool = False

    @classmethod
    def empty(cls, is_actionable: bool = False) -> "StrategyResult":
        return cls((), is_actionable)

    @property
    def is_empty(self) -> bool:
        return not self.signals

    def __len__(self) -> int:
        return len(self.signals)


@dataclass(frozen=True)
class StrategyMetadata:
    code: str
    name: str
    description: str
    min_candles: int


class Strategy(ABC):
    """Base class for all signal strategies."""

    code: str = ""
    name: str = ""
    description: str = ""

    @abstractmethod
    def validate_params(self, params: StrategyParams) -> None:
        """Raise InvalidParameterError for out-of-range parameters."""

    @abstractmethod
    def min_candles(self, params: Optional[StrategyParams] = None) -> int:
        """Minimum history needed to evaluate the last bar."""

    @abstractmethod
    def signals_at(self, candles: Sequence[Candle], index: int, params: StrategyParams) -> List[RawSignal]:
        """Signals triggered on `candles[index]`, using only `candles[:index + 1]`."""

    def evaluate(
        self,
        candles: Sequence[Candle],
        mode: ExecutionMode,
        params: Optional[StrategyParams] = None,
    ) -> StrategyResult:
        params = params or StrategyParams()
        self.validate_params(params)

        required = self.min_candles(params)
        if len(candles) < required:
            return StrategyResult.empty(False)

        if mode == ExecutionMode.SCREEN:
            latest = self.signals_at(candles, len(candles) - 1, params)
            return StrategyResult(tuple(latest), bool(latest))

        found: List[RawSignal] = []
        for i in range(required - 1, len(candles)):
            found.extend(self.signals_at(candles, i, params))
        return StrategyResult(tuple(found), False)

    def metadata(self) -> StrategyMetadata:
        return StrategyMetadata(
            code=self.code,
            name=self.name,
            description=self.description,
            min_candles=self.min_candles(),
        )

    def _signal(
        self,
        candle: Candle,
        side: Side,
        *,
        stop_loss: Optional[float],
        target_price: Optional[float],
    ) -> RawSignal:
        return RawSignal(
            symbol=candle.symbol,
            signal_date=candle.trade_date,
            side=side,
            entry_price=float(candle.close),
            strategy_code=self.code,
            stop_loss=stop_loss,
            target_price=target_price,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r})"


def require(condition: bool, message: str) -> None:
    if not condition:
        raise InvalidParameterError(message)


def params_from_mapping(values: Optional[Dict[str, Any]]) -> StrategyParams:
    return StrategyParams(dict(values or {}))
