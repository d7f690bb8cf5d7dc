"""
Domain types shared by screening, ensemble voting, ranking, allocation
and the trade lifecycle.

Prices are plain floats; quantities are whole shares.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Dict, List, Optional, Tuple


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class SignalStatus(str, Enum):
    PENDING = "PENDING"
    IGNORED = "IGNORED"
    EXECUTED = "EXECUTED"

    @property
    def is_terminal(self) -> bool:
        return self is not SignalStatus.PENDING


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class ExitReason(str, Enum):
    STOP_LOSS = "STOP_LOSS"
    TARGET = "TARGET"
    TIME = "TIME"
    MANUAL = "MANUAL"


@dataclass(frozen=True)
class Candle:
    """One end-of-day bar for one instrument."""
    symbol: str
    trade_date: date
    open: float
    high: float
    low: float
    close: float
    volume: int = 0

    @property
    def is_valid(self) -> bool:
        return self.high > 0 and self.low > 0 and self.close > 0 and self.volume >= 0

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open


@dataclass(frozen=True)
class RawSignal:
    """A single strategy's opinion on one instrument for one bar."""
    symbol: str
    signal_date: date
    side: Side
    entry_price: float
    strategy_code: str
    stop_loss: Optional[float] = None
    target_price: Optional[float] = None
    quantity: int = 1

    def with_strategy(self, strategy_code: str) -> "RawSignal":
        return replace(self, strategy_code=strategy_code)


@dataclass(frozen=True)
class EnsembleSignal:
    """
    Consensus signal for one symbol.

    `entry_price`, `stop_loss` and `target_price` are means over the contributing
    raw signals; a mean with no contributing values is 0.0 and means "unavailable".
    """
    symbol: str
    signal_date: date
    side: Side
    entry_price: float
    stop_loss: float
    target_price: float
    buy_votes: int
    total_strategies: int
    confidence_score: float
    strategy_votes: Dict[str, str] = field(default_factory=dict)
    rank_score: float = 0.0
    r_multiple: float = 0.0
    liquidity_score: float = 0.5
    volatility_fit: float = 0.5

    def to_pending_signal(self, strategy_code: str = "ENSEMBLE") -> "PendingSignal":
        return PendingSignal(
            id=None,
            symbol=self.symbol,
            signal_date=self.signal_date,
            side=self.side,
            entry_price=self.entry_price,
            stop_loss=self.stop_loss if self.stop_loss > 0 else None,
            target_price=self.target_price if self.target_price > 0 else None,
            strategy_code=strategy_code,
            confidence_score=self.confidence_score,
            rank_score=self.rank_score,
            r_multiple=self.r_multiple,
        )


@dataclass
class PendingSignal:
    """A persisted signal awaiting a decision (execute or ignore)."""
    id: Optional[int]
    symbol: str
    signal_date: date
    side: Side
    entry_price: float
    strategy_code: str
    stop_loss: Optional[float] = None
    target_price: Optional[float] = None
    quantity: int = 1
    confidence_score: Optional[float] = None
    status: SignalStatus = SignalStatus.PENDING
    rank_score: Optional[float] = None
    r_multiple: Optional[float] = None

    @classmethod
    def from_raw(cls, raw: RawSignal, *, confidence_score: Optional[float] = None) -> "PendingSignal":
        return cls(
            id=None,
            symbol=raw.symbol,
            signal_date=raw.signal_date,
            side=raw.side,
            entry_price=raw.entry_price,
            strategy_code=raw.strategy_code,
            stop_loss=raw.stop_loss,
            target_price=raw.target_price,
            quantity=raw.quantity,
            confidence_score=confidence_score,
        )


@dataclass
class Position:
    """A paper position opened from an executed signal."""
    id: Optional[int]
    symbol: str
    entry_date: date
    entry_price: float
    quantity: int
    strategy_code: str = ""
    signal_id: Optional[int] = None
    stop_loss: Optional[float] = None
    target_price: Optional[float] = None
    status: PositionStatus = PositionStatus.OPEN
    current_price: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    unrealized_pnl_pct: Optional[float] = None
    r_multiple: Optional[float] = None
    exit_date: Optional[date] = None
    exit_price: Optional[float] = None
    exit_reason: Optional[ExitReason] = None
    pnl: Optional[float] = None
    pnl_pct: Optional[float] = None

    @property
    def cost_basis(self) -> float:
        return self.entry_price * self.quantity

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN


@dataclass(frozen=True)
class AllocationPosition:
    symbol: str
    quantity: int
    capital_used: float
    risk_amount: float
    expected_r: float
    allocation_pct: float
    signal_id: Optional[int] = None
    entry_price: float = 0.0


@dataclass(frozen=True)
class AllocationSnapshot:
    run_date: date
    total_capital: float
    deployed_capital: float
    free_cash: float
    expected_r_multiple: float
    positions: Tuple[AllocationPosition, ...] = ()
    id: Optional[int] = None

    @property
    def symbols(self) -> List[str]:
        return [p.symbol for p in self.positions]
