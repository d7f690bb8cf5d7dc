"""
Trade lifecycle.

Signals:   PENDING -> EXECUTED | IGNORED   (both terminal)
Positions: OPEN -> CLOSED                  (exit reason STOP_LOSS, TARGET, TIME or MANUAL)

Transitions are applied with conditional updates in the store, so a second attempt
on a terminal row fails loudly instead of rewriting it. Batch checks fetch prices
per unit; a failing unit is logged and the batch moves on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Dict, List, Optional, Tuple

from quantlab.config import QuantlabConfig
from quantlab.market_data import MarketDataClient
from quantlab.models import (
    AllocationSnapshot,
    ExitReason,
    PendingSignal,
    Position,
    PositionStatus,
    Side,
    SignalStatus,
)
from quantlab.persistence import SqliteStore
from quantlab.scoring import r_multiple

log = logging.getLogger(__name__)


class LifecycleError(RuntimeError):
    pass


class SignalStateError(LifecycleError):
    def __init__(self, signal_id: int, status: SignalStatus, action: str) -> None:
        self.signal_id = signal_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} signal {signal_id}: status is {SignalStatus(status).value}, expected PENDING")


class PositionStateError(LifecycleError):
    def __init__(self, position_id: int, status: PositionStatus, action: str) -> None:
        self.position_id = position_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} position {position_id}: status is {PositionStatus(status).value}, expected OPEN")


class SignalNotFoundError(LookupError):
    def __init__(self, signal_id: int) -> None:
        self.signal_id = signal_id
        super().__init__(f"Signal {signal_id} not found")


class PositionNotFoundError(LookupError):
    def __init__(self, position_id: int) -> None:
        self.position_id = position_id
        super().__init__(f"Position {position_id} not found")


@dataclass
class BatchResult:
    """Per-run bookkeeping of a lifecycle batch."""

    processed: int = 0
    changed: List[int] = field(default_factory=list)
    failures: List[Tuple[Optional[int], str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


def entry_triggered(side: Side, current_price: float, entry_price: float) -> bool:
    if Side(side) == Side.BUY:
        return current_price >= entry_price
    return current_price <= entry_price


class TradeLifecycleManager:
    def __init__(
        self,
        store: SqliteStore,
        prices: MarketDataClient,
        cfg: QuantlabConfig | None = None,
        *,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._store = store
        self._prices = prices
        self._cfg = cfg or QuantlabConfig()
        self._today = today

    # -- signal transitions ----------------------------------------------------

    def execute_signal(
        self,
        signal_id: int,
        quantity: Optional[int] = None,
        entry_price: Optional[float] = None,
        *,
        on: Optional[date] = None,
    ) -> Position:
        """PENDING -> EXECUTED and open a position (quantity/price default to the signal's)."""
        if quantity is not None and int(quantity) <= 0:
            raise ValueError(f"quantity must be positive, got {quantity!r}")
        if entry_price is not None and not entry_price > 0:
            raise ValueError(f"entry_price must be positive, got {entry_price!r}")

        with self._store.transaction():
            signal = self._require_pending(signal_id, "execute")
            if not self._store.transition_signal(signal_id, SignalStatus.EXECUTED):
                raise SignalStateError(signal_id, self._require_signal(signal_id).status, "execute")
            position = self._store.insert_position(
                Position(
                    id=None,
                    symbol=signal.symbol,
                    entry_date=on or self._today(),
                    entry_price=float(entry_price if entry_price is not None else signal.entry_price),
                    quantity=int(quantity if quantity is not None else signal.quantity),
                    strategy_code=signal.strategy_code,
                    signal_id=signal.id,
                    stop_loss=signal.stop_loss,
                    target_price=signal.target_price,
                )
            )
        log.info(
            "Executed signal %d: %s x%d @ %.4f -> position %d",
            signal_id,
            position.symbol,
            position.quantity,
            position.entry_price,
            position.id,
        )
        return position

    def ignore_signal(self, signal_id: int) -> PendingSignal:
        with self._store.transaction():
            self._require_pending(signal_id, "ignore")
            if not self._store.transition_signal(signal_id, SignalStatus.IGNORED):
                raise SignalStateError(signal_id, self._require_signal(signal_id).status, "ignore")
        log.info("Ignored signal %d", signal_id)
        return self._require_signal(signal_id)

    def execute_allocation(self, snapshot: AllocationSnapshot, *, on: Optional[date] = None) -> BatchResult:
        """Execute every allocated signal with its allocated quantity and entry."""
        result = BatchResult()
        for item in snapshot.positions:
            if item.signal_id is None:
                continue
            result.processed += 1
            try:
                position = self.execute_signal(
                    item.signal_id,
                    quantity=item.quantity,
                    entry_price=item.entry_price or None,
                    on=on,
                )
            except (LifecycleError, LookupError, ValueError) as exc:
                self._log_failure(result, "lifecycle.execute_allocation", item.signal_id, item.symbol, exc)
                continue
            result.changed.append(int(position.id))
        return result

    # -- periodic checks -------------------------------------------------------

    def check_entry_triggers(self, *, on: Optional[date] = None) -> BatchResult:
        """Execute PENDING signals whose entry has been reached (BUY: price >= entry, SELL: price <= entry)."""
        result = BatchResult()
        for signal in self._store.pending_signals():
            result.processed += 1
            try:
                price = self._prices.get_price(signal.symbol)
                if not entry_triggered(signal.side, price, signal.entry_price):
                    continue
                position = self.execute_signal(int(signal.id), entry_price=price, on=on)
            except Exception as exc:
                self._log_failure(result, "lifecycle.entry_trigger", signal.id, signal.symbol, exc)
                continue
            result.changed.append(int(position.id))
        return result

    def update_unrealized_pnl(self) -> BatchResult:
        result = BatchResult()
        for position in self._store.open_positions():
            result.processed += 1
            try:
                price = self._prices.get_price(position.symbol)
                self.mark(position, price)
                if self._store.update_position_marks(position):
                    result.changed.append(int(position.id))
            except Exception as exc:
                self._log_failure(result, "lifecycle.update_pnl", position.id, position.symbol, exc)
        return result

    def check_stop_loss_and_targets(self, *, on: Optional[date] = None) -> BatchResult:
        """
        Close OPEN positions whose stop, target or holding period has been reached.

        A stop exit closes at the stop level and a target exit at the target level;
        when both are crossed the stop wins. TIME exits close at the current price.
        """
        on = on or self._today()
        result = BatchResult()
        for position in self._store.open_positions():
            result.processed += 1
            try:
                price = self._prices.get_price(position.symbol)
                exit_ = self._exit_for(position, price, on)
                if exit_ is None:
                    continue
                reason, exit_price = exit_
                self._close(position, exit_price, reason, on)
            except Exception as exc:
                self._log_failure(result, "lifecycle.check_exits", position.id, position.symbol, exc)
                continue
            result.changed.append(int(position.id))
        return result

    def manage_positions(self, *, on: Optional[date] = None) -> Dict[str, BatchResult]:
        """Refresh P&L, then exits, then entry triggers. Each step runs even if an earlier one failed."""
        steps: List[Tuple[str, Callable[[], BatchResult]]] = [
            ("update_pnl", self.update_unrealized_pnl),
            ("check_exits", lambda: self.check_stop_loss_and_targets(on=on)),
            ("entry_triggers", lambda: self.check_entry_triggers(on=on)),
        ]
        results: Dict[str, BatchResult] = {}
        for name, step in steps:
            try:
                results[name] = step()
            except Exception as exc:
                log.exception("Position management step %s failed", name)
                self._store.log_error(where=f"lifecycle.{name}", message=f"{type(exc).__name__}: {exc}")
                results[name] = BatchResult(failures=[(None, "", str(exc))])
        return results

    # -- positions -------------------------------------------------------------

    def close_position(
        self,
        position_id: int,
        exit_price: float,
        reason: ExitReason = ExitReason.MANUAL,
        *,
        on: Optional[date] = None,
    ) -> Position:
        if not exit_price > 0:
            raise ValueError(f"exit_price must be positive, got {exit_price!r}")
        position = self._store.get_position(position_id)
        if position is None:
            raise PositionNotFoundError(position_id)
        if position.status != PositionStatus.OPEN:
            raise PositionStateError(position_id, position.status, "close")
        return self._close(position, float(exit_price), ExitReason(reason), on or self._today())

    def profit_positions(self) -> List[Position]:
        return [p for p in self._store.open_positions() if p.current_price is not None and p.current_price > p.entry_price]

    def losing_positions(self) -> List[Position]:
        return [p for p in self._store.open_positions() if p.current_price is not None and p.current_price < p.entry_price]

    @staticmethod
    def mark(position: Position, price: float) -> Position:
        """Set current price, unrealized P&L/% and R-multiple on an OPEN position."""
        position.current_price = float(price)
        position.unrealized_pnl = (price - position.entry_price) * position.quantity
        position.unrealized_pnl_pct = (price - position.entry_price) / position.entry_price * 100.0
        if position.stop_loss is not None and position.target_price is not None and position.entry_price > position.stop_loss:
            position.r_multiple = r_multiple(position.entry_price, position.stop_loss, position.target_price)
        return position

    # -- internals -------------------------------------------------------------

    def _exit_for(self, position: Position, price: float, on: date) -> Optional[Tuple[ExitReason, float]]:
        if position.stop_loss is not None and position.stop_loss > 0 and price <= position.stop_loss:
            return ExitReason.STOP_LOSS, float(position.stop_loss)
        if position.target_price is not None and position.target_price > 0 and price >= position.target_price:
            return ExitReason.TARGET, float(position.target_price)
        max_days = self._cfg.max_holding_days
        if max_days > 0 and (on - position.entry_date).days >= max_days:
            return ExitReason.TIME, float(price)
        return None

    def _close(self, position: Position, exit_price: float, reason: ExitReason, on: date) -> Position:
        position.status = PositionStatus.CLOSED
        position.current_price = None
        position.exit_price = exit_price
        position.exit_date = on
        position.exit_reason = reason
        position.pnl = (exit_price - position.entry_price) * position.quantity
        position.pnl_pct = (exit_price - position.entry_price) / position.entry_price * 100.0
        position.unrealized_pnl = None
        position.unrealized_pnl_pct = None
        if position.stop_loss is not None and position.target_price is not None:
            position.r_multiple = r_multiple(position.entry_price, position.stop_loss, position.target_price)

        if not self._store.close_position(position):
            current = self._store.get_position(int(position.id))
            raise PositionStateError(int(position.id), current.status if current else PositionStatus.CLOSED, "close")
        log.info(
            "Closed position %d %s (%s) @ %.4f pnl=%.2f (%.2f%%)",
            position.id,
            position.symbol,
            reason.value,
            exit_price,
            position.pnl,
            position.pnl_pct,
        )
        return position

    def _require_signal(self, signal_id: int) -> PendingSignal:
        signal = self._store.get_signal(signal_id)
        if signal is None:
            raise SignalNotFoundError(signal_id)
        return signal

    def _require_pending(self, signal_id: int, action: str) -> PendingSignal:
        signal = self._require_signal(signal_id)
        if signal.status != SignalStatus.PENDING:
            raise SignalStateError(signal_id, signal.status, action)
        return signal

    def _log_failure(self, result: BatchResult, where: str, unit_id: Optional[int], symbol: str, exc: BaseException) -> None:
        log.error("%s failed for %s (id=%s): %s", where, symbol, unit_id, exc)
        result.failures.append((unit_id, symbol, str(exc)))
        self._store.log_error(where=where, message=f"{symbol} id={unit_id}: {type(exc).__name__}: {exc}")
