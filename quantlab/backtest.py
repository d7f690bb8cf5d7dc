"""
Walk-forward paper trading for historical signals.

Each BACKTEST signal is entered at its bar's close and walked over the following
bars: a close at or below the stop exits STOP_LOSS, a close at or above the
target exits TARGET, and after `max_holding_days` bars the position exits TIME.
All exits fill at the bar's close. Signals that never exit stay open and are
not reported.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Iterable, List, Optional

from quantlab.market_data import CandleStore
from quantlab.models import Candle, ExitReason, Position, PositionStatus, RawSignal
from quantlab.persistence import SqliteStore
from quantlab.scoring import r_multiple

log = logging.getLogger(__name__)


class PaperTradingSimulator:
    def __init__(self, candles: CandleStore, *, max_holding_days: int = 20, store: SqliteStore | None = None) -> None:
        self._candles = candles
        self._max_holding_days = max_holding_days
        self._store = store

    def simulate(self, signals: Iterable[RawSignal], *, until: Optional[date] = None, persist: bool = False) -> List[Position]:
        """Closed simulated positions ordered by exit date; persisted as simulated rows when asked."""
        closed: List[Position] = []
        ordered = sorted(signals, key=lambda s: (s.symbol, s.signal_date))
        for signal in ordered:
            history = self._candles.candles(signal.symbol, end_date=until)
            position = self.walk_forward(signal, history)
            if position is None:
                log.debug("%s %s: no exit before end of data", signal.symbol, signal.signal_date)
                continue
            closed.append(position)

        closed.sort(key=lambda p: (p.exit_date, p.symbol))
        if persist:
            if self._store is None:
                raise ValueError("persist=True requires a store")
            closed = [self._store.insert_position(p, simulated=True) for p in closed]
        log.info("Simulated %d signals: %d closed trades", len(ordered), len(closed))
        return closed

    def walk_forward(self, signal: RawSignal, history: List[Candle]) -> Optional[Position]:
        after = [c for c in history if c.trade_date > signal.signal_date]
        if not any(c.trade_date == signal.signal_date for c in history):
            log.warning("%s: no entry candle on %s", signal.symbol, signal.signal_date)
            return None

        stop, target = signal.stop_loss, signal.target_price
        for held, candle in enumerate(after, start=1):
            reason: Optional[ExitReason] = None
            if stop is not None and candle.close <= stop:
                reason = ExitReason.STOP_LOSS
            elif target is not None and candle.close >= target:
                reason = ExitReason.TARGET
            elif self._max_holding_days > 0 and held >= self._max_holding_days:
                reason = ExitReason.TIME
            if reason is not None:
                return self._closed(signal, candle, reason)
        return None

    @staticmethod
    def _closed(signal: RawSignal, exit_bar: Candle, reason: ExitReason) -> Position:
        entry, exit_price = signal.entry_price, float(exit_bar.close)
        return Position(
            id=None,
            symbol=signal.symbol,
            entry_date=signal.signal_date,
            entry_price=entry,
            quantity=signal.quantity,
            strategy_code=signal.strategy_code,
            stop_loss=signal.stop_loss,
            target_price=signal.target_price,
            status=PositionStatus.CLOSED,
            r_multiple=r_multiple(entry, signal.stop_loss, signal.target_price),
            exit_date=exit_bar.trade_date,
            exit_price=exit_price,
            exit_reason=reason,
            pnl=(exit_price - entry) * signal.quantity,
            pnl_pct=(exit_price - entry) / entry * 100.0,
        )
