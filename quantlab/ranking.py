"""
Signal ranking.

`rank_pending(run_date)` re-scores every PENDING signal of a date and stores the
rank score and R-multiple on each row. Inputs are read as of the signal date, so
re-running with unchanged data reproduces the same scores.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional

from quantlab.analytics import win_rate
from quantlab.config import QuantlabConfig
from quantlab.market_data import CandleStore
from quantlab.models import PendingSignal
from quantlab.persistence import SqliteStore
from quantlab.scoring import (
    RankingPath,
    average_true_range,
    liquidity_score,
    r_multiple,
    rank_score,
    volatility_fit,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignalScore:
    signal_id: Optional[int]
    confidence: float
    r_multiple: float
    liquidity: float
    win_rate: float
    volatility_fit: float
    rank_score: float


class SignalRanker:
    def __init__(self, store: SqliteStore, candles: CandleStore, cfg: QuantlabConfig | None = None) -> None:
        self._store = store
        self._candles = candles
        self._cfg = cfg or QuantlabConfig()

    def strategy_win_rate(self, strategy_code: str) -> float:
        closed = self._store.closed_positions_for_strategy(strategy_code)
        return win_rate((p.pnl for p in closed), default=self._cfg.ranking.base_win_rate)

    def score_signal(self, signal: PendingSignal, *, strategy_win_rate: Optional[float] = None) -> SignalScore:
        """Score one signal on the single-signal path (historical win rate of its strategy)."""
        weights = self._cfg.ranking
        confidence = signal.confidence_score if signal.confidence_score is not None else 1.0
        if strategy_win_rate is None:
            strategy_win_rate = self.strategy_win_rate(signal.strategy_code)

        history = self._candles.candles(signal.symbol, end_date=signal.signal_date)
        r = r_multiple(signal.entry_price, signal.stop_loss, signal.target_price)
        liquidity = liquidity_score(history, self._cfg.liquidity)
        fit = volatility_fit(signal.entry_price, signal.stop_loss, average_true_range(history, self._cfg.atr_period))

        return SignalScore(
            signal_id=signal.id,
            confidence=confidence,
            r_multiple=r,
            liquidity=liquidity,
            win_rate=strategy_win_rate,
            volatility_fit=fit,
            rank_score=rank_score(
                RankingPath.SIGNAL,
                confidence=confidence,
                r=r,
                liquidity=liquidity,
                fit=fit,
                win_rate=strategy_win_rate,
                weights=weights,
            ),
        )

    def rank_pending(self, run_date: date) -> List[PendingSignal]:
        """Rank all PENDING signals dated `run_date`; returns them in rank order."""
        with self._store.lease("RANK", run_date, ttl_s=self._cfg.lease_ttl_s):
            with self._store.transaction():
                pending = self._store.pending_signals(run_date)
                win_rates: Dict[str, float] = {}
                ranked = 0
                for signal in pending:
                    try:
                        if signal.strategy_code not in win_rates:
                            win_rates[signal.strategy_code] = self.strategy_win_rate(signal.strategy_code)
                        score = self.score_signal(signal, strategy_win_rate=win_rates[signal.strategy_code])
                    except Exception as exc:
                        log.error("Ranking signal %s (%s) failed: %s", signal.id, signal.symbol, exc)
                        self._store.log_error(where=f"rank:{signal.id}", message=f"{type(exc).__name__}: {exc}")
                        continue
                    if self._store.update_signal_rank(signal.id, score.rank_score, score.r_multiple):
                        ranked += 1

        log.info("Ranked %d/%d pending signals for %s", ranked, len(pending), run_date)
        return self._store.pending_signals(run_date)
