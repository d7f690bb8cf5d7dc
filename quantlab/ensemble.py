"""
Ensemble voting.

Runs several strategies in SCREEN mode and merges their opinions per symbol:

    1. at least `min_strategies` distinct strategies must have a signal for the symbol
    2. confidence = sum of the static weights of the BUY-voting strategies
    3. at least `min_buy_votes` BUY votes are required
    4. entry is the mean over all contributing signals; stop and target are means
       over the signals that carry them (0.0 when none do)

Weights come from the injected configuration, never from module state.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import date
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np

from quantlab.config import QuantlabConfig
from quantlab.market_data import CandleStore
from quantlab.models import EnsembleSignal, RawSignal, Side
from quantlab.scoring import (
    RankingPath,
    average_true_range,
    liquidity_score,
    r_multiple,
    rank_score,
    volatility_fit,
)
from quantlab.screening import Screener
from quantlab.strategy.base import StrategyParams

log = logging.getLogger(__name__)


def _mean_or_zero(values: Sequence[Optional[float]]) -> float:
    present = [float(v) for v in values if v is not None]
    return float(np.mean(present)) if present else 0.0


class EnsembleVotingEngine:
    def __init__(
        self,
        screener: Screener,
        cfg: QuantlabConfig | None = None,
        *,
        candles: CandleStore | None = None,
    ) -> None:
        self._screener = screener
        self._cfg = cfg or QuantlabConfig()
        self._candles = candles if candles is not None else screener.candles

    def run(
        self,
        strategy_codes: Sequence[str],
        run_date: date,
        market: Optional[str] = None,
        params: Optional[Mapping[str, StrategyParams]] = None,
    ) -> List[EnsembleSignal]:
        if not strategy_codes:
            raise ValueError("At least one strategy code is required")

        report = self._screener.screen(strategy_codes, run_date, market=market, params=params)
        signals = self.vote(report.all_signals(), run_date)
        log.info(
            "Ensemble %s over %s: %d raw signals -> %d consensus signals",
            run_date,
            ",".join(strategy_codes),
            report.total_signals,
            len(signals),
        )
        return signals

    def vote(self, raw_signals: Iterable[RawSignal], run_date: date) -> List[EnsembleSignal]:
        """
        Aggregate raw signals into consensus signals, highest rank first.

        Order of `raw_signals` does not matter.
        """
        by_symbol: Dict[str, List[RawSignal]] = {}
        for raw in raw_signals:
            by_symbol.setdefault(raw.symbol, []).append(raw)

        results: List[EnsembleSignal] = []
        for symbol in sorted(by_symbol):
            ensemble = self._vote_symbol(symbol, by_symbol[symbol], run_date)
            if ensemble is not None:
                results.append(ensemble)

        results.sort(key=lambda e: (-e.rank_score, e.symbol))
        return results

    def _vote_symbol(self, symbol: str, signals: List[RawSignal], run_date: date) -> Optional[EnsembleSignal]:
        ecfg = self._cfg.ensemble

        # One vote per strategy. Ties between a strategy's own signals resolve to SELL.
        votes: Dict[str, Side] = OrderedDict()
        for raw in sorted(signals, key=lambda s: (s.strategy_code, Side(s.side).value)):
            votes[raw.strategy_code] = Side(raw.side)

        if len(votes) < ecfg.min_strategies:
            log.debug("%s: %d strategies < %d required", symbol, len(votes), ecfg.min_strategies)
            return None

        buy_codes = [code for code, side in votes.items() if side == Side.BUY]
        if len(buy_codes) < ecfg.min_buy_votes:
            log.debug("%s: %d BUY votes < %d required", symbol, len(buy_codes), ecfg.min_buy_votes)
            return None

        confidence = float(sum(self._cfg.weight_for(code) for code in buy_codes))
        entry = _mean_or_zero([s.entry_price for s in signals])
        stop = _mean_or_zero([s.stop_loss for s in signals])
        target = _mean_or_zero([s.target_price for s in signals])

        history = self._candles.candles(symbol, end_date=run_date)
        r = r_multiple(entry, stop, target)
        liquidity = liquidity_score(history, self._cfg.liquidity)
        fit = volatility_fit(entry, stop, average_true_range(history, self._cfg.atr_period))
        rank = rank_score(
            RankingPath.ENSEMBLE,
            confidence=confidence,
            r=r,
            liquidity=liquidity,
            fit=fit,
            weights=self._cfg.ranking,
        )

        return EnsembleSignal(
            symbol=symbol,
            signal_date=run_date,
            side=Side.BUY,
            entry_price=entry,
            stop_loss=stop,
            target_price=target,
            buy_votes=len(buy_codes),
            total_strategies=len(votes),
            confidence_score=confidence,
            strategy_votes={code: side.value for code, side in votes.items()},
            rank_score=rank,
            r_multiple=r,
            liquidity_score=liquidity,
            volatility_fit=fit,
        )

