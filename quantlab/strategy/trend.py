from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np

from quantlab.models import Candle, RawSignal, Side
from quantlab.strategy.base import Strategy, StrategyParams, require


class SMACrossoverStrategy(Strategy):
    """
    Bullish fast/slow simple moving average crossover.

    Fires on the bar where fast SMA moves from <= slow SMA to > slow SMA.
    Stop is the lowest low of the prior `lookbackDays` bars; target is
    `riskRewardRatio` x the risk above entry.
    """

    code = "SMA_CROSSOVER"
    name = "SMA Crossover"
    description = "Fast SMA crosses above slow SMA"

    def _periods(self, params: StrategyParams):
        return params.get_int("fastSMA", 9), params.get_int("slowSMA", 21)

    def validate_params(self, params: StrategyParams) -> None:
        fast, slow = self._periods(params)
        require(fast >= 1, "fastSMA must be at least 1")
        require(slow >= 1, "slowSMA must be at least 1")
        require(fast < slow, "fastSMA must be less than slowSMA")
        require(params.get_int("lookbackDays", 14) >= 1, "lookbackDays must be at least 1")
        require(params.get_float("riskRewardRatio", 1.5) > 0, "riskRewardRatio must be positive")

    def min_candles(self, params: Optional[StrategyParams] = None) -> int:
        _, slow = self._periods(params or StrategyParams())
        return slow + 1

    def signals_at(self, candles: Sequence[Candle], index: int, params: StrategyParams) -> List[RawSignal]:
        fast, slow = self._periods(params)
        lookback = params.get_int("lookbackDays", 14)
        reward_risk = params.get_float("riskRewardRatio", 1.5)

        if index < slow:
            return []
        today = candles[index]
        if not today.is_valid or not candles[index - 1].is_valid:
            return []

        closes = np.array([c.close for c in candles[index - slow:index + 1]], dtype=np.float64)
        fast_now, fast_prev = closes[-fast:].mean(), closes[-fast - 1:-1].mean()
        slow_now, slow_prev = closes[1:].mean(), closes[:-1].mean()

        if not (fast_prev <= slow_prev and fast_now > slow_now):
            return []

        lows = [c.low for c in candles[max(0, index - lookback):index] if c.low > 0]
        stop = float(min(lows)) if lows else float(today.low)
        if stop >= today.close:
            return []
        target = today.close + (today.close - stop) * reward_risk
        return [self._signal(today, Side.BUY, stop_loss=stop, target_price=target)]
