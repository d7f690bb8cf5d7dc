"""
Breakout strategies.

Both are long-only and set the stop below the breakout bar's structure, with a
fixed reward:risk multiple for the target.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np

from quantlab.models import Candle, RawSignal, Side
from quantlab.scoring import average_true_range
from quantlab.strategy.base import Strategy, StrategyParams, require


def _target(entry: float, stop: float, reward_risk: float) -> float:
    return entry + (entry - stop) * reward_risk


class EODBreakoutVolStrategy(Strategy):
    """
    End-of-day breakout with volume confirmation.

    Entry: close above the highest high of the previous `lookbackDays` bars on
    volume above `volumeMultiplier` x their average volume.
    Stop: lowest low of the same window. Target: 2R.
    """

    code = "EOD_BREAKOUT_VOL"
    name = "EOD Breakout with Volume"
    description = "Close breaks the N-day high on above-average volume"

    DEFAULT_LOOKBACK = 20
    DEFAULT_VOLUME_MULTIPLIER = 1.5
    REWARD_RISK = 2.0

    def validate_params(self, params: StrategyParams) -> None:
        require(params.get_int("lookbackDays", self.DEFAULT_LOOKBACK) >= 1, "lookbackDays must be at least 1")
        require(
            params.get_float("volumeMultiplier", self.DEFAULT_VOLUME_MULTIPLIER) >= 0,
            "volumeMultiplier must be non-negative",
        )

    def min_candles(self, params: Optional[StrategyParams] = None) -> int:
        params = params or StrategyParams()
        return params.get_int("lookbackDays", self.DEFAULT_LOOKBACK) + 1

    def signals_at(self, candles: Sequence[Candle], index: int, params: StrategyParams) -> List[RawSignal]:
        lookback = params.get_int("lookbackDays", self.DEFAULT_LOOKBACK)
        multiplier = params.get_float("volumeMultiplier", self.DEFAULT_VOLUME_MULTIPLIER)

        today = candles[index]
        if not today.is_valid or today.volume <= 0:
            return []

        history = [c for c in candles[max(0, index - lookback):index] if c.is_valid and c.volume > 0]
        if not history:
            return []

        highs = np.array([c.high for c in history], dtype=np.float64)
        lows = np.array([c.low for c in history], dtype=np.float64)
        volumes = np.array([c.volume for c in history], dtype=np.float64)

        is_breakout = today.close > highs.max()
        has_volume = today.volume > volumes.mean() * multiplier
        if not (is_breakout and has_volume):
            return []

        stop = float(lows.min())
        return [
            self._signal(
                today,
                Side.BUY,
                stop_loss=stop,
                target_price=_target(today.close, stop, self.REWARD_RISK),
            )
        ]


class ATRBreakoutStrategy(Strategy):
    """
    Volatility expansion: a bullish bar whose range exceeds `atrMultiplier` x ATR,
    on volume above the `volumeLookback`-bar average. Stop at the bar's low.
    """

    code = "ATR_BREAKOUT"
    name = "ATR Volatility Breakout"
    description = "Wide-range bullish bar on rising volume"

    def validate_params(self, params: StrategyParams) -> None:
        require(params.get_int("atrPeriod", 14) >= 2, "atrPeriod must be at least 2")
        require(params.get_float("atrMultiplier", 1.5) > 0, "atrMultiplier must be positive")
        require(params.get_int("volumeLookback", 20) >= 1, "volumeLookback must be at least 1")
        require(params.get_float("riskRewardRatio", 2.0) > 0, "riskRewardRatio must be positive")

    def min_candles(self, params: Optional[StrategyParams] = None) -> int:
        params = params or StrategyParams()
        return params.get_int("atrPeriod", 14) + params.get_int("volumeLookback", 20) + 1

    def signals_at(self, candles: Sequence[Candle], index: int, params: StrategyParams) -> List[RawSignal]:
        atr_period = params.get_int("atrPeriod", 14)
        multiplier = params.get_float("atrMultiplier", 1.5)
        volume_lookback = params.get_int("volumeLookback", 20)
        reward_risk = params.get_float("riskRewardRatio", 2.0)

        today = candles[index]
        if not today.is_valid or not today.is_bullish:
            return []

        # ATR of the bars before today so the breakout bar does not inflate its own threshold
        atr = average_true_range(candles[:index], atr_period)
        window = candles[max(0, index - volume_lookback):index]
        if atr <= 0 or not window:
            return []

        avg_volume = float(np.mean([c.volume for c in window]))
        if today.high - today.low <= multiplier * atr or today.volume <= round(avg_volume):
            return []

        stop = float(today.low)
        return [
            self._signal(
                today,
                Side.BUY,
                stop_loss=stop,
                target_price=_target(today.close, stop, reward_risk),
            )
        ]
