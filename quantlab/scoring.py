"""
Composite signal scoring.

Five sub-scores, each roughly 0-1 scaled, are combined with fixed weights:

    confidence      ensemble vote weight sum (1.0 for a single strategy)
    r_multiple      (target - entry) / (entry - stop), used raw and unbounded
    liquidity       mean volume of the last 20 bars through three linear bands
    win_rate        share of profitable closed positions for the strategy
    volatility_fit  stop distance vs ATR(14) through a piecewise-linear curve

The same `composite_score` serves both the single-signal path and the ensemble
path; `RankingPath` only decides where the win rate comes from.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

import numpy as np

from quantlab.config import LiquidityBands, RankingWeights
from quantlab.models import Candle


class RankingPath(str, Enum):
    SIGNAL = "SIGNAL"      # win rate looked up from the strategy's closed positions
    ENSEMBLE = "ENSEMBLE"  # win rate fixed at the configured base rate


@dataclass(frozen=True)
class ScoreInputs:
    confidence: float
    r_multiple: float
    liquidity: float
    win_rate: float
    volatility_fit: float


def _available(price: Optional[float]) -> bool:
    return price is not None and price > 0


def r_multiple(entry: float, stop_loss: Optional[float], target: Optional[float]) -> float:
    """Reward-to-risk ratio; 0.0 when stop or target is unavailable or risk <= 0."""
    if not _available(stop_loss) or not _available(target):
        return 0.0
    risk = entry - float(stop_loss)
    if risk <= 0:
        return 0.0
    return (float(target) - entry) / risk


def true_ranges(candles: Sequence[Candle]) -> np.ndarray:
    """True range of each bar against the previous close (len(candles) - 1 values)."""
    if len(candles) < 2:
        return np.empty(0, dtype=np.float64)
    highs = np.array([c.high for c in candles[1:]], dtype=np.float64)
    lows = np.array([c.low for c in candles[1:]], dtype=np.float64)
    prev_close = np.array([c.close for c in candles[:-1]], dtype=np.float64)
    return np.maximum.reduce([highs - lows, np.abs(highs - prev_close), np.abs(lows - prev_close)])


def average_true_range(candles: Sequence[Candle], period: int = 14) -> float:
    """Mean true range over the last `period` day-pairs of an ascending history."""
    if len(candles) < 2 or period < 1:
        return 0.0
    window = candles[-(period + 1):]
    tr = true_ranges(window)
    return float(tr.mean()) if tr.size else 0.0


def liquidity_score(candles: Sequence[Candle], bands: LiquidityBands = LiquidityBands()) -> float:
    if not candles:
        return bands.default_score
    volumes = np.array([c.volume for c in candles[-bands.lookback:]], dtype=np.float64)
    avg_volume = float(volumes.mean())

    if avg_volume <= bands.low_volume:
        return 0.3 + (avg_volume / bands.low_volume) * 0.3
    if avg_volume <= bands.high_volume:
        ratio = (avg_volume - bands.low_volume) / (bands.high_volume - bands.low_volume)
        return 0.6 + ratio * 0.3
    return 0.9 + min(0.1, (avg_volume - bands.high_volume) / bands.high_volume * 0.1)


def volatility_fit(entry: float, stop_loss: Optional[float], atr: float) -> float:
    """
    Score how well the stop distance matches recent volatility.

    Ideal stop is 1.5x-2.5x ATR. Returns 0.5 when ATR or the stop is unavailable.
    """
    if not _available(stop_loss) or atr <= 0 or entry <= 0:
        return 0.5

    sl_distance_pct = abs(entry - float(stop_loss)) / entry * 100.0
    atr_pct = atr / entry * 100.0
    ratio = sl_distance_pct / atr_pct

    if ratio < 1.0:
        return 0.2 + ratio * 0.3
    if ratio <= 1.5:
        return 0.5 + (ratio - 1.0) * 0.4
    if ratio <= 2.5:
        return 0.7 + (ratio - 1.5) * 0.3
    if ratio <= 4.0:
        return 1.0 - (ratio - 2.5) * 0.16
    return max(0.3, 0.6 - (ratio - 4.0) * 0.1)


def composite_score(inputs: ScoreInputs, weights: RankingWeights = RankingWeights()) -> float:
    return (
        inputs.confidence * weights.confidence
        + inputs.r_multiple * weights.r_multiple
        + inputs.liquidity * weights.liquidity
        + inputs.win_rate * weights.win_rate
        + inputs.volatility_fit * weights.volatility_fit
    )


def rank_score(
    path: RankingPath,
    *,
    confidence: float,
    r: float,
    liquidity: float,
    fit: float,
    win_rate: Optional[float] = None,
    weights: RankingWeights = RankingWeights(),
) -> float:
    """Composite rank for either path; ENSEMBLE ignores `win_rate` and uses the base rate."""
    if path == RankingPath.ENSEMBLE or win_rate is None:
        win_rate = weights.base_win_rate
    return composite_score(
        ScoreInputs(confidence=confidence, r_multiple=r, liquidity=liquidity, win_rate=win_rate, volatility_fit=fit),
        weights,
    )
