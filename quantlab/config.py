from __future__ import annotations

import os
from dataclasses import dataclass, field


def _get_env(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None or value == "" else value


def _get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _parse_weights(raw: str) -> dict[str, float]:
    """Parse ``CODE=1.2,OTHER=1.5`` into a weight map."""
    weights: dict[str, float] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        code, sep, value = part.partition("=")
        if not sep:
            raise ValueError(f"Invalid strategy weight entry: {part!r} (expected CODE=weight)")
        weights[code.strip().upper()] = float(value)
    return weights


# Static vote weights of the known strategy codes. Unlisted codes vote with 1.0.
DEFAULT_STRATEGY_WEIGHTS: dict[str, float] = {
    "EMA_BREAKOUT": 1.0,
    "SMA_CROSSOVER": 1.2,
    "GAP_UP_MOMENTUM": 1.5,
    "REL_STRENGTH_30D": 1.0,
    "EOD_BREAKOUT_VOL": 1.3,
    "RSI_MEAN_REVERSION": 1.1,
    "MORNING_STAR": 1.4,
    "ATR_BREAKOUT": 1.3,
    "RSI_DIVERGENCE": 1.2,
    "DOJI_REVERSAL": 1.0,
}


@dataclass(frozen=True)
class RankingWeights:
    confidence: float = 0.35
    r_multiple: float = 0.25
    liquidity: float = 0.15
    win_rate: float = 0.15
    volatility_fit: float = 0.10
    base_win_rate: float = 0.50  # used when no closed trade history exists, and on the ensemble path


@dataclass(frozen=True)
class LiquidityBands:
    low_volume: float = 1_000_000.0
    high_volume: float = 50_000_000.0
    lookback: int = 20
    default_score: float = 0.5


@dataclass(frozen=True)
class EnsembleConfig:
    min_strategies: int = 2
    min_buy_votes: int = 2
    default_weight: float = 1.0


@dataclass(frozen=True)
class QuantlabConfig:
    db_path: str | None = None
    screen_workers: int = 8
    backtest_workers: int = 4
    fetch_timeout_s: float = 10.0
    fetch_retries: int = 1
    price_ttl_s: float = 30.0
    atr_period: int = 14
    max_holding_days: int = 20  # 0 disables the TIME exit
    lease_ttl_s: float = 900.0
    strategy_weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_STRATEGY_WEIGHTS))
    ranking: RankingWeights = RankingWeights()
    liquidity: LiquidityBands = LiquidityBands()
    ensemble: EnsembleConfig = EnsembleConfig()

    def weight_for(self, strategy_code: str) -> float:
        return float(self.strategy_weights.get(strategy_code.upper(), self.ensemble.default_weight))

    @staticmethod
    def from_env() -> "QuantlabConfig":
        raw_weights = _get_env("QUANTLAB_STRATEGY_WEIGHTS", "").strip()
        weights = dict(DEFAULT_STRATEGY_WEIGHTS)
        if raw_weights:
            weights.update(_parse_weights(raw_weights))
        return QuantlabConfig(
            db_path=(_get_env("QUANTLAB_DB_PATH", "").strip() or None),
            screen_workers=_get_env_int("QUANTLAB_SCREEN_WORKERS", 8),
            backtest_workers=_get_env_int("QUANTLAB_BACKTEST_WORKERS", 4),
            fetch_timeout_s=_get_env_float("QUANTLAB_FETCH_TIMEOUT_S", 10.0),
            fetch_retries=_get_env_int("QUANTLAB_FETCH_RETRIES", 1),
            price_ttl_s=_get_env_float("QUANTLAB_PRICE_TTL_S", 30.0),
            max_holding_days=_get_env_int("QUANTLAB_MAX_HOLDING_DAYS", 20),
            lease_ttl_s=_get_env_float("QUANTLAB_LEASE_TTL_S", 900.0),
            strategy_weights=weights,
        )
