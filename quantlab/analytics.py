from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from quantlab.models import Position
from quantlab.persistence import SqliteStore

log = logging.getLogger(__name__)

DEFAULT_INITIAL_CAPITAL = 100_000.0


@dataclass(frozen=True)
class EquityPoint:
    day: date
    equity: float


@dataclass(frozen=True)
class TradeAnalytics:
    total_trades: int
    winning_trades: int
    win_rate: float
    total_pnl: float
    max_drawdown: float  # fraction of the running peak, 0.25 == 25%
    equity_curve: Tuple[EquityPoint, ...] = ()


def win_rate(pnls: Iterable[Optional[float]], default: float = 0.0) -> float:
    """Share of trades with pnl > 0; `default` when there are none."""
    values = list(pnls)
    if not values:
        return default
    wins = sum(1 for p in values if p is not None and p > 0)
    return wins / len(values)


def equity_curve(positions: Iterable[Position], initial_capital: float = DEFAULT_INITIAL_CAPITAL) -> List[EquityPoint]:
    closed = sorted(
        (p for p in positions if p.exit_date is not None and p.pnl is not None),
        key=lambda p: (p.exit_date, p.id or 0),
    )
    if not closed:
        return []
    equity = initial_capital + np.cumsum([p.pnl for p in closed])
    return [EquityPoint(p.exit_date, float(e)) for p, e in zip(closed, equity)]


def max_drawdown(curve: Sequence[EquityPoint], initial_capital: float = DEFAULT_INITIAL_CAPITAL) -> float:
    if not curve:
        return 0.0
    equity = np.array([initial_capital] + [pt.equity for pt in curve], dtype=np.float64)
    peaks = np.maximum.accumulate(equity)
    with np.errstate(divide="ignore", invalid="ignore"):
        drawdowns = np.where(peaks > 0, (peaks - equity) / peaks, 0.0)
    return float(drawdowns.max())


def analyze(positions: Iterable[Position], initial_capital: float = DEFAULT_INITIAL_CAPITAL) -> TradeAnalytics:
    trades = [p for p in positions if p.pnl is not None]
    curve = equity_curve(trades, initial_capital)
    wins = sum(1 for p in trades if p.pnl > 0)
    return TradeAnalytics(
        total_trades=len(trades),
        winning_trades=wins,
        win_rate=(wins / len(trades)) if trades else 0.0,
        total_pnl=float(sum(p.pnl for p in trades)),
        max_drawdown=max_drawdown(curve, initial_capital),
        equity_curve=tuple(curve),
    )


# -- strategy comparison -------------------------------------------------------


@dataclass(frozen=True)
class StrategyMetrics:
    strategy_code: str
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0  # mean pnl of losing trades, <= 0
    profit_factor: float = 0.0  # gross profit / gross loss; inf with profits and no losses
    avg_return_pct: float = 0.0
    max_drawdown: float = 0.0


@dataclass(frozen=True)
class BestPerformer:
    metric: str
    strategy_code: str
    value: float


@dataclass(frozen=True)
class StrategyComparison:
    start: date
    end: date
    metrics: Tuple[StrategyMetrics, ...]
    best: Tuple[BestPerformer, ...]

    def best_for(self, metric: str) -> Optional[BestPerformer]:
        return next((b for b in self.best if b.metric == metric), None)


def strategy_metrics(
    strategy_code: str,
    positions: Iterable[Position],
    initial_capital: float = DEFAULT_INITIAL_CAPITAL,
) -> StrategyMetrics:
    trades = [p for p in positions if p.pnl is not None]
    if not trades:
        return StrategyMetrics(strategy_code)

    wins = [float(p.pnl) for p in trades if p.pnl > 0]
    losses = [float(p.pnl) for p in trades if p.pnl < 0]
    gross_profit = math.fsum(wins)
    gross_loss = abs(math.fsum(losses))
    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    else:
        profit_factor = math.inf if gross_profit > 0 else 0.0

    stats = analyze(trades, initial_capital)
    return StrategyMetrics(
        strategy_code=strategy_code,
        total_trades=stats.total_trades,
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=stats.win_rate,
        total_pnl=stats.total_pnl,
        avg_win=float(np.mean(wins)) if wins else 0.0,
        avg_loss=float(np.mean(losses)) if losses else 0.0,
        profit_factor=profit_factor,
        avg_return_pct=float(np.mean([p.pnl_pct or 0.0 for p in trades])),
        max_drawdown=stats.max_drawdown,
    )


def best_performers(metrics: Sequence[StrategyMetrics]) -> List[BestPerformer]:
    """
    Leader per metric among strategies with trades.

    Higher is better except for max drawdown. An infinite profit factor is not
    ranked. Ties go to the strategy listed first.
    """
    traded = [m for m in metrics if m.total_trades > 0]
    out: List[BestPerformer] = []
    for metric in ("win_rate", "total_pnl", "avg_return_pct", "profit_factor"):
        pool = [m for m in traded if math.isfinite(getattr(m, metric))]
        if pool:
            leader = max(pool, key=lambda m: getattr(m, metric))
            out.append(BestPerformer(metric, leader.strategy_code, getattr(leader, metric)))
    if traded:
        leader = min(traded, key=lambda m: m.max_drawdown)
        out.append(BestPerformer("max_drawdown", leader.strategy_code, leader.max_drawdown))
    return out


def compare_strategies(
    store: SqliteStore,
    strategy_codes: Sequence[str],
    start: date,
    end: date,
    *,
    initial_capital: float = DEFAULT_INITIAL_CAPITAL,
) -> StrategyComparison:
    """
    Side-by-side metrics of closed positions (exit date in [start, end]) per strategy.

    A strategy whose metrics cannot be computed is logged and left out of the
    comparison.
    """
    if start > end:
        raise ValueError(f"start {start} is after end {end}")

    metrics: Dict[str, StrategyMetrics] = {}
    for code in strategy_codes:
        if code in metrics:
            continue
        try:
            closed = [
                p
                for p in store.closed_positions_for_strategy(code)
                if p.exit_date is not None and start <= p.exit_date <= end
            ]
            metrics[code] = strategy_metrics(code, closed, initial_capital)
        except Exception as exc:
            log.warning("Failed to compute metrics for strategy %s: %s", code, exc)
            store.log_error(where="analytics.compare", message=f"{code}: {type(exc).__name__}: {exc}")
            continue

    result = tuple(metrics.values())
    log.info("Compared %d of %d strategies from %s to %s", len(result), len(strategy_codes), start, end)
    return StrategyComparison(start=start, end=end, metrics=result, best=tuple(best_performers(result)))
