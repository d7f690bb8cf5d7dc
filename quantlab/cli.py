"""
Command-line entry point.

Usage:
    python -m quantlab --candles data.csv --db quantlab.db screen --strategies EOD_BREAKOUT_VOL,ATR_BREAKOUT
    python -m quantlab --candles data.csv --db quantlab.db ensemble --strategies EOD_BREAKOUT_VOL,SMA_CROSSOVER --store
    python -m quantlab --candles data.csv --db quantlab.db rank --date 2024-03-01
    python -m quantlab --db quantlab.db allocate --capital 100000 --risk-pct 1 --max-trades 5
    python -m quantlab --candles data.csv --db quantlab.db manage
    python -m quantlab --db quantlab.db execute --signal-id 12 --quantity 50
    python -m quantlab --db quantlab.db compare --strategies EOD_BREAKOUT_VOL,ENSEMBLE --start 2024-01-01
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import date
from typing import List, Optional, Sequence

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from quantlab.analytics import analyze, compare_strategies
from quantlab.backtest import PaperTradingSimulator
from quantlab.config import QuantlabConfig
from quantlab.lifecycle import LifecycleError
from quantlab.logging_setup import configure_logging
from quantlab.market_data import (
    CandlePriceProvider,
    InMemoryCandleStore,
    MarketDataClient,
    MarketDataConfig,
    load_candles_csv,
)
from quantlab.models import AllocationSnapshot, PendingSignal, Position, PositionStatus, SignalStatus
from quantlab.persistence import RunInProgressError, SqliteStore
from quantlab.pipeline import DailyPipeline
from quantlab.strategy.base import InvalidParameterError
from quantlab.strategy.registry import StrategyNotFoundError, default_registry

log = logging.getLogger(__name__)


def parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date {value!r} (expected YYYY-MM-DD)") from exc


def parse_codes(value: str) -> List[str]:
    return [c.strip().upper() for c in value.split(",") if c.strip()]


def _fmt(value: Optional[float], digits: int = 2) -> str:
    return "-" if value is None else f"{value:,.{digits}f}"


def _signals_table(title: str, signals: Sequence[PendingSignal]) -> Table:
    t = Table(title=title)
    for col in ("id", "date", "symbol", "strategy", "side", "entry", "stop", "target", "conf", "rank", "R", "status"):
        t.add_column(col, justify="right" if col in {"id", "entry", "stop", "target", "conf", "rank", "R"} else "left")
    for s in signals:
        t.add_row(
            str(s.id),
            s.signal_date.isoformat(),
            s.symbol,
            s.strategy_code,
            s.side.value,
            _fmt(s.entry_price),
            _fmt(s.stop_loss),
            _fmt(s.target_price),
            _fmt(s.confidence_score),
            _fmt(s.rank_score, 3),
            _fmt(s.r_multiple),
            s.status.value,
        )
    return t


def _positions_table(title: str, positions: Sequence[Position]) -> Table:
    t = Table(title=title)
    for col in ("id", "symbol", "qty", "entry", "current", "u.pnl", "stop", "target", "status", "exit", "reason", "pnl", "pnl%"):
        t.add_column(col)
    for p in positions:
        t.add_row(
            str(p.id),
            p.symbol,
            str(p.quantity),
            _fmt(p.entry_price),
            _fmt(p.current_price),
            _fmt(p.unrealized_pnl),
            _fmt(p.stop_loss),
            _fmt(p.target_price),
            p.status.value,
            _fmt(p.exit_price),
            p.exit_reason.value if p.exit_reason else "-",
            _fmt(p.pnl),
            _fmt(p.pnl_pct),
        )
    return t


def _allocation_table(snapshot: AllocationSnapshot) -> Table:
    t = Table(
        title=(
            f"Allocation {snapshot.run_date.isoformat()}  deployed={snapshot.deployed_capital:,.2f}  "
            f"free={snapshot.free_cash:,.2f}  expected R={snapshot.expected_r_multiple:.2f}"
        )
    )
    for col in ("signal", "symbol", "qty", "entry", "capital", "risk", "exp. R", "alloc %"):
        t.add_column(col, justify="right")
    for p in snapshot.positions:
        t.add_row(
            str(p.signal_id),
            p.symbol,
            str(p.quantity),
            _fmt(p.entry_price),
            _fmt(p.capital_used),
            _fmt(p.risk_amount),
            _fmt(p.expected_r),
            _fmt(p.allocation_pct),
        )
    return t


class _App:
    def __init__(self, args: argparse.Namespace, console: Console) -> None:
        self.args = args
        self.console = console
        self.cfg = QuantlabConfig.from_env()
        self.candles = load_candles_csv(args.candles) if args.candles else InMemoryCandleStore()
        self.store = SqliteStore(args.db or self.cfg.db_path or ":memory:")
        self.run_date: date = args.date or self.candles.latest_date() or date.today()
        self._prices: Optional[MarketDataClient] = None

    def pipeline(self, with_prices: bool = False) -> DailyPipeline:
        if with_prices:
            provider = CandlePriceProvider(self.candles, as_of=self.run_date)
            self._prices = MarketDataClient(
                provider,
                MarketDataConfig(
                    ttl_seconds=self.cfg.price_ttl_s,
                    timeout_seconds=self.cfg.fetch_timeout_s,
                    retries=self.cfg.fetch_retries,
                ),
            )
        return DailyPipeline(
            store=self.store,
            candles=self.candles,
            registry=default_registry(),
            prices=self._prices,
            config=self.cfg,
            today=lambda: max(date.today(), self.run_date),
        )

    def close(self) -> None:
        if self._prices is not None:
            self._prices.close()
        self.store.close()


def cmd_strategies(app: _App) -> int:
    t = Table(title="Strategies")
    for col in ("code", "name", "min candles", "description"):
        t.add_column(col)
    for meta in default_registry().metadata():
        t.add_row(meta.code, meta.name, str(meta.min_candles), meta.description)
    app.console.print(t)
    return 0


def cmd_screen(app: _App) -> int:
    stored = app.pipeline().screen_and_store(app.args.strategies, app.run_date, market=app.args.market)
    app.console.print(_signals_table(f"Screening {app.run_date.isoformat()}", stored))
    return 0


def cmd_ensemble(app: _App) -> int:
    pipeline = app.pipeline()
    if app.args.store:
        stored = pipeline.ensemble_and_store(app.args.strategies, app.run_date, market=app.args.market)
        app.console.print(_signals_table(f"Ensemble {app.run_date.isoformat()} (stored)", stored))
        return 0

    consensus = pipeline.ensemble.run(app.args.strategies, app.run_date, market=app.args.market)
    t = Table(title=f"Ensemble {app.run_date.isoformat()}")
    for col in ("symbol", "votes", "conf", "entry", "stop", "target", "R", "liq", "vol fit", "rank"):
        t.add_column(col)
    for e in consensus:
        t.add_row(
            e.symbol,
            f"{e.buy_votes}/{e.total_strategies}",
            _fmt(e.confidence_score),
            _fmt(e.entry_price),
            _fmt(e.stop_loss),
            _fmt(e.target_price),
            _fmt(e.r_multiple),
            _fmt(e.liquidity_score, 3),
            _fmt(e.volatility_fit, 3),
            _fmt(e.rank_score, 3),
        )
    app.console.print(t)
    return 0


def cmd_rank(app: _App) -> int:
    ranked = app.pipeline().ranker.rank_pending(app.run_date)
    app.console.print(_signals_table(f"Ranked pending signals {app.run_date.isoformat()}", ranked))
    return 0


def cmd_allocate(app: _App) -> int:
    pipeline = app.pipeline(with_prices=app.args.execute)
    snapshot = pipeline.allocator.allocate(
        app.run_date,
        app.args.capital,
        app.args.risk_pct,
        app.args.max_trades,
        persist=not app.args.dry_run,
    )
    app.console.print(_allocation_table(snapshot))
    if app.args.execute and pipeline.lifecycle is not None:
        result = pipeline.lifecycle.execute_allocation(snapshot, on=app.run_date)
        app.console.print(f"opened {len(result.changed)} positions, {len(result.failures)} failures")
        return 0 if result.ok else 2
    return 0


def cmd_manage(app: _App) -> int:
    results = app.pipeline(with_prices=True).manage_positions(on=app.run_date)
    t = Table(title=f"Position management {app.run_date.isoformat()}")
    for col in ("step", "processed", "changed", "failures"):
        t.add_column(col)
    for name, r in results.items():
        t.add_row(name, str(r.processed), str(len(r.changed)), str(len(r.failures)))
    app.console.print(t)
    return 0 if all(r.ok for r in results.values()) else 2


def cmd_execute(app: _App) -> int:
    lifecycle = app.pipeline(with_prices=True).lifecycle
    position = lifecycle.execute_signal(
        app.args.signal_id, quantity=app.args.quantity, entry_price=app.args.entry_price, on=app.run_date
    )
    app.console.print(_positions_table(f"Executed signal {app.args.signal_id}", [position]))
    return 0


def cmd_ignore(app: _App) -> int:
    signal = app.pipeline(with_prices=True).lifecycle.ignore_signal(app.args.signal_id)
    app.console.print(_signals_table(f"Ignored signal {app.args.signal_id}", [signal]))
    return 0


def cmd_close(app: _App) -> int:
    lifecycle = app.pipeline(with_prices=True).lifecycle
    position = lifecycle.close_position(app.args.position_id, app.args.price, on=app.run_date)
    app.console.print(_positions_table(f"Closed position {app.args.position_id}", [position]))
    return 0


def cmd_signals(app: _App) -> int:
    status = SignalStatus(app.args.status) if app.args.status else None
    signals = app.store.list_signals(status=status, signal_date=app.args.date)
    app.console.print(_signals_table("Signals", signals))
    return 0


def cmd_positions(app: _App) -> int:
    status = PositionStatus(app.args.status) if app.args.status else None
    positions = app.store.list_positions(status)
    app.console.print(_positions_table("Positions", positions))
    if status != PositionStatus.OPEN:
        stats = analyze(p for p in positions if p.status == PositionStatus.CLOSED)
        app.console.print(
            f"closed={stats.total_trades} win rate={stats.win_rate:.1%} "
            f"total pnl={stats.total_pnl:,.2f} max drawdown={stats.max_drawdown:.1%}"
        )
    return 0


def cmd_backtest(app: _App) -> int:
    pipeline = app.pipeline()
    signals = pipeline.screener.backtest(app.args.strategy, app.run_date, market=app.args.market)
    simulator = PaperTradingSimulator(app.candles, max_holding_days=app.cfg.max_holding_days, store=app.store)
    closed = simulator.simulate(signals, until=app.run_date, persist=app.args.store)
    stats = analyze(closed)
    app.console.print(_positions_table(f"Backtest {app.args.strategy} to {app.run_date.isoformat()}", closed))
    app.console.print(
        f"signals={len(signals)} trades={stats.total_trades} win rate={stats.win_rate:.1%} "
        f"total pnl={stats.total_pnl:,.2f} max drawdown={stats.max_drawdown:.1%}"
    )
    return 0


def cmd_compare(app: _App) -> int:
    end = app.args.end or app.run_date
    comparison = compare_strategies(app.store, app.args.strategies, app.args.start, end)
    t = Table(title=f"Strategy comparison {app.args.start.isoformat()} to {end.isoformat()}")
    for col in ("strategy", "trades", "win rate", "total pnl", "avg win", "avg loss", "profit factor", "avg ret %", "max dd"):
        t.add_column(col)
    for m in comparison.metrics:
        t.add_row(
            m.strategy_code,
            str(m.total_trades),
            f"{m.win_rate:.1%}",
            _fmt(m.total_pnl),
            _fmt(m.avg_win),
            _fmt(m.avg_loss),
            _fmt(m.profit_factor),
            _fmt(m.avg_return_pct),
            f"{m.max_drawdown:.1%}",
        )
    app.console.print(t)
    for b in comparison.best:
        app.console.print(f"best {b.metric}: {b.strategy_code} ({b.value:,.4f})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="quantlab", description="Ensemble signal screening, ranking and allocation")
    p.add_argument("--candles", default=None, help="CSV with symbol,date,open,high,low,close,volume[,market]")
    p.add_argument("--db", default=None, help="SQLite path (overrides QUANTLAB_DB_PATH)")
    p.add_argument("--date", type=parse_date, default=None, help="Run date (default: latest candle date)")
    p.add_argument("--log-level", default="INFO")
    p.add_argument("--log-file", default=None)

    sub = p.add_subparsers(dest="command", required=True)

    sp = sub.add_parser("strategies", help="List registered strategies")
    sp.set_defaults(func=cmd_strategies)

    sp = sub.add_parser("screen", help="Screen strategies and store actionable signals")
    sp.add_argument("--strategies", type=parse_codes, required=True)
    sp.add_argument("--market", default=None)
    sp.set_defaults(func=cmd_screen)

    sp = sub.add_parser("ensemble", help="Consensus signals across strategies")
    sp.add_argument("--strategies", type=parse_codes, required=True)
    sp.add_argument("--market", default=None)
    sp.add_argument("--store", action="store_true", help="Persist consensus signals as PENDING")
    sp.set_defaults(func=cmd_ensemble)

    sp = sub.add_parser("rank", help="Rank PENDING signals of the run date")
    sp.set_defaults(func=cmd_rank)

    sp = sub.add_parser("allocate", help="Size top-ranked PENDING signals against a capital budget")
    sp.add_argument("--capital", type=float, required=True)
    sp.add_argument("--risk-pct", type=float, default=1.0, help="Risk per trade in percent of capital")
    sp.add_argument("--max-trades", type=int, default=5)
    sp.add_argument("--dry-run", action="store_true", help="Do not store the snapshot")
    sp.add_argument("--execute", action="store_true", help="Open positions for the allocated signals")
    sp.set_defaults(func=cmd_allocate)

    sp = sub.add_parser("manage", help="Refresh P&L, check exits and entry triggers")
    sp.set_defaults(func=cmd_manage)

    sp = sub.add_parser("execute", help="Approve a PENDING signal and open its position")
    sp.add_argument("--signal-id", type=int, required=True)
    sp.add_argument("--quantity", type=int, default=None)
    sp.add_argument("--entry-price", type=float, default=None)
    sp.set_defaults(func=cmd_execute)

    sp = sub.add_parser("ignore", help="Mark a PENDING signal as IGNORED")
    sp.add_argument("--signal-id", type=int, required=True)
    sp.set_defaults(func=cmd_ignore)

    sp = sub.add_parser("close", help="Close an OPEN position manually")
    sp.add_argument("--position-id", type=int, required=True)
    sp.add_argument("--price", type=float, required=True)
    sp.set_defaults(func=cmd_close)

    sp = sub.add_parser("signals", help="List stored signals")
    sp.add_argument("--status", choices=[s.value for s in SignalStatus], default=None)
    sp.set_defaults(func=cmd_signals)

    sp = sub.add_parser("positions", help="List positions")
    sp.add_argument("--status", choices=[s.value for s in PositionStatus], default=None)
    sp.set_defaults(func=cmd_positions)

    sp = sub.add_parser("backtest", help="Historical signals of one strategy with simulated exits")
    sp.add_argument("--strategy", required=True)
    sp.add_argument("--market", default=None)
    sp.add_argument("--store", action="store_true", help="Persist simulated trades (feeds win rates)")
    sp.set_defaults(func=cmd_backtest)

    sp = sub.add_parser("compare", help="Compare closed-trade metrics across strategies")
    sp.add_argument("--strategies", type=parse_codes, required=True)
    sp.add_argument("--start", type=parse_date, required=True)
    sp.add_argument("--end", type=parse_date, default=None, help="Default: run date")
    sp.set_defaults(func=cmd_compare)
    return p


def main(argv: Optional[List[str]] = None, *, console: Optional[Console] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level, log_file=args.log_file)
    console = console or Console()

    app = _App(args, console)
    try:
        return int(args.func(app))
    except (InvalidParameterError, StrategyNotFoundError, LifecycleError, RunInProgressError, LookupError, ValueError) as exc:
        console.print(f"[bold red]error:[/bold red] {escape(str(exc))}")
        return 1
    finally:
        app.close()


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
