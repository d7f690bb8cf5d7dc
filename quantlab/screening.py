"""
Screening and backtest runs.

Strategy evaluation is fanned out over (strategy, symbol) work units on a bounded
thread pool. Units share nothing but the result collector; a failing unit is
logged (and recorded in the store when one is configured) and the run carries on.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from quantlab.config import QuantlabConfig
from quantlab.market_data import CandleStore
from quantlab.models import RawSignal
from quantlab.persistence import SqliteStore
from quantlab.strategy.base import ExecutionMode, Strategy, StrategyParams
from quantlab.strategy.registry import StrategyRegistry

log = logging.getLogger(__name__)


@dataclass
class ScreenReport:
    """Outcome of one screening run: signals by strategy code plus per-unit bookkeeping."""

    run_date: date
    signals: Dict[str, List[RawSignal]] = field(default_factory=dict)
    skipped_strategies: List[str] = field(default_factory=list)
    insufficient_history: int = 0
    failed_units: List[Tuple[str, str, str]] = field(default_factory=list)

    @property
    def total_signals(self) -> int:
        return sum(len(v) for v in self.signals.values())

    def all_signals(self) -> List[RawSignal]:
        return [s for code in sorted(self.signals) for s in self.signals[code]]


class Screener:
    def __init__(
        self,
        candles: CandleStore,
        registry: StrategyRegistry,
        cfg: QuantlabConfig | None = None,
        *,
        store: SqliteStore | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._candles = candles
        self._registry = registry
        self._cfg = cfg or QuantlabConfig()
        self._store = store
        self._today = today

    @property
    def candles(self) -> CandleStore:
        return self._candles

    def screen(
        self,
        strategy_codes: Iterable[str],
        run_date: date,
        market: Optional[str] = None,
        params: Optional[Mapping[str, StrategyParams]] = None,
    ) -> ScreenReport:
        """
        Run each strategy in SCREEN mode over the instrument universe as of `run_date`.

        Only signals dated `run_date` are kept. Unknown strategy codes are skipped
        with a warning; a `run_date` after today raises ValueError.
        """
        if run_date > self._today():
            raise ValueError(f"Cannot screen a future date: {run_date.isoformat()}")

        report = ScreenReport(run_date=run_date)
        strategies = self._resolve(strategy_codes, report)
        if not strategies:
            log.warning("No known strategies to screen for %s", run_date)
            return report

        resolved_params = self._validated_params(strategies, params)
        symbols = self._candles.symbols(market)
        log.info(
            "Screening %d strategies x %d symbols for %s (market=%s)",
            len(strategies),
            len(symbols),
            run_date,
            market or "ALL",
        )

        if self._store is not None:
            with self._store.lease("SCREEN", run_date, ttl_s=self._cfg.lease_ttl_s):
                self._fan_out(strategies, symbols, run_date, resolved_params, report)
        else:
            self._fan_out(strategies, symbols, run_date, resolved_params, report)

        log.info(
            "Screening %s done: %d signals, %d short histories, %d failures",
            run_date,
            report.total_signals,
            report.insufficient_history,
            len(report.failed_units),
        )
        return report

    def backtest(
        self,
        strategy_code: str,
        run_date: date,
        market: Optional[str] = None,
        params: Optional[StrategyParams] = None,
    ) -> List[RawSignal]:
        """Historical (non-actionable) signals of one strategy up to `run_date`, ordered by date then symbol."""
        strategy = self._registry.get(strategy_code)
        params = params or StrategyParams()
        strategy.validate_params(params)

        symbols = self._candles.symbols(market)
        found: List[RawSignal] = []
        with ThreadPoolExecutor(max_workers=max(1, self._cfg.backtest_workers), thread_name_prefix="quantlab-bt") as pool:
            futures = {
                pool.submit(self._evaluate_unit, strategy, symbol, run_date, ExecutionMode.BACKTEST, params): symbol
                for symbol in symbols
            }
            for future in as_completed(futures):
                symbol = futures[future]
                try:
                    result = future.result()
                except Exception as exc:
                    self._log_error(f"backtest:{strategy.code}:{symbol}", exc)
                    continue
                if result is not None:
                    found.extend(result)

        found.sort(key=lambda s: (s.signal_date, s.symbol))
        log.info("Backtest %s up to %s: %d signals across %d symbols", strategy.code, run_date, len(found), len(symbols))
        return found

    # -- internals -------------------------------------------------------------

    def _resolve(self, codes: Iterable[str], report: ScreenReport) -> List[Strategy]:
        strategies: List[Strategy] = []
        seen = set()
        for code in codes:
            strategy = self._registry.find(code)
            if strategy is None:
                log.warning("Unknown strategy code %r, skipping", code)
                report.skipped_strategies.append(str(code))
                continue
            if strategy.code in seen:
                continue
            seen.add(strategy.code)
            strategies.append(strategy)
        return strategies

    @staticmethod
    def _validated_params(
        strategies: List[Strategy],
        params: Optional[Mapping[str, StrategyParams]],
    ) -> Dict[str, StrategyParams]:
        by_code = {str(k).upper(): v for k, v in (params or {}).items()}
        resolved: Dict[str, StrategyParams] = {}
        for strategy in strategies:
            p = by_code.get(strategy.code, StrategyParams())
            strategy.validate_params(p)
            resolved[strategy.code] = p
        return resolved

    def _fan_out(
        self,
        strategies: List[Strategy],
        symbols: List[str],
        run_date: date,
        params: Dict[str, StrategyParams],
        report: ScreenReport,
    ) -> None:
        collected: Dict[str, List[RawSignal]] = {s.code: [] for s in strategies}
        lock = threading.Lock()

        with ThreadPoolExecutor(max_workers=max(1, self._cfg.screen_workers), thread_name_prefix="quantlab-screen") as pool:
            futures = {
                pool.submit(self._evaluate_unit, strategy, symbol, run_date, ExecutionMode.SCREEN, params[strategy.code]): (
                    strategy.code,
                    symbol,
                )
                for strategy in strategies
                for symbol in symbols
            }
            for future in as_completed(futures):
                code, symbol = futures[future]
                try:
                    result = future.result()
                except Exception as exc:
                    self._log_error(f"screen:{code}:{symbol}", exc)
                    report.failed_units.append((code, symbol, str(exc)))
                    continue
                if result is None:
                    report.insufficient_history += 1
                    continue
                todays = [s for s in result if s.signal_date == run_date]
                if todays:
                    with lock:
                        collected[code].extend(todays)

        report.signals = {code: sorted(sigs, key=lambda s: s.symbol) for code, sigs in sorted(collected.items())}

    def _evaluate_unit(
        self,
        strategy: Strategy,
        symbol: str,
        run_date: date,
        mode: ExecutionMode,
        params: StrategyParams,
    ) -> Optional[List[RawSignal]]:
        """Signals for one (strategy, symbol); None when the history is too short."""
        history = self._candles.candles(symbol, end_date=run_date)
        if len(history) < strategy.min_candles(params):
            log.debug("%s: %d candles < %d required by %s", symbol, len(history), strategy.min_candles(params), strategy.code)
            return None
        result = strategy.evaluate(history, mode, params)
        return list(result.signals)

    def _log_error(self, where: str, exc: BaseException) -> None:
        log.error("%s failed: %s", where, exc)
        if self._store is not None:
            self._store.log_error(where=where, message=f"{type(exc).__name__}: {exc}")
