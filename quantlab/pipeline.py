from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Dict, List, Optional, Sequence

from quantlab.allocation import CapitalAllocator
from quantlab.config import QuantlabConfig
from quantlab.ensemble import EnsembleVotingEngine
from quantlab.lifecycle import BatchResult, TradeLifecycleManager
from quantlab.market_data import CandleStore, MarketDataClient
from quantlab.models import AllocationSnapshot, EnsembleSignal, PendingSignal
from quantlab.persistence import SqliteStore
from quantlab.ranking import SignalRanker
from quantlab.screening import Screener
from quantlab.strategy.registry import StrategyRegistry

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DailyReport:
    run_date: date
    stored_signals: List[PendingSignal]
    ranked: List[PendingSignal]
    allocation: Optional[AllocationSnapshot]


@dataclass
class DailyPipeline:
    """
    End-of-day flow: screen -> (ensemble) -> persist -> rank -> allocate.

    Positions are only opened through `lifecycle` (explicit execution or entry
    triggers), never by the allocation step.
    """

    store: SqliteStore
    candles: CandleStore
    registry: StrategyRegistry
    prices: Optional[MarketDataClient] = None
    config: QuantlabConfig = field(default_factory=QuantlabConfig)
    today: Callable[[], date] = date.today

    def __post_init__(self) -> None:
        self.screener = Screener(self.candles, self.registry, self.config, store=self.store, today=self.today)
        self.ensemble = EnsembleVotingEngine(self.screener, self.config)
        self.ranker = SignalRanker(self.store, self.candles, self.config)
        self.allocator = CapitalAllocator(self.store, self.config)
        self.lifecycle: Optional[TradeLifecycleManager] = (
            TradeLifecycleManager(self.store, self.prices, self.config, today=self.today) if self.prices else None
        )

    def screen_and_store(self, strategy_codes: Sequence[str], run_date: date, market: Optional[str] = None) -> List[PendingSignal]:
        """Single-strategy path: every actionable raw signal becomes a PENDING signal."""
        report = self.screener.screen(strategy_codes, run_date, market=market)
        return [self.store.insert_signal(PendingSignal.from_raw(raw)) for raw in report.all_signals()]

    def ensemble_and_store(
        self,
        strategy_codes: Sequence[str],
        run_date: date,
        market: Optional[str] = None,
    ) -> List[PendingSignal]:
        consensus: List[EnsembleSignal] = self.ensemble.run(strategy_codes, run_date, market=market)
        return [self.store.insert_signal(e.to_pending_signal()) for e in consensus]

    def run_daily(
        self,
        strategy_codes: Sequence[str],
        run_date: date,
        *,
        market: Optional[str] = None,
        use_ensemble: bool = True,
        total_capital: Optional[float] = None,
        risk_per_trade_pct: float = 1.0,
        max_open_trades: int = 5,
    ) -> DailyReport:
        if use_ensemble:
            stored = self.ensemble_and_store(strategy_codes, run_date, market)
        else:
            stored = self.screen_and_store(strategy_codes, run_date, market)
        ranked = self.ranker.rank_pending(run_date)

        allocation = None
        if total_capital is not None:
            allocation = self.allocator.allocate(run_date, total_capital, risk_per_trade_pct, max_open_trades)

        log.info(
            "Daily run %s: %d stored, %d pending ranked, allocation=%s",
            run_date,
            len(stored),
            len(ranked),
            "none" if allocation is None else f"{len(allocation.positions)} positions",
        )
        return DailyReport(run_date=run_date, stored_signals=stored, ranked=ranked, allocation=allocation)

    def manage_positions(self, *, on: Optional[date] = None) -> Dict[str, BatchResult]:
        if self.lifecycle is None:
            raise RuntimeError("Position management requires a price source")
        return self.lifecycle.manage_positions(on=on)


@dataclass
class PositionManagementRunner:
    """
    Timer loop for the position-management batch.

    For tests, set `max_ticks` and `sleep_seconds=0`.
    """

    pipeline: DailyPipeline
    sleep_seconds: float = 300.0
    max_ticks: int | None = None

    def run(self) -> int:
        tick = 0
        while True:
            tick += 1
            try:
                results = self.pipeline.manage_positions()
                failures = sum(len(r.failures) for r in results.values())
                if failures:
                    log.warning("Management tick %d finished with %d unit failures", tick, failures)
            except Exception as exc:
                log.error("Management tick %d failed: %s", tick, exc)

            if self.max_ticks is not None and tick >= self.max_ticks:
                return tick
            if self.sleep_seconds > 0:
                time.sleep(self.sleep_seconds)
