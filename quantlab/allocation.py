"""
Risk-based capital allocation.

Greedy over the PENDING signals of a date in rank order:

    risk_amount    = total_capital * risk_per_trade_pct / 100
    risk_per_share = entry - stop            (skip when stop missing or >= entry)
    quantity       = floor(risk_amount / risk_per_share), capped at floor(available / entry)

A skipped candidate never uses up one of the `max_open_trades` slots. After each
commit the run stops once the remaining capital is below 2 x risk_amount.

The allocation is a simulation: it stores a snapshot but never opens positions.
"""

from __future__ import annotations

import logging
import math
from datetime import date
from typing import List, Optional

from quantlab.config import QuantlabConfig
from quantlab.models import AllocationPosition, AllocationSnapshot, PendingSignal
from quantlab.persistence import SqliteStore
from quantlab.scoring import r_multiple

log = logging.getLogger(__name__)

_EPS = 1e-9


def _floor(x: float) -> int:
    # Tolerate float noise such as 99.99999999997 for an exact 100.
    return int(math.floor(x + _EPS))


def _validate(total_capital: float, risk_per_trade_pct: float, max_open_trades: int) -> None:
    if not total_capital > 0:
        raise ValueError(f"total_capital must be positive, got {total_capital!r}")
    if not 0 < risk_per_trade_pct <= 100:
        raise ValueError(f"risk_per_trade_pct must be in (0, 100], got {risk_per_trade_pct!r}")
    if int(max_open_trades) < 1:
        raise ValueError(f"max_open_trades must be at least 1, got {max_open_trades!r}")


def plan_allocation(
    candidates: List[PendingSignal],
    run_date: date,
    total_capital: float,
    risk_per_trade_pct: float,
    max_open_trades: int,
) -> AllocationSnapshot:
    """Pure sizing pass over candidates already in rank order."""
    _validate(total_capital, risk_per_trade_pct, max_open_trades)

    risk_amount = total_capital * risk_per_trade_pct / 100.0
    available = float(total_capital)
    committed: List[AllocationPosition] = []
    total_r = 0.0

    for signal in candidates:
        if len(committed) >= max_open_trades:
            break

        entry = float(signal.entry_price)
        stop = signal.stop_loss
        if entry <= 0 or stop is None or stop <= 0 or stop >= entry:
            log.debug("Skipping %s (id=%s): invalid stop %s for entry %.4f", signal.symbol, signal.id, stop, entry)
            continue

        risk_per_share = entry - float(stop)
        quantity = _floor(risk_amount / risk_per_share)
        if quantity * entry > available:
            quantity = int(math.floor(available / entry))
            while quantity > 0 and quantity * entry > available:
                quantity -= 1
        if quantity <= 0:
            log.debug("Skipping %s (id=%s): quantity %d", signal.symbol, signal.id, quantity)
            continue

        capital_used = quantity * entry
        expected_r = r_multiple(entry, stop, signal.target_price)
        committed.append(
            AllocationPosition(
                symbol=signal.symbol,
                quantity=quantity,
                capital_used=capital_used,
                risk_amount=risk_amount,
                expected_r=expected_r,
                allocation_pct=capital_used / total_capital * 100.0,
                signal_id=signal.id,
                entry_price=entry,
            )
        )
        available -= capital_used
        total_r += expected_r

        if available < 2 * risk_amount:
            log.debug("Stopping allocation: %.2f available < 2 x risk %.2f", available, risk_amount)
            break

    deployed = math.fsum(p.capital_used for p in committed)
    return AllocationSnapshot(
        run_date=run_date,
        total_capital=float(total_capital),
        deployed_capital=deployed,
        free_cash=float(total_capital) - deployed,
        expected_r_multiple=total_r,
        positions=tuple(committed),
    )


class CapitalAllocator:
    def __init__(self, store: SqliteStore, cfg: QuantlabConfig | None = None) -> None:
        self._store = store
        self._cfg = cfg or QuantlabConfig()

    def allocate(
        self,
        run_date: date,
        total_capital: float,
        risk_per_trade_pct: float,
        max_open_trades: int,
        *,
        persist: bool = True,
    ) -> AllocationSnapshot:
        _validate(total_capital, risk_per_trade_pct, max_open_trades)

        with self._store.lease("ALLOCATE", run_date, ttl_s=self._cfg.lease_ttl_s):
            with self._store.transaction():
                candidates = self._store.pending_signals(run_date)
                snapshot = plan_allocation(candidates, run_date, total_capital, risk_per_trade_pct, max_open_trades)
                if persist:
                    snapshot = self._store.save_allocation(snapshot)

        log.info(
            "Allocation %s: %d positions, deployed %.2f of %.2f, expected R %.2f",
            run_date,
            len(snapshot.positions),
            snapshot.deployed_capital,
            snapshot.total_capital,
            snapshot.expected_r_multiple,
        )
        return snapshot

    def history(self, start: Optional[date] = None, end: Optional[date] = None) -> List[AllocationSnapshot]:
        return self._store.allocation_snapshots(start, end)
