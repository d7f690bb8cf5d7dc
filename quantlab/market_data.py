"""
Market data boundaries.

`CandleStore` supplies ascending end-of-day history per instrument; `PriceProvider`
supplies the latest price used by the lifecycle checks. `MarketDataClient` wraps a
provider with a per-call timeout, a single retry and a small TTL cache so one slow
symbol can never stall a batch.
"""

from __future__ import annotations

import csv
import logging
import threading
import time
from abc import ABC, abstractmethod
from bisect import bisect_right
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from quantlab.models import Candle

log = logging.getLogger(__name__)


class MarketDataError(RuntimeError):
    """A price or history fetch failed after its retry was exhausted."""

    def __init__(self, symbol: str, message: str) -> None:
        self.symbol = symbol
        super().__init__(f"{symbol}: {message}")


class CandleStore(ABC):
    @abstractmethod
    def symbols(self, market: Optional[str] = None) -> List[str]:
        """Instrument symbols, optionally restricted to one market."""

    @abstractmethod
    def candles(self, symbol: str, end_date: Optional[date] = None, limit: Optional[int] = None) -> List[Candle]:
        """Ascending candles up to and including `end_date` (the last `limit` when given)."""


class PriceProvider(ABC):
    @abstractmethod
    def current_price(self, symbol: str) -> float:
        ...


class InMemoryCandleStore(CandleStore):
    """Candle history held in memory, one ascending series per symbol."""

    def __init__(self, candles: Iterable[Candle] = (), markets: Optional[Dict[str, str]] = None) -> None:
        self._series: Dict[str, List[Candle]] = {}
        self._markets: Dict[str, str] = {k.upper(): v.upper() for k, v in (markets or {}).items()}
        self._lock = threading.Lock()
        self.add_all(candles)

    def add(self, candle: Candle, market: Optional[str] = None) -> None:
        with self._lock:
            series = self._series.setdefault(candle.symbol, [])
            # One bar per (symbol, date): a later add replaces the earlier one.
            series[:] = [c for c in series if c.trade_date != candle.trade_date]
            series.append(candle)
            series.sort(key=lambda c: c.trade_date)
            if market:
                self._markets[candle.symbol.upper()] = market.upper()

    def add_all(self, candles: Iterable[Candle]) -> None:
        for candle in candles:
            self.add(candle)

    def symbols(self, market: Optional[str] = None) -> List[str]:
        with self._lock:
            names = sorted(self._series)
        if market is None:
            return names
        wanted = market.upper()
        return [s for s in names if self._markets.get(s.upper()) == wanted]

    def candles(self, symbol: str, end_date: Optional[date] = None, limit: Optional[int] = None) -> List[Candle]:
        with self._lock:
            series = list(self._series.get(symbol, ()))
        if end_date is not None:
            cut = bisect_right([c.trade_date for c in series], end_date)
            series = series[:cut]
        if limit is not None and limit >= 0:
            series = series[-limit:] if limit else []
        return series

    def latest_date(self) -> Optional[date]:
        with self._lock:
            dates = [s[-1].trade_date for s in self._series.values() if s]
        return max(dates) if dates else None


def load_candles_csv(path: str | Path) -> InMemoryCandleStore:
    """
    Load a CSV with columns symbol,date,open,high,low,close,volume[,market].

    Rows with unparsable numbers are skipped with a warning.
    """
    store = InMemoryCandleStore()
    with open(path, newline="", encoding="utf-8") as fh:
        for lineno, row in enumerate(csv.DictReader(fh), start=2):
            try:
                candle = Candle(
                    symbol=row["symbol"].strip().upper(),
                    trade_date=date.fromisoformat(row["date"].strip()),
                    open=float(row["open"]),
                    high=float(row["high"]),
                    low=float(row["low"]),
                    close=float(row["close"]),
                    volume=int(float(row.get("volume") or 0)),
                )
            except (KeyError, TypeError, ValueError) as exc:
                log.warning("Skipping %s line %d: %s", path, lineno, exc)
                continue
            store.add(candle, market=(row.get("market") or "").strip() or None)
    return store


class CandlePriceProvider(PriceProvider):
    """Latest close from a candle store, optionally as of a fixed date."""

    def __init__(self, store: CandleStore, as_of: Optional[date] = None) -> None:
        self._store = store
        self._as_of = as_of

    def current_price(self, symbol: str) -> float:
        latest = self._store.candles(symbol, end_date=self._as_of, limit=1)
        if not latest:
            raise MarketDataError(symbol, "no candles available")
        return float(latest[-1].close)


@dataclass(frozen=True)
class MarketDataConfig:
    ttl_seconds: float = 30.0
    timeout_seconds: float = 10.0
    retries: int = 1
    max_workers: int = 4


class MarketDataClient:
    """
    Caching, timeout-bounded wrapper around a PriceProvider.
    """

    def __init__(self, provider: PriceProvider, cfg: MarketDataConfig | None = None) -> None:
        self._provider = provider
        self._cfg = cfg or MarketDataConfig()
        self._cache: Dict[str, tuple[float, float]] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=self._cfg.max_workers, thread_name_prefix="quantlab-md")

    def get_price(self, symbol: str) -> float:
        now = time.time()
        with self._lock:
            cached = self._cache.get(symbol)
        if cached is not None and (now - cached[1]) < self._cfg.ttl_seconds:
            return cached[0]

        attempts = 1 + max(0, self._cfg.retries)
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            future = self._executor.submit(self._provider.current_price, symbol)
            try:
                price = float(future.result(timeout=self._cfg.timeout_seconds))
            except FutureTimeout:
                future.cancel()
                last_error = TimeoutError(f"timed out after {self._cfg.timeout_seconds}s")
            except Exception as exc:
                last_error = exc
            else:
                self._validate_price(symbol, price)
                with self._lock:
                    self._cache[symbol] = (price, time.time())
                return price
            log.warning("Price fetch for %s failed (attempt %d/%d): %s", symbol, attempt, attempts, last_error)

        raise MarketDataError(symbol, f"price unavailable: {last_error}")

    def invalidate(self, symbol: Optional[str] = None) -> None:
        with self._lock:
            if symbol is None:
                self._cache.clear()
            else:
                self._cache.pop(symbol, None)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "MarketDataClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @staticmethod
    def _validate_price(symbol: str, price: float) -> None:
        if not price > 0:
            raise MarketDataError(symbol, f"invalid price {price!r}")
