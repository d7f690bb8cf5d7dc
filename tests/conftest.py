from __future__ import annotations

from datetime import date, timedelta
from typing import Dict, List, Optional, Sequence

import pytest

from quantlab.market_data import MarketDataClient, MarketDataConfig, MarketDataError, PriceProvider
from quantlab.models import Candle, RawSignal, Side
from quantlab.persistence import SqliteStore
from quantlab.strategy.base import Strategy, StrategyParams

START = date(2024, 1, 1)


def make_series(
    symbol: str,
    closes: Sequence[float],
    *,
    start: date = START,
    volume: int = 1_000_000,
    volumes: Optional[Sequence[int]] = None,
    spread: float = 1.0,
) -> List[Candle]:
    """Consecutive daily candles with open == close and high/low = close +/- spread."""
    out = []
    for i, close in enumerate(closes):
        out.append(
            Candle(
                symbol=symbol,
                trade_date=start + timedelta(days=i),
                open=float(close),
                high=float(close) + spread,
                low=float(close) - spread,
                close=float(close),
                volume=int(volumes[i]) if volumes is not None else volume,
            )
        )
    return out


class StubStrategy(Strategy):
    """Emits one BUY per bar with a fixed stop/target offset from the close."""

    def __init__(
        self,
        code: str,
        *,
        side: Side = Side.BUY,
        stop_offset: Optional[float] = 5.0,
        target_offset: Optional[float] = 10.0,
        required: int = 1,
        symbols: Optional[Sequence[str]] = None,
        fail_on: Sequence[str] = (),
    ) -> None:
        self.code = code
        self.name = f"Stub {code}"
        self.description = "test stub"
        self._side = side
        self._stop_offset = stop_offset
        self._target_offset = target_offset
        self._required = required
        self._symbols = set(symbols) if symbols is not None else None
        self._fail_on = set(fail_on)

    def validate_params(self, params: StrategyParams) -> None:
        if params.get_int("lookback", 2) < 2:
            from quantlab.strategy.base import InvalidParameterError

            raise InvalidParameterError("lookback must be at least 2")

    def min_candles(self, params: Optional[StrategyParams] = None) -> int:
        return self._required

    def signals_at(self, candles, index, params) -> List[RawSignal]:
        bar = candles[index]
        if bar.symbol in self._fail_on:
            raise RuntimeError(f"boom on {bar.symbol}")
        if self._symbols is not None and bar.symbol not in self._symbols:
            return []
        stop = None if self._stop_offset is None else bar.close - self._stop_offset
        target = None if self._target_offset is None else bar.close + self._target_offset
        return [self._signal(bar, self._side, stop_loss=stop, target_price=target)]


class StubPrices(PriceProvider):
    def __init__(self, prices: Optional[Dict[str, float]] = None) -> None:
        self.prices: Dict[str, float] = dict(prices or {})
        self.calls: Dict[str, int] = {}

    def current_price(self, symbol: str) -> float:
        self.calls[symbol] = self.calls.get(symbol, 0) + 1
        if symbol not in self.prices:
            raise MarketDataError(symbol, "no quote")
        return self.prices[symbol]


@pytest.fixture
def store():
    s = SqliteStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def stub_prices():
    return StubPrices()


@pytest.fixture
def price_client(stub_prices):
    client = MarketDataClient(stub_prices, MarketDataConfig(ttl_seconds=0.0, timeout_seconds=2.0, retries=1))
    yield client
    client.close()
