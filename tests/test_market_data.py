from __future__ import annotations

import threading
from datetime import date, timedelta

import pytest

from conftest import START, StubPrices, make_series
from quantlab.market_data import (
    CandlePriceProvider,
    InMemoryCandleStore,
    MarketDataClient,
    MarketDataConfig,
    MarketDataError,
    PriceProvider,
    load_candles_csv,
)
from quantlab.models import Candle


class TestInMemoryCandleStore:
    def test_history_is_ascending_and_cut_at_end_date(self):
        candles = make_series("AAA", [1, 2, 3, 4, 5])
        store = InMemoryCandleStore(reversed(candles))
        got = store.candles("AAA", end_date=START + timedelta(days=2))
        assert [c.close for c in got] == [1.0, 2.0, 3.0]

    def test_limit_takes_most_recent(self):
        store = InMemoryCandleStore(make_series("AAA", [1, 2, 3, 4, 5]))
        assert [c.close for c in store.candles("AAA", limit=2)] == [4.0, 5.0]
        assert store.candles("AAA", limit=0) == []

    def test_same_date_replaces(self):
        store = InMemoryCandleStore(make_series("AAA", [1, 2]))
        store.add(Candle("AAA", START, 9, 9, 9, 9, 10))
        assert [c.close for c in store.candles("AAA")] == [9.0, 2.0]

    def test_market_filter_and_unknown_symbol(self):
        store = InMemoryCandleStore(markets={"AAA": "us"})
        store.add_all(make_series("AAA", [1]))
        store.add(make_series("BBB", [1])[0], market="IN")
        assert store.symbols() == ["AAA", "BBB"]
        assert store.symbols("US") == ["AAA"]
        assert store.symbols("in") == ["BBB"]
        assert store.candles("ZZZ") == []

    def test_latest_date(self):
        assert InMemoryCandleStore().latest_date() is None
        store = InMemoryCandleStore(make_series("AAA", [1, 2, 3]) + make_series("BBB", [1]))
        assert store.latest_date() == START + timedelta(days=2)


def test_load_candles_csv_skips_bad_rows(tmp_path):
    path = tmp_path / "candles.csv"
    path.write_text(
        "symbol,date,open,high,low,close,volume,market\n"
        "aaa,2024-01-02,10,11,9,10.5,1000,US\n"
        "AAA,not-a-date,10,11,9,10.5,1000,US\n"
        "BBB,2024-01-02,20,21,19,20.5,,\n",
        encoding="utf-8",
    )
    store = load_candles_csv(path)
    assert store.symbols() == ["AAA", "BBB"]
    assert store.symbols("US") == ["AAA"]
    (bar,) = store.candles("AAA")
    assert bar.trade_date == date(2024, 1, 2)
    assert bar.close == 10.5
    assert store.candles("BBB")[0].volume == 0


def test_candle_price_provider_as_of():
    store = InMemoryCandleStore(make_series("AAA", [1, 2, 3]))
    assert CandlePriceProvider(store).current_price("AAA") == 3.0
    assert CandlePriceProvider(store, as_of=START + timedelta(days=1)).current_price("AAA") == 2.0
    with pytest.raises(MarketDataError):
        CandlePriceProvider(store).current_price("ZZZ")


class _FlakyPrices(PriceProvider):
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def current_price(self, symbol: str) -> float:
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("transient")
        return 42.0


class _BlockingPrices(PriceProvider):
    def __init__(self) -> None:
        self.release = threading.Event()

    def current_price(self, symbol: str) -> float:
        self.release.wait(5)
        return 1.0


class TestMarketDataClient:
    def test_retries_once(self):
        provider = _FlakyPrices(failures=1)
        with MarketDataClient(provider, MarketDataConfig(ttl_seconds=0, retries=1)) as client:
            assert client.get_price("AAA") == 42.0
        assert provider.calls == 2

    def test_gives_up_after_retry(self):
        provider = _FlakyPrices(failures=5)
        with MarketDataClient(provider, MarketDataConfig(ttl_seconds=0, retries=1)) as client:
            with pytest.raises(MarketDataError) as excinfo:
                client.get_price("AAA")
        assert provider.calls == 2
        assert excinfo.value.symbol == "AAA"

    def test_timeout_is_a_market_data_error(self):
        provider = _BlockingPrices()
        client = MarketDataClient(provider, MarketDataConfig(ttl_seconds=0, timeout_seconds=0.05, retries=0))
        try:
            with pytest.raises(MarketDataError, match="timed out"):
                client.get_price("AAA")
        finally:
            provider.release.set()
            client.close()

    def test_ttl_cache(self):
        prices = StubPrices({"AAA": 10.0})
        with MarketDataClient(prices, MarketDataConfig(ttl_seconds=60)) as client:
            assert client.get_price("AAA") == 10.0
            prices.prices["AAA"] = 11.0
            assert client.get_price("AAA") == 10.0
            client.invalidate("AAA")
            assert client.get_price("AAA") == 11.0
        assert prices.calls["AAA"] == 2

    def test_zero_ttl_never_caches(self, price_client, stub_prices):
        stub_prices.prices["AAA"] = 5.0
        price_client.get_price("AAA")
        price_client.get_price("AAA")
        assert stub_prices.calls["AAA"] == 2

    def test_non_positive_price_rejected(self, price_client, stub_prices):
        stub_prices.prices["AAA"] = 0.0
        with pytest.raises(MarketDataError, match="invalid price"):
            price_client.get_price("AAA")
