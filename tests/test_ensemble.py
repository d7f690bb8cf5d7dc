"""Tests for ensemble voting."""

from __future__ import annotations

import random
from datetime import date, timedelta

import pytest

from conftest import START, StubStrategy, make_series
from quantlab.config import EnsembleConfig, QuantlabConfig
from quantlab.ensemble import EnsembleVotingEngine
from quantlab.market_data import InMemoryCandleStore
from quantlab.models import RawSignal, Side
from quantlab.screening import Screener
from quantlab.strategy import StrategyRegistry

D = date(2024, 3, 1)


def raw(symbol, code, side=Side.BUY, entry=100.0, stop=None, target=None):
    return RawSignal(
        symbol=symbol,
        signal_date=D,
        side=side,
        entry_price=entry,
        strategy_code=code,
        stop_loss=stop,
        target_price=target,
    )


def _engine(cfg=None, candles=None):
    cfg = cfg or QuantlabConfig(strategy_weights={"S1": 1.0, "S2": 1.2, "S3": 1.5})
    candles = candles or InMemoryCandleStore()
    screener = Screener(candles, StrategyRegistry(), cfg)
    return EnsembleVotingEngine(screener, cfg)


# ───────────────────────────── voting rules ─────────────────────────────


class TestVote:
    def test_two_buy_votes_make_a_consensus(self):
        (e,) = _engine().vote(
            [raw("AAPL", "S1", entry=100.0, stop=95.0), raw("AAPL", "S2", entry=102.0, stop=96.0)],
            D,
        )
        assert e.symbol == "AAPL"
        assert e.side == Side.BUY
        assert e.buy_votes == 2
        assert e.total_strategies == 2
        assert e.confidence_score == pytest.approx(2.2)
        assert e.entry_price == pytest.approx(101.0)
        assert e.stop_loss == pytest.approx(95.5)
        assert e.target_price == 0.0
        assert e.r_multiple == 0.0
        assert e.strategy_votes == {"S1": "BUY", "S2": "BUY"}
        # 2.2*.35 + 0*.25 + .5*.15 + .5*.15 + .5*.10
        assert e.rank_score == pytest.approx(0.97)

    def test_single_strategy_is_rejected(self):
        assert _engine().vote([raw("AAPL", "S1"), raw("AAPL", "S1", side=Side.SELL)], D) == []

    def test_not_enough_buy_votes(self):
        assert _engine().vote([raw("AAPL", "S1"), raw("AAPL", "S2", side=Side.SELL)], D) == []

    def test_sell_votes_count_toward_strategies_not_confidence(self):
        signals = [raw("AAPL", "S1"), raw("AAPL", "S2"), raw("AAPL", "S3", side=Side.SELL, entry=130.0)]
        (e,) = _engine().vote(signals, D)
        assert e.total_strategies == 3
        assert e.buy_votes == 2
        assert e.confidence_score == pytest.approx(2.2)
        assert e.entry_price == pytest.approx(110.0)
        assert e.strategy_votes["S3"] == "SELL"

    def test_strategy_with_both_sides_votes_sell(self):
        signals = [raw("AAPL", "S1"), raw("AAPL", "S1", side=Side.SELL), raw("AAPL", "S2"), raw("AAPL", "S3")]
        (e,) = _engine().vote(signals, D)
        assert e.strategy_votes == {"S1": "SELL", "S2": "BUY", "S3": "BUY"}
        assert e.confidence_score == pytest.approx(2.7)

    def test_unknown_code_uses_default_weight(self):
        (e,) = _engine().vote([raw("AAPL", "X1"), raw("AAPL", "X2")], D)
        assert e.confidence_score == pytest.approx(2.0)

    def test_target_mean_uses_only_signals_that_carry_one(self):
        signals = [raw("AAPL", "S1", stop=95.0, target=110.0), raw("AAPL", "S2", stop=95.0)]
        (e,) = _engine().vote(signals, D)
        assert e.target_price == pytest.approx(110.0)
        assert e.r_multiple == pytest.approx(2.0)

    def test_thresholds_are_configurable(self):
        cfg = QuantlabConfig(ensemble=EnsembleConfig(min_strategies=1, min_buy_votes=1))
        (e,) = _engine(cfg).vote([raw("AAPL", "S1")], D)
        assert e.buy_votes == 1

    def test_order_of_input_does_not_matter(self):
        signals = [
            raw("AAPL", "S1", entry=100.0, stop=95.0, target=110.0),
            raw("AAPL", "S2", entry=101.0, stop=94.0),
            raw("AAPL", "S3", side=Side.SELL, entry=99.0),
            raw("MSFT", "S1", entry=50.0, stop=48.0, target=56.0),
            raw("MSFT", "S3", entry=51.0, stop=49.0, target=57.0),
            raw("TSLA", "S2"),
        ]
        expected = _engine().vote(signals, D)
        shuffled = list(signals)
        random.Random(7).shuffle(shuffled)
        assert _engine().vote(shuffled, D) == expected
        assert [e.symbol for e in expected] == ["MSFT", "AAPL"]

    def test_results_are_sorted_by_rank(self):
        signals = [
            raw("LOW", "S1"),
            raw("LOW", "S2"),
            raw("HIGH", "S1", stop=95.0, target=120.0),
            raw("HIGH", "S3", stop=95.0, target=120.0),
        ]
        ranked = _engine().vote(signals, D)
        assert [e.symbol for e in ranked] == ["HIGH", "LOW"]
        assert ranked[0].rank_score > ranked[1].rank_score

    def test_sub_scores_use_history_up_to_run_date(self):
        candles = InMemoryCandleStore(make_series("AAPL", [100.0] * 30, start=D - timedelta(days=29), volume=1_000_000))
        candles.add_all(make_series("AAPL", [100.0] * 5, start=D + timedelta(days=1), volume=100_000_000))
        (e,) = _engine(candles=candles).vote([raw("AAPL", "S1", stop=96.0), raw("AAPL", "S2", stop=96.0)], D)
        assert e.liquidity_score == pytest.approx(0.6)
        # stop 4% away with ATR 2% -> ratio 2.0
        assert e.volatility_fit == pytest.approx(0.85)


# ───────────────────────────── end to end ─────────────────────────────


class TestRun:
    def test_run_screens_then_votes(self):
        candles = InMemoryCandleStore()
        for symbol in ("AAA", "BBB"):
            candles.add_all(make_series(symbol, [10, 11, 12]))
        registry = StrategyRegistry([StubStrategy("S1"), StubStrategy("S2", symbols=["AAA"]), StubStrategy("S3")])
        cfg = QuantlabConfig()
        screener = Screener(candles, registry, cfg, today=lambda: START + timedelta(days=10))
        engine = EnsembleVotingEngine(screener, cfg)

        results = engine.run(["S1", "S2"], START + timedelta(days=2))
        assert [e.symbol for e in results] == ["AAA"]
        assert results[0].entry_price == 12.0
        assert results[0].stop_loss == 7.0
        assert results[0].target_price == 22.0

        both = engine.run(["S1", "S3"], START + timedelta(days=2))
        assert [e.symbol for e in both] == ["AAA", "BBB"]

    def test_run_requires_codes(self):
        with pytest.raises(ValueError):
            _engine().run([], D)

    def test_future_date_is_rejected(self):
        screener = Screener(InMemoryCandleStore(), StrategyRegistry([StubStrategy("S1")]), today=lambda: D)
        with pytest.raises(ValueError):
            EnsembleVotingEngine(screener).run(["S1"], D + timedelta(days=1))

    def test_to_pending_signal_maps_missing_levels_to_none(self):
        (e,) = _engine().vote([raw("AAPL", "S1", stop=95.0), raw("AAPL", "S2", stop=96.0)], D)
        pending = e.to_pending_signal()
        assert pending.strategy_code == "ENSEMBLE"
        assert pending.stop_loss == pytest.approx(95.5)
        assert pending.target_price is None
        assert pending.rank_score == pytest.approx(e.rank_score)
        assert pending.confidence_score == pytest.approx(2.2)
