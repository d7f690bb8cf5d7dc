"""Tests for the strategy contract, typed parameters and the registry."""

from __future__ import annotations

import logging

import pytest

from conftest import StubStrategy, make_series
from quantlab.models import Side
from quantlab.strategy import (
    ExecutionMode,
    InvalidParameterError,
    StrategyNotFoundError,
    StrategyParams,
    StrategyRegistry,
    StrategyResult,
    default_registry,
)


# ───────────────────────────── params ─────────────────────────────


class TestStrategyParams:
    def test_typed_accessors_fall_back_to_default(self):
        p = StrategyParams.of(lookbackDays="25", multiplier="x", enabled="yes", label=7)
        assert p.get_int("lookbackDays", 20) == 25
        assert p.get_float("multiplier", 1.5) == 1.5
        assert p.get_bool("enabled", False) is True
        assert p.get_str("label", "") == "7"
        assert p.get_int("missing", 3) == 3

    def test_bool_parsing(self):
        p = StrategyParams.of(a=False, b="off", c="1")
        assert p.get_bool("a", True) is False
        assert p.get_bool("b", True) is False
        assert p.get_bool("c", False) is True

    def test_contains(self):
        p = StrategyParams.of(x=1)
        assert "x" in p
        assert "y" not in p


# ───────────────────────────── evaluate ─────────────────────────────


class TestEvaluate:
    def test_short_history_is_empty_and_not_actionable(self):
        strategy = StubStrategy("S1", required=5)
        result = strategy.evaluate(make_series("AAA", [10, 11, 12]), ExecutionMode.SCREEN)
        assert result == StrategyResult.empty(False)
        assert result.is_empty
        assert not result.is_actionable

    def test_screen_only_looks_at_last_bar(self):
        strategy = StubStrategy("S1", required=2)
        candles = make_series("AAA", [10, 11, 12, 13])
        result = strategy.evaluate(candles, ExecutionMode.SCREEN)
        assert len(result) == 1
        assert result.is_actionable
        assert result.signals[0].signal_date == candles[-1].trade_date
        assert result.signals[0].entry_price == 13.0
        assert result.signals[0].strategy_code == "S1"

    def test_screen_without_trigger_is_empty(self):
        strategy = StubStrategy("S1", symbols=["ZZZ"])
        result = strategy.evaluate(make_series("AAA", [10, 11]), ExecutionMode.SCREEN)
        assert result.is_empty
        assert not result.is_actionable

    def test_backtest_scans_every_bar_with_enough_history(self):
        strategy = StubStrategy("S1", required=3)
        candles = make_series("AAA", [10, 11, 12, 13, 14])
        result = strategy.evaluate(candles, ExecutionMode.BACKTEST)
        assert not result.is_actionable
        assert [s.signal_date for s in result.signals] == [c.trade_date for c in candles[2:]]

    def test_invalid_params_raise_before_scanning(self):
        strategy = StubStrategy("S1", fail_on=["AAA"])
        with pytest.raises(InvalidParameterError):
            strategy.evaluate(make_series("AAA", [10, 11]), ExecutionMode.BACKTEST, StrategyParams.of(lookback=1))

    def test_invalid_parameter_error_is_a_value_error(self):
        assert issubclass(InvalidParameterError, ValueError)

    def test_signal_fields_come_from_the_bar(self):
        strategy = StubStrategy("S1", side=Side.SELL, stop_offset=None, target_offset=None)
        bar = make_series("AAA", [50])[0]
        (signal,) = strategy.evaluate([bar], ExecutionMode.SCREEN).signals
        assert signal.side == Side.SELL
        assert signal.stop_loss is None
        assert signal.target_price is None
        assert signal.quantity == 1


# ───────────────────────────── registry ─────────────────────────────


class TestStrategyRegistry:
    def test_lookup_is_case_insensitive(self):
        reg = StrategyRegistry([StubStrategy("S1")])
        assert reg.get("s1").code == "S1"
        assert reg.is_registered(" s1 ")
        assert reg.find("nope") is None

    def test_unknown_code_lists_available(self):
        reg = StrategyRegistry([StubStrategy("S2"), StubStrategy("S1")])
        with pytest.raises(StrategyNotFoundError) as excinfo:
            reg.get("NOPE")
        assert excinfo.value.available == ["S1", "S2"]
        assert "NOPE" in str(excinfo.value)

    def test_empty_code_rejected(self):
        reg = StrategyRegistry()
        with pytest.raises(ValueError):
            reg.get("  ")
        assert reg.find("") is None

    def test_reregister_replaces_with_warning(self, caplog):
        reg = StrategyRegistry([StubStrategy("S1")])
        replacement = StubStrategy("S1", side=Side.SELL)
        with caplog.at_level(logging.WARNING, logger="quantlab.strategy.registry"):
            reg.register(replacement)
        assert reg.get("S1") is replacement
        assert len(reg) == 1
        assert "already registered" in caplog.text

    def test_unregister(self):
        reg = StrategyRegistry([StubStrategy("S1")])
        assert reg.unregister("S1") is True
        assert reg.unregister("S1") is False
        assert reg.codes() == []

    def test_default_registry_metadata(self):
        reg = default_registry()
        assert reg.codes() == ["ATR_BREAKOUT", "EOD_BREAKOUT_VOL", "SMA_CROSSOVER"]
        by_code = {m.code: m for m in reg.metadata()}
        assert by_code["EOD_BREAKOUT_VOL"].min_candles == 21
        assert by_code["ATR_BREAKOUT"].min_candles == 35
        assert by_code["SMA_CROSSOVER"].min_candles == 22
