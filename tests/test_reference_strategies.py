from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import make_series
from quantlab.models import Candle, Side
from quantlab.strategy import ExecutionMode, InvalidParameterError, StrategyParams
from quantlab.strategy.breakout import ATRBreakoutStrategy, EODBreakoutVolStrategy
from quantlab.strategy.trend import SMACrossoverStrategy


def _append(candles, *, open, high, low, close, volume):
    last = candles[-1]
    return candles + [
        Candle(
            symbol=last.symbol,
            trade_date=last.trade_date + timedelta(days=1),
            open=open,
            high=high,
            low=low,
            close=close,
            volume=volume,
        )
    ]


# ───────────────────────────── EOD breakout ─────────────────────────────


class TestEODBreakoutVol:
    def _setup(self, volume=2_000_000, close=105.0):
        base = make_series("AAA", [100.0] * 20)
        return _append(base, open=100.0, high=close + 1, low=close - 1, close=close, volume=volume)

    def test_breakout_on_volume(self):
        candles = self._setup()
        result = EODBreakoutVolStrategy().evaluate(candles, ExecutionMode.SCREEN)
        assert result.is_actionable
        (signal,) = result.signals
        assert signal.side == Side.BUY
        assert signal.entry_price == 105.0
        assert signal.stop_loss == pytest.approx(99.0)
        assert signal.target_price == pytest.approx(117.0)
        assert signal.strategy_code == "EOD_BREAKOUT_VOL"

    def test_no_signal_without_volume(self):
        candles = self._setup(volume=1_200_000)
        assert EODBreakoutVolStrategy().evaluate(candles, ExecutionMode.SCREEN).is_empty

    def test_no_signal_inside_range(self):
        candles = self._setup(close=100.5)
        assert EODBreakoutVolStrategy().evaluate(candles, ExecutionMode.SCREEN).is_empty

    def test_short_history(self):
        candles = self._setup()[1:]
        result = EODBreakoutVolStrategy().evaluate(candles, ExecutionMode.SCREEN)
        assert result.is_empty and not result.is_actionable

    def test_shorter_lookback_param(self):
        candles = self._setup()[-6:]
        result = EODBreakoutVolStrategy().evaluate(candles, ExecutionMode.SCREEN, StrategyParams.of(lookbackDays=5))
        assert len(result) == 1

    def test_rejects_bad_lookback(self):
        with pytest.raises(InvalidParameterError):
            EODBreakoutVolStrategy().evaluate(self._setup(), ExecutionMode.SCREEN, StrategyParams.of(lookbackDays=0))


# ───────────────────────────── ATR breakout ─────────────────────────────


class TestATRBreakout:
    def _setup(self, volume=2_000_000, high=105.0):
        base = make_series("BBB", [100.0] * 34)
        return _append(base, open=100.0, high=high, low=100.0, close=104.0, volume=volume)

    def test_wide_range_bullish_bar(self):
        result = ATRBreakoutStrategy().evaluate(self._setup(), ExecutionMode.SCREEN)
        (signal,) = result.signals
        assert signal.stop_loss == pytest.approx(100.0)
        assert signal.target_price == pytest.approx(112.0)

    def test_narrow_range_is_ignored(self):
        # range 2.5 is not above 1.5 x ATR(2.0)
        assert ATRBreakoutStrategy().evaluate(self._setup(high=102.5), ExecutionMode.SCREEN).is_empty

    def test_needs_volume_above_average(self):
        assert ATRBreakoutStrategy().evaluate(self._setup(volume=1_000_000), ExecutionMode.SCREEN).is_empty

    def test_bearish_bar_is_ignored(self):
        base = make_series("BBB", [100.0] * 34)
        candles = _append(base, open=104.0, high=105.0, low=100.0, close=100.5, volume=2_000_000)
        assert ATRBreakoutStrategy().evaluate(candles, ExecutionMode.SCREEN).is_empty

    @pytest.mark.parametrize(
        "params",
        [
            {"atrPeriod": 1},
            {"atrMultiplier": 0},
            {"volumeLookback": 0},
            {"riskRewardRatio": -1},
        ],
    )
    def test_parameter_validation(self, params):
        with pytest.raises(InvalidParameterError):
            ATRBreakoutStrategy().validate_params(StrategyParams(params))


# ───────────────────────────── SMA crossover ─────────────────────────────


class TestSMACrossover:
    PARAMS = StrategyParams.of(fastSMA=3, slowSMA=5)

    def test_crossover_bar(self):
        candles = make_series("CCC", [10.0] * 6 + [12.0])
        result = SMACrossoverStrategy().evaluate(candles, ExecutionMode.SCREEN, self.PARAMS)
        (signal,) = result.signals
        assert signal.entry_price == 12.0
        assert signal.stop_loss == pytest.approx(9.0)
        assert signal.target_price == pytest.approx(16.5)

    def test_backtest_finds_single_cross(self):
        candles = make_series("CCC", [10.0] * 6 + [12.0])
        result = SMACrossoverStrategy().evaluate(candles, ExecutionMode.BACKTEST, self.PARAMS)
        assert [s.signal_date for s in result.signals] == [candles[-1].trade_date]
        assert not result.is_actionable

    def test_no_signal_once_above(self):
        candles = make_series("CCC", [10.0] * 6 + [12.0, 13.0])
        assert SMACrossoverStrategy().evaluate(candles, ExecutionMode.SCREEN, self.PARAMS).is_empty

    def test_fast_must_be_below_slow(self):
        with pytest.raises(InvalidParameterError):
            SMACrossoverStrategy().validate_params(StrategyParams.of(fastSMA=5, slowSMA=5))

    def test_min_candles_follows_slow_period(self):
        assert SMACrossoverStrategy().min_candles(self.PARAMS) == 6
        assert SMACrossoverStrategy().min_candles() == 22
