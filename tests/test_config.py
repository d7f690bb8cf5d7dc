import os
import unittest
from unittest import mock

from quantlab.config import DEFAULT_STRATEGY_WEIGHTS, QuantlabConfig, RankingWeights, _parse_weights


class TestQuantlabConfig(unittest.TestCase):
    def test_defaults(self) -> None:
        cfg = QuantlabConfig()
        self.assertIsNone(cfg.db_path)
        self.assertEqual(cfg.screen_workers, 8)
        self.assertEqual(cfg.backtest_workers, 4)
        self.assertEqual(cfg.ensemble.min_strategies, 2)
        self.assertEqual(cfg.ensemble.min_buy_votes, 2)
        self.assertEqual(cfg.ranking, RankingWeights())
        self.assertAlmostEqual(
            cfg.ranking.confidence
            + cfg.ranking.r_multiple
            + cfg.ranking.liquidity
            + cfg.ranking.win_rate
            + cfg.ranking.volatility_fit,
            1.0,
        )

    def test_weight_for_known_unknown_and_case(self) -> None:
        cfg = QuantlabConfig()
        self.assertEqual(cfg.weight_for("SMA_CROSSOVER"), 1.2)
        self.assertEqual(cfg.weight_for("sma_crossover"), 1.2)
        self.assertEqual(cfg.weight_for("NOT_A_STRATEGY"), 1.0)

    def test_weight_tables_are_not_shared(self) -> None:
        a = QuantlabConfig()
        a.strategy_weights["X"] = 9.0
        self.assertNotIn("X", QuantlabConfig().strategy_weights)
        self.assertNotIn("X", DEFAULT_STRATEGY_WEIGHTS)

    def test_from_env(self) -> None:
        env = {
            "QUANTLAB_DB_PATH": "/tmp/q.sqlite3",
            "QUANTLAB_SCREEN_WORKERS": "3",
            "QUANTLAB_MAX_HOLDING_DAYS": "0",
            "QUANTLAB_STRATEGY_WEIGHTS": "s1=1.0, S2=1.2",
        }
        with mock.patch.dict(os.environ, env, clear=False):
            cfg = QuantlabConfig.from_env()
        self.assertEqual(cfg.db_path, "/tmp/q.sqlite3")
        self.assertEqual(cfg.screen_workers, 3)
        self.assertEqual(cfg.max_holding_days, 0)
        self.assertEqual(cfg.weight_for("S1"), 1.0)
        self.assertEqual(cfg.weight_for("S2"), 1.2)
        # Defaults survive an override of other codes.
        self.assertEqual(cfg.weight_for("ATR_BREAKOUT"), 1.3)

    def test_from_env_blank_values_fall_back(self) -> None:
        with mock.patch.dict(os.environ, {"QUANTLAB_DB_PATH": "  ", "QUANTLAB_SCREEN_WORKERS": ""}, clear=False):
            cfg = QuantlabConfig.from_env()
        self.assertIsNone(cfg.db_path)
        self.assertEqual(cfg.screen_workers, 8)

    def test_parse_weights_rejects_garbage(self) -> None:
        with self.assertRaises(ValueError):
            _parse_weights("S1")
        with self.assertRaises(ValueError):
            _parse_weights("S1=abc")
        self.assertEqual(_parse_weights(" , a=2 ,"), {"A": 2.0})
