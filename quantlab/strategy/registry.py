from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Optional

from quantlab.strategy.base import Strategy, StrategyMetadata

log = logging.getLogger(__name__)


class StrategyNotFoundError(KeyError):
    def __init__(self, code: str, available: Iterable[str]) -> None:
        self.code = code
        self.available = sorted(available)
        super().__init__(f"No strategy found with code {code!r}. Available strategies: {self.available}")

    def __str__(self) -> str:
        return str(self.args[0])


def _normalize(code: str) -> str:
    if code is None or not str(code).strip():
        raise ValueError("Strategy code cannot be empty")
    return str(code).strip().upper()


class StrategyRegistry:
    """Thread-safe code -> Strategy lookup used by screening workers."""

    def __init__(self, strategies: Optional[Iterable[Strategy]] = None) -> None:
        self._strategies: Dict[str, Strategy] = {}
        self._lock = threading.Lock()
        for strategy in strategies or ():
            self.register(strategy)

    def register(self, strategy: Strategy, code: Optional[str] = None) -> None:
        key = _normalize(code or strategy.code)
        with self._lock:
            if key in self._strategies:
                log.warning("Strategy %s already registered, replacing", key)
            self._strategies[key] = strategy
        log.info("Registered strategy: %s - %s", key, strategy.name)

    def unregister(self, code: str) -> bool:
        key = _normalize(code)
        with self._lock:
            removed = self._strategies.pop(key, None)
        if removed is not None:
            log.info("Unregistered strategy: %s", key)
        return removed is not None

    def get(self, code: str) -> Strategy:
        key = _normalize(code)
        with self._lock:
            strategy = self._strategies.get(key)
            available = list(self._strategies)
        if strategy is None:
            raise StrategyNotFoundError(code, available)
        return strategy

    def find(self, code: str) -> Optional[Strategy]:
        try:
            key = _normalize(code)
        except ValueError:
            return None
        with self._lock:
            return self._strategies.get(key)

    def is_registered(self, code: str) -> bool:
        return self.find(code) is not None

    def codes(self) -> List[str]:
        with self._lock:
            return sorted(self._strategies)

    def metadata(self) -> List[StrategyMetadata]:
        with self._lock:
            items = sorted(self._strategies.items())
        return [
            StrategyMetadata(code=code, name=s.name, description=s.description, min_candles=s.min_candles())
            for code, s in items
        ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._strategies)


def default_registry() -> StrategyRegistry:
    from quantlab.strategy.breakout import ATRBreakoutStrategy, EODBreakoutVolStrategy
    from quantlab.strategy.trend import SMACrossoverStrategy

    return StrategyRegistry(
        [
            EODBreakoutVolStrategy(),
            ATRBreakoutStrategy(),
            SMACrossoverStrategy(),
        ]
    )
