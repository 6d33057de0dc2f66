"""
按 (symbol, interval) 组织的实时状态注册表，首次使用时创建

同一品种的所有周期共用一把锁，K线处理按品种串行。
"""

import threading
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Deque, Dict, List, Optional, Tuple

from orderflow.indicators.service import IncrementalIndicators
from orderflow.models.indicator import IndicatorSnapshot
from orderflow.models.market_data import Candle, DerivativesMetrics
from orderflow.models.signal import MarketHistory
from orderflow.signal.signal_engine import LOOKBACK_PERIODS
from orderflow.utils.log import setup_logging

log = setup_logging(module_prefix='ENGINE')


@dataclass
class SymbolState:
    """单个 (symbol, interval) 的指标状态和短历史"""
    symbol: str
    interval: str
    indicators: IncrementalIndicators
    snapshots: Deque[IndicatorSnapshot] = field(default_factory=lambda: deque(maxlen=LOOKBACK_PERIODS))
    candles: Deque[Candle] = field(default_factory=lambda: deque(maxlen=LOOKBACK_PERIODS))

    @property
    def last_price(self) -> Optional[float]:
        return self.candles[-1].close if self.candles else None

    def history(self, candle: Candle, derivatives: Optional[DerivativesMetrics]) -> MarketHistory:
        """当前K线之前的历史（新的在前）"""
        return MarketHistory(
            candle=candle,
            previous_snapshots=list(reversed(self.snapshots)),
            previous_candles=list(reversed(self.candles)),
            derivatives=derivatives,
        )

    def push(self, snapshot: IndicatorSnapshot, candle: Candle):
        self.snapshots.append(snapshot)
        self.candles.append(candle)


class SymbolRegistry:
    """引擎持有的显式注册表，替代全局单例"""

    def __init__(self, indicator_window: int = 500):
        self.indicator_window = indicator_window
        self._states: Dict[Tuple[str, str], SymbolState] = {}
        self._derivatives: Dict[str, DerivativesMetrics] = {}
        self._symbol_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def get_or_create(self, symbol: str, interval: str) -> SymbolState:
        key = (symbol, interval)
        with self._lock:
            state = self._states.get(key)
            if state is None:
                state = SymbolState(
                    symbol=symbol,
                    interval=interval,
                    indicators=IncrementalIndicators(symbol, interval, window=self.indicator_window),
                )
                self._states[key] = state
                log.info(f"[ENGINE] 注册 {symbol} {interval}")
            return state

    def symbol_lock(self, symbol: str) -> threading.Lock:
        """品种级事务锁，1h 与 4h 等不同周期的K线共用"""
        with self._lock:
            lock = self._symbol_locks.get(symbol)
            if lock is None:
                lock = self._symbol_locks[symbol] = threading.Lock()
            return lock

    def get(self, symbol: str, interval: str) -> Optional[SymbolState]:
        with self._lock:
            return self._states.get((symbol, interval))

    def states(self) -> List[SymbolState]:
        with self._lock:
            return list(self._states.values())

    def update_derivatives(self, metrics: DerivativesMetrics) -> DerivativesMetrics:
        """记录最新资金费率 / 持仓量；缺少上一期持仓量时用上一条记录补齐"""
        with self._lock:
            previous = self._derivatives.get(metrics.symbol)
            if metrics.previous_open_interest is None and previous is not None:
                metrics = replace(metrics, previous_open_interest=previous.open_interest)
            if previous is not None:
                if metrics.funding_rate is None:
                    metrics = replace(metrics, funding_rate=previous.funding_rate)
                if metrics.open_interest is None:
                    metrics = replace(metrics, open_interest=previous.open_interest,
                                      previous_open_interest=previous.previous_open_interest)
            self._derivatives[metrics.symbol] = metrics
            return metrics

    def derivatives(self, symbol: str) -> Optional[DerivativesMetrics]:
        with self._lock:
            return self._derivatives.get(symbol)

    def last_prices(self) -> Dict[str, float]:
        prices = {}
        for state in self.states():
            price = state.last_price
            if price is not None:
                prices[state.symbol] = price
        return prices

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def __contains__(self, key: Tuple[str, str]) -> bool:
        with self._lock:
            return key in self._states
