import math
from datetime import datetime, timedelta, timezone

import pytest

from orderflow.models.indicator import IndicatorSnapshot
from orderflow.models.market_data import Candle
from orderflow.storage.store import MemoryStore

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _candle(index, close, symbol='BTCUSDT', interval='1h', volume=100.0, spread=0.005,
            taker_buy_volume=None):
    open_time = BASE_TIME + timedelta(hours=index)
    return Candle(
        symbol=symbol,
        interval=interval,
        open_time=open_time,
        close_time=open_time + timedelta(hours=1) - timedelta(milliseconds=1),
        open=close,
        high=close * (1 + spread),
        low=close * (1 - spread),
        close=close,
        volume=volume,
        taker_buy_volume=taker_buy_volume,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def make_candle():
    return _candle


@pytest.fixture
def make_candles():
    def factory(closes, **kwargs):
        return [_candle(i, close, **kwargs) for i, close in enumerate(closes)]
    return factory


@pytest.fixture
def wave_closes():
    """带轻微上升趋势的正弦价格序列"""
    def factory(n):
        return [100 + 10 * math.sin(i / 10.0) + 0.05 * i for i in range(n)]
    return factory


@pytest.fixture
def make_snapshot():
    def factory(**kwargs):
        values = dict(symbol='BTCUSDT', interval='1h', timestamp=BASE_TIME, price=100.0, volume=100.0)
        values.update(kwargs)
        return IndicatorSnapshot(**values)
    return factory


class ManualClock:
    def __init__(self, now=BASE_TIME):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return ManualClock()
