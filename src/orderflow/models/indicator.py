"""
技术指标数据结构
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class MacdValue:
    macd: float
    signal: float
    histogram: float
    ema_fast: float
    ema_slow: float


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float
    bandwidth: float  # 百分比
    percent_b: float


@dataclass(frozen=True)
class IndicatorSnapshot:
    """单根K线收盘时的指标快照，计算后不可变"""
    symbol: str
    interval: str
    timestamp: datetime
    price: float
    volume: float

    # 趋势
    ema12: Optional[float] = None
    ema26: Optional[float] = None
    ema50: Optional[float] = None
    ema200: Optional[float] = None
    sma20: Optional[float] = None

    # 动量
    macd: Optional[float] = None
    macd_signal: Optional[float] = None
    macd_histogram: Optional[float] = None
    rsi: Optional[float] = None

    # 波动性
    atr: Optional[float] = None
    bollinger_upper: Optional[float] = None
    bollinger_middle: Optional[float] = None
    bollinger_lower: Optional[float] = None

    # 成交量
    vwap: Optional[float] = None
    cvd: Optional[float] = None

    @property
    def snapshot_id(self) -> str:
        return f"{self.symbol}_{self.interval}_{int(self.timestamp.timestamp() * 1000)}"

    @property
    def has_bollinger(self) -> bool:
        return (self.bollinger_upper is not None and self.bollinger_middle is not None
                and self.bollinger_lower is not None)
