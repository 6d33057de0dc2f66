"""
市场数据相关类型定义
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Candle:
    """已收盘K线"""
    symbol: str
    interval: str
    open_time: datetime
    close_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    quote_volume: float = 0.0
    trade_count: int = 0
    taker_buy_volume: Optional[float] = None
    cvd: Optional[float] = None  # 累计成交量差，由上游聚合

    @property
    def volume_delta(self) -> Optional[float]:
        """本根K线的主动买卖差 = 主动买量 - 主动卖量"""
        if self.taker_buy_volume is None:
            return None
        return self.taker_buy_volume - (self.volume - self.taker_buy_volume)

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3.0


@dataclass(frozen=True)
class AggTrade:
    """归集成交"""
    symbol: str
    price: float
    quantity: float
    timestamp: datetime
    is_buyer_maker: bool  # True 表示主动卖出


@dataclass(frozen=True)
class DerivativesMetrics:
    """衍生品指标（资金费率 / 持仓量）"""
    symbol: str
    timestamp: datetime
    funding_rate: Optional[float] = None
    open_interest: Optional[float] = None
    previous_open_interest: Optional[float] = None
