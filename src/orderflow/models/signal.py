"""
交易信号相关类型定义
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from orderflow.core.errors import InvalidConfiguration
from orderflow.models.indicator import IndicatorSnapshot
from orderflow.models.market_data import Candle, DerivativesMetrics

WEIGHT_EPSILON = 1e-6


class SignalType(Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    NEUTRAL = "NEUTRAL"
    CLOSE_LONG = "CLOSE_LONG"
    CLOSE_SHORT = "CLOSE_SHORT"


class SignalStrength(Enum):
    WEAK = "WEAK"
    MEDIUM = "MEDIUM"
    STRONG = "STRONG"
    VERY_STRONG = "VERY_STRONG"


class FactorName(Enum):
    TREND = "trend"
    MOMENTUM = "momentum"
    VOLUME = "volume"
    VOLATILITY = "volatility"
    DERIVATIVES = "derivatives"


@dataclass(frozen=True)
class FactorScore:
    """单个因子的评分，每次评估新建，不修改"""
    name: FactorName
    score: float
    weight: float = 0.0
    weighted_score: float = 0.0
    rationale: Tuple[str, ...] = ()
    indicators: Dict[str, float] = field(default_factory=dict)

    def with_weight(self, weight: float) -> 'FactorScore':
        return replace(self, weight=weight, weighted_score=self.score * weight)

    @property
    def description(self) -> str:
        return "; ".join(self.rationale)


@dataclass(frozen=True)
class SignalConfig:
    """信号配置：因子权重、阈值、过滤条件、建议交易参数"""
    # 因子权重，总和必须为1
    trend_weight: float = 0.30
    momentum_weight: float = 0.25
    volume_weight: float = 0.20
    volatility_weight: float = 0.15
    derivatives_weight: float = 0.10

    # 信号阈值
    strong_signal_threshold: float = 7.0
    medium_signal_threshold: float = 5.0
    weak_signal_threshold: float = 3.0

    # 过滤条件
    min_confidence: float = 0.6
    require_trend_confirmation: bool = True
    require_volume_confirmation: bool = True

    signal_expiry_minutes: int = 240

    # 风险参数
    stop_loss_atr_multiple: float = 1.5
    take_profit_ratio: float = 3.0
    max_leverage: float = 3.0

    def weight_for(self, name: FactorName) -> float:
        return {
            FactorName.TREND: self.trend_weight,
            FactorName.MOMENTUM: self.momentum_weight,
            FactorName.VOLUME: self.volume_weight,
            FactorName.VOLATILITY: self.volatility_weight,
            FactorName.DERIVATIVES: self.derivatives_weight,
        }[name]

    def validate(self) -> 'SignalConfig':
        """校验配置，非法时抛出 InvalidConfiguration（权重不会被自动归一化）"""
        weights = [self.weight_for(name) for name in FactorName]
        if any(w < 0 for w in weights):
            raise InvalidConfiguration(f"因子权重不能为负: {weights}")
        total = sum(weights)
        if abs(total - 1.0) > WEIGHT_EPSILON:
            raise InvalidConfiguration(f"因子权重之和必须为1.0，当前为 {total:.6f}")

        if not (0 < self.weak_signal_threshold <= self.medium_signal_threshold <= self.strong_signal_threshold):
            raise InvalidConfiguration(
                "信号阈值必须满足 0 < weak <= medium <= strong: "
                f"{self.weak_signal_threshold}/{self.medium_signal_threshold}/{self.strong_signal_threshold}"
            )
        if not 0.0 <= self.min_confidence <= 1.0:
            raise InvalidConfiguration(f"最小置信度必须在[0, 1]之间: {self.min_confidence}")
        if self.signal_expiry_minutes <= 0:
            raise InvalidConfiguration(f"信号有效期必须为正: {self.signal_expiry_minutes}")
        if self.stop_loss_atr_multiple <= 0 or self.take_profit_ratio <= 0 or self.max_leverage <= 0:
            raise InvalidConfiguration("止损ATR倍数、止盈比例和最大杠杆必须为正")
        return self


@dataclass(frozen=True)
class TradingSignal:
    """交易信号，只追加不修改（失效通过新版本记录）"""
    id: str
    symbol: str
    interval: str
    timestamp: datetime
    price: float

    signal_type: SignalType
    strength: SignalStrength
    confidence: float
    total_score: float

    # 各因子原始得分
    trend_score: float = 0.0
    momentum_score: float = 0.0
    volume_score: float = 0.0
    volatility_score: float = 0.0
    derivatives_score: float = 0.0

    # 使用的指标值
    ema12: Optional[float] = None
    ema26: Optional[float] = None
    ema50: Optional[float] = None
    ema200: Optional[float] = None
    macd: Optional[float] = None
    macd_signal: Optional[float] = None
    rsi: Optional[float] = None
    atr: Optional[float] = None
    cvd: Optional[float] = None
    vwap: Optional[float] = None
    funding_rate: Optional[float] = None
    open_interest: Optional[float] = None

    # 建议交易参数
    suggested_stop_loss: Optional[float] = None
    suggested_take_profit: Optional[float] = None
    suggested_leverage: float = 1.0
    risk_reward_ratio: Optional[float] = None

    is_active: bool = True
    expiry_time: Optional[datetime] = None
    notes: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expiry_time is not None and now >= self.expiry_time

    def deactivated(self, reason: str) -> 'TradingSignal':
        return replace(self, is_active=False, notes=reason)


@dataclass(frozen=True)
class SignalGenerationResult:
    signal: Optional[TradingSignal]
    factor_scores: List[FactorScore]
    total_score: float
    confidence: float
    reasons: List[str]
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def empty(cls, warning: str) -> 'SignalGenerationResult':
        return cls(signal=None, factor_scores=[], total_score=0.0, confidence=0.0,
                   reasons=[], warnings=[warning])


@dataclass(frozen=True)
class MarketHistory:
    """评估当前K线所需的短历史，均按时间倒序（最新在前）"""
    candle: Optional[Candle] = None
    previous_snapshots: List[IndicatorSnapshot] = field(default_factory=list)
    previous_candles: List[Candle] = field(default_factory=list)
    derivatives: Optional[DerivativesMetrics] = None
