"""
风控相关类型定义
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from orderflow.core.errors import InvalidConfiguration
from orderflow.models.signal import TradingSignal


class TradeSide(Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class TradeStatus(Enum):
    PENDING = "PENDING"
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"
    STOPPED = "STOPPED"


class RiskEventType(Enum):
    RISK_LIMIT_EXCEEDED = "RISK_LIMIT_EXCEEDED"
    MAX_POSITIONS_REACHED = "MAX_POSITIONS_REACHED"
    DRAWDOWN_WARNING = "DRAWDOWN_WARNING"
    EMERGENCY_STOP = "EMERGENCY_STOP"
    COOLDOWN_ACTIVATED = "COOLDOWN_ACTIVATED"
    LEVERAGE_REDUCED = "LEVERAGE_REDUCED"
    BALANCE_LOW = "BALANCE_LOW"


class RiskSeverity(Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class RejectionReason(Enum):
    """预期内的拒绝类别（结果值，不是异常）"""
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    MAX_POSITIONS_REACHED = "MAX_POSITIONS_REACHED"
    RISK_LIMIT_EXCEEDED = "RISK_LIMIT_EXCEEDED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    EMERGENCY_STOP = "EMERGENCY_STOP"
    LEVERAGE_EXCEEDED = "LEVERAGE_EXCEEDED"
    INVALID_ORDER = "INVALID_ORDER"


class AccountState(Enum):
    ACTIVE = "ACTIVE"
    COOLDOWN = "COOLDOWN"


@dataclass(frozen=True)
class RiskConfig:
    max_risk_per_trade: float = 0.02       # 单笔最大风险2%
    max_total_risk: float = 0.06           # 总风险6%
    max_positions: int = 3
    max_drawdown: float = 0.15
    cooldown_after_losses: int = 3
    cooldown_duration_hours: float = 24
    min_account_balance: float = 1000.0
    emergency_stop_drawdown: float = 0.20
    max_leverage: float = 3.0
    leverage_reduction_threshold: float = 0.10

    def validate(self) -> 'RiskConfig':
        for name in ('max_risk_per_trade', 'max_total_risk', 'max_drawdown',
                     'emergency_stop_drawdown', 'leverage_reduction_threshold'):
            value = getattr(self, name)
            if not 0.0 < value <= 1.0:
                raise InvalidConfiguration(f"{name} 必须在(0, 1]之间: {value}")
        if self.max_risk_per_trade > self.max_total_risk:
            raise InvalidConfiguration("单笔风险不能大于总风险")
        if self.max_positions <= 0:
            raise InvalidConfiguration(f"最大持仓数必须为正: {self.max_positions}")
        if self.cooldown_after_losses <= 0 or self.cooldown_duration_hours < 0:
            raise InvalidConfiguration("冷却期参数非法")
        if self.min_account_balance < 0:
            raise InvalidConfiguration(f"最小账户余额不能为负: {self.min_account_balance}")
        if self.max_leverage < 1.0:
            raise InvalidConfiguration(f"最大杠杆必须 >= 1: {self.max_leverage}")
        return self


@dataclass(frozen=True)
class AccountStatus:
    """账户状态，单账户一行，由风控管理器在锁内整体替换"""
    total_balance: float = 10000.0
    available_balance: float = 10000.0
    unrealized_pnl: float = 0.0
    total_pnl: float = 0.0

    current_risk: float = 0.0
    max_drawdown_from_peak: float = 0.0
    peak_balance: float = 10000.0

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    consecutive_losses: int = 0

    is_in_cooldown: bool = False
    cooldown_end_time: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    @property
    def state(self) -> AccountState:
        return AccountState.COOLDOWN if self.is_in_cooldown else AccountState.ACTIVE

    @classmethod
    def with_balance(cls, balance: float) -> 'AccountStatus':
        return cls(total_balance=balance, available_balance=balance, peak_balance=balance)


@dataclass(frozen=True)
class TradeRecord:
    id: str
    symbol: str
    side: TradeSide
    entry_price: float
    quantity: float
    stop_loss: float
    risk_amount: float
    risk_percentage: float
    status: TradeStatus
    entry_time: datetime
    leverage: float = 1.0
    take_profit: Optional[float] = None

    exit_price: Optional[float] = None
    exit_time: Optional[datetime] = None
    pnl: Optional[float] = None
    pnl_percentage: Optional[float] = None
    commission: float = 0.0

    signal_id: Optional[str] = None
    signal_strength: Optional[float] = None
    entry_reason: Optional[str] = None
    exit_reason: Optional[str] = None

    @property
    def margin(self) -> float:
        """占用保证金 = 数量 × 入场价（名义价值 / 杠杆）"""
        return self.quantity * self.entry_price


@dataclass(frozen=True)
class RiskEvent:
    id: str
    event_type: RiskEventType
    severity: RiskSeverity
    message: str
    timestamp: datetime
    details: Optional[str] = None
    trade_id: Optional[str] = None
    symbol: Optional[str] = None
    risk_value: Optional[float] = None
    threshold: Optional[float] = None


@dataclass(frozen=True)
class RiskCheckResult:
    can_trade: bool
    reason: str
    risk_amount: float = 0.0
    risk_percentage: float = 0.0
    recommended_leverage: Optional[float] = None
    rejection: Optional[RejectionReason] = None


@dataclass(frozen=True)
class TradingStats:
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    total_pnl: float
    avg_win: float
    avg_loss: float
    profit_factor: float
    max_drawdown: float
    current_balance: float
    peak_balance: float


@dataclass(frozen=True)
class TradeIntent:
    """风控通过后发往执行层的开仓意图"""
    signal: TradingSignal
    side: TradeSide
    quantity: float
    entry_price: float
    stop_loss: float
    take_profit: Optional[float]
    leverage: float
    risk_amount: float
    risk_percentage: float
    recommended_leverage: Optional[float] = None
