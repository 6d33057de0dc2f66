"""
回测相关类型定义
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from orderflow.core.errors import InvalidConfiguration
from orderflow.models.risk import TradeSide
from orderflow.models.signal import SignalConfig, SignalStrength


class ExitReason(Enum):
    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"
    SIGNAL_REVERSE = "SIGNAL_REVERSE"
    TIME_LIMIT = "TIME_LIMIT"
    MANUAL = "MANUAL"


@dataclass(frozen=True)
class BacktestConfig:
    """一次回测的全部输入，不可变"""
    id: str
    name: str
    symbol: str
    interval: str
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    initial_balance: float = 10000.0
    commission: float = 0.001   # 单边手续费率
    slippage: float = 0.0       # 成交滑点比例

    max_risk_per_trade: float = 0.02
    max_positions: int = 3
    leverage: float = 1.0
    margin_ceiling: float = 0.9  # 单笔保证金不超过余额的比例

    signal_config: SignalConfig = field(default_factory=SignalConfig)

    warmup_bars: int = 200
    snapshot_interval: int = 24
    progress_interval: int = 100

    def validate(self) -> 'BacktestConfig':
        if self.initial_balance <= 0:
            raise InvalidConfiguration(f"初始资金必须为正: {self.initial_balance}")
        if self.commission < 0 or self.slippage < 0:
            raise InvalidConfiguration("手续费和滑点不能为负")
        if not 0.0 < self.max_risk_per_trade <= 1.0:
            raise InvalidConfiguration(f"单笔风险必须在(0, 1]之间: {self.max_risk_per_trade}")
        if not 0.0 < self.margin_ceiling <= 1.0:
            raise InvalidConfiguration(f"保证金上限必须在(0, 1]之间: {self.margin_ceiling}")
        if self.max_positions <= 0 or self.leverage <= 0:
            raise InvalidConfiguration("最大持仓数和杠杆必须为正")
        if self.warmup_bars <= 0 or self.snapshot_interval <= 0 or self.progress_interval <= 0:
            raise InvalidConfiguration("预热K线数、快照间隔和进度间隔必须为正")
        if self.start_time and self.end_time and self.start_time > self.end_time:
            raise InvalidConfiguration("回测开始时间晚于结束时间")
        self.signal_config.validate()
        return self


@dataclass
class BacktestPosition:
    """回测持仓，仅存在于单次回测过程中"""
    id: str
    symbol: str
    side: TradeSide
    entry_time: datetime
    entry_price: float
    quantity: float
    stop_loss: float
    take_profit: Optional[float]
    leverage: float
    margin: float
    signal_id: Optional[str]
    signal_strength: Optional[SignalStrength]
    signal_score: Optional[float]
    entry_balance: float
    drawdown_at_entry: float
    unrealized_pnl: float = 0.0


@dataclass(frozen=True)
class BacktestTrade:
    id: str
    backtest_id: str
    signal_id: Optional[str]
    symbol: str
    side: TradeSide
    entry_time: datetime
    exit_time: datetime
    entry_price: float
    exit_price: float
    quantity: float
    leverage: float
    stop_loss: float
    take_profit: Optional[float]
    exit_reason: ExitReason
    gross_pnl: float
    commission: float
    net_pnl: float
    pnl_percentage: float
    holding_time_seconds: float
    signal_strength: Optional[SignalStrength]
    signal_score: Optional[float]
    entry_balance: float
    exit_balance: float
    drawdown_at_entry: float


@dataclass(frozen=True)
class BacktestSnapshot:
    timestamp: datetime
    balance: float
    equity: float
    drawdown: float
    open_positions: int
    total_trades: int
    win_rate: float
    profit_factor: float


@dataclass(frozen=True)
class BacktestProgress:
    backtest_id: str
    current_time: Optional[datetime]
    processed_bars: int
    total_bars: int
    current_balance: float
    current_drawdown: float
    trades_executed: int
    is_completed: bool = False
    error: Optional[str] = None

    @property
    def percent(self) -> float:
        return self.processed_bars / self.total_bars * 100 if self.total_bars else 0.0


@dataclass(frozen=True)
class BacktestResult:
    id: str
    config_id: str
    initial_balance: float

    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float

    total_pnl: float
    total_pnl_percentage: float
    avg_win: float
    avg_loss: float
    largest_win: float
    largest_loss: float
    profit_factor: float

    max_drawdown: float
    max_drawdown_percentage: float
    sharpe_ratio: float
    sortino_ratio: float
    calmar_ratio: float

    # 持仓时间（秒）
    avg_holding_time: float
    max_holding_time: float
    min_holding_time: float

    max_consecutive_wins: int
    max_consecutive_losses: int

    final_balance: float
    peak_balance: float


@dataclass(frozen=True)
class RiskMetrics:
    var95: float
    var99: float
    expected_shortfall: float
    max_drawdown_duration: float  # 秒


@dataclass(frozen=True)
class BacktestReport:
    config: BacktestConfig
    result: BacktestResult
    trades: List[BacktestTrade]
    snapshots: List[BacktestSnapshot]
    equity_curve: List[Tuple[datetime, float]]
    drawdown_curve: List[Tuple[datetime, float]]
    monthly_returns: Dict[str, float]
    risk_metrics: RiskMetrics


class ParameterType(Enum):
    DOUBLE = "DOUBLE"
    INT = "INT"
    BOOLEAN = "BOOLEAN"


@dataclass(frozen=True)
class ParameterRange:
    type: ParameterType
    min: float = 0.0
    max: float = 1.0
    steps: int = 10


@dataclass(frozen=True)
class OptimizationResult:
    id: str
    config_id: str
    parameter_set: Dict[str, Any]
    target_metric: str
    target_value: float
    total_return: float
    max_drawdown: float
    sharpe_ratio: float
    win_rate: float
    profit_factor: float
    total_trades: int
    rank: int
    score: float
