"""
账户级风控管理器

- can_open_position: 按固定顺序执行开仓前检查，拒绝以 RiskCheckResult 返回
- on_position_opened / on_position_closed / close_trade: 账户余额字段的唯一修改入口
- 账户状态的所有读写都在同一把可重入锁内完成（单写者）
"""

import itertools
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import arrow

from orderflow.models.risk import (
    AccountStatus, RejectionReason, RiskCheckResult, RiskConfig, RiskEvent, RiskEventType,
    RiskSeverity, TradeRecord, TradeSide, TradeStatus, TradingStats,
)
from orderflow.risk.position_sizer import calculate_pnl
from orderflow.storage.codec import from_record, to_record
from orderflow.storage.store import Store
from orderflow.utils.data_transforms import format_timestamp, to_millis
from orderflow.utils.events import BoundedChannel
from orderflow.utils.log import setup_logging

log = setup_logging(module_prefix='RISK')

EPS = 1e-9
DRAWDOWN_WARNING_RATIO = 0.8

CONFIG_NAMESPACE = 'config'
CONFIG_KEY = 'risk'
ACCOUNT_NAMESPACE = 'account'
ACCOUNT_KEY = 'main'
TRADE_NAMESPACE = 'trades'
RISK_EVENT_LOG = 'risk_events'

PositionCloser = Callable[[TradeRecord, str], None]


def _utcnow() -> datetime:
    return arrow.utcnow().datetime


class RiskManager:
    """风控闸门与账户状态机（ACTIVE <-> COOLDOWN）"""

    def __init__(self, store: Store, risk_channel: Optional[BoundedChannel] = None,
                 config: Optional[RiskConfig] = None, initial_status: Optional[AccountStatus] = None,
                 clock: Callable[[], datetime] = _utcnow, position_closer: Optional[PositionCloser] = None):
        self.store = store
        self.risk_channel = risk_channel
        self.clock = clock
        self.position_closer = position_closer

        self._lock = threading.RLock()
        self._event_seq = itertools.count(1)
        self._unrealized: Dict[str, float] = {}
        self._closing_all = False

        if config is not None:
            self.update_risk_config(config)
        if initial_status is not None or self.store.get(ACCOUNT_NAMESPACE, ACCOUNT_KEY) is None:
            self._save_status(initial_status or AccountStatus())

    # ------------------------------------------------------------------
    # 配置与状态
    # ------------------------------------------------------------------

    def get_risk_config(self) -> RiskConfig:
        with self._lock:
            record = self.store.get(CONFIG_NAMESPACE, CONFIG_KEY)
        return from_record(RiskConfig, record) if record else RiskConfig()

    def update_risk_config(self, config: RiskConfig) -> RiskConfig:
        config.validate()
        with self._lock:
            self.store.put(CONFIG_NAMESPACE, CONFIG_KEY, to_record(config))
        log.info("[RISK] 风控配置已更新")
        return config

    def get_account_status(self) -> AccountStatus:
        with self._lock:
            record = self.store.get(ACCOUNT_NAMESPACE, ACCOUNT_KEY)
        return from_record(AccountStatus, record) if record else AccountStatus()

    def _save_status(self, status: AccountStatus) -> AccountStatus:
        status = replace(status, last_updated=self.clock())
        self.store.put(ACCOUNT_NAMESPACE, ACCOUNT_KEY, to_record(status))
        return status

    def get_open_trades(self) -> List[TradeRecord]:
        with self._lock:
            trades = [self._load_trade(key) for key in self.store.keys(TRADE_NAMESPACE)]
        return [t for t in trades if t is not None and t.status is TradeStatus.OPEN]

    def _load_trade(self, key: str) -> Optional[TradeRecord]:
        record = self.store.get(TRADE_NAMESPACE, key)
        return from_record(TradeRecord, record) if record else None

    # ------------------------------------------------------------------
    # 开仓检查
    # ------------------------------------------------------------------

    def can_open_position(self, symbol: str, side: TradeSide, quantity: float, price: float,
                          stop_loss: float, leverage: float = 1.0) -> RiskCheckResult:
        """开仓前检查

        顺序：冷却期 -> 最大持仓数 -> 单笔风险 -> 总风险 -> 可用余额 -> 最小账户余额
        -> 紧急止损回撤 -> 杠杆上限 -> 回撤降杠杆建议
        """
        if quantity <= 0 or price <= 0 or leverage <= 0:
            return RiskCheckResult(can_trade=False, reason="下单参数非法", rejection=RejectionReason.INVALID_ORDER)

        with self._lock:
            config = self.get_risk_config()
            status = self.get_account_status()
            now = self.clock()

            # 冷却期
            if status.is_in_cooldown:
                end = status.cooldown_end_time
                if end is not None and now < end:
                    return RiskCheckResult(
                        can_trade=False,
                        reason=f"账户处于冷却期，冷却结束时间：{format_timestamp(end)}",
                        rejection=RejectionReason.COOLDOWN_ACTIVE,
                    )
                status = self._save_status(replace(status, is_in_cooldown=False, cooldown_end_time=None))
                log.info("[RISK] 冷却期结束，账户恢复交易")

            # 最大持仓数
            open_count = len(self.get_open_trades())
            if open_count >= config.max_positions:
                message = f"已达到最大持仓数限制：{config.max_positions}"
                self._emit(RiskEventType.MAX_POSITIONS_REACHED, RiskSeverity.WARNING, message,
                           symbol=symbol, risk_value=float(open_count), threshold=float(config.max_positions))
                return RiskCheckResult(can_trade=False, reason=message,
                                       rejection=RejectionReason.MAX_POSITIONS_REACHED)

            # 单笔风险
            risk_amount = abs(price - stop_loss) * quantity * leverage
            risk_percentage = risk_amount / status.total_balance if status.total_balance > 0 else float('inf')
            if risk_percentage > config.max_risk_per_trade + EPS:
                message = f"单笔风险超限：{risk_percentage * 100:.2f}%，最大允许：{config.max_risk_per_trade * 100:.2f}%"
                self._emit(RiskEventType.RISK_LIMIT_EXCEEDED, RiskSeverity.CRITICAL, message,
                           symbol=symbol, risk_value=risk_percentage, threshold=config.max_risk_per_trade)
                return RiskCheckResult(can_trade=False, reason=message, risk_amount=risk_amount,
                                       risk_percentage=risk_percentage,
                                       rejection=RejectionReason.RISK_LIMIT_EXCEEDED)

            # 总风险
            total_risk = status.current_risk + risk_percentage
            if total_risk > config.max_total_risk + EPS:
                message = f"总风险超限：{total_risk * 100:.2f}%，最大允许：{config.max_total_risk * 100:.2f}%"
                self._emit(RiskEventType.RISK_LIMIT_EXCEEDED, RiskSeverity.CRITICAL, message,
                           symbol=symbol, risk_value=total_risk, threshold=config.max_total_risk)
                return RiskCheckResult(can_trade=False, reason=message, risk_amount=risk_amount,
                                       risk_percentage=risk_percentage,
                                       rejection=RejectionReason.RISK_LIMIT_EXCEEDED)

            # 可用余额
            required_margin = quantity * price
            if status.available_balance + EPS < required_margin:
                message = f"可用余额不足，需要：{required_margin:.2f}，可用：{status.available_balance:.2f}"
                self._emit(RiskEventType.BALANCE_LOW, RiskSeverity.WARNING, message,
                           symbol=symbol, risk_value=required_margin, threshold=status.available_balance)
                return RiskCheckResult(can_trade=False, reason=message, risk_amount=risk_amount,
                                       risk_percentage=risk_percentage,
                                       rejection=RejectionReason.INSUFFICIENT_BALANCE)

            # 最小账户余额
            if status.total_balance + EPS < config.min_account_balance:
                message = f"账户余额低于下限：{status.total_balance:.2f} < {config.min_account_balance:.2f}"
                self._emit(RiskEventType.BALANCE_LOW, RiskSeverity.CRITICAL, message,
                           symbol=symbol, risk_value=status.total_balance, threshold=config.min_account_balance)
                return RiskCheckResult(can_trade=False, reason=message, risk_amount=risk_amount,
                                       risk_percentage=risk_percentage,
                                       rejection=RejectionReason.INSUFFICIENT_BALANCE)

            # 紧急止损回撤
            if status.max_drawdown_from_peak + EPS >= config.emergency_stop_drawdown:
                message = f"回撤达到紧急止损线：{status.max_drawdown_from_peak * 100:.2f}%"
                self._emit(RiskEventType.EMERGENCY_STOP, RiskSeverity.CRITICAL, message,
                           symbol=symbol, risk_value=status.max_drawdown_from_peak,
                           threshold=config.emergency_stop_drawdown)
                return RiskCheckResult(can_trade=False, reason=message, risk_amount=risk_amount,
                                       risk_percentage=risk_percentage,
                                       rejection=RejectionReason.EMERGENCY_STOP)

            # 杠杆上限
            if leverage > config.max_leverage + EPS:
                message = f"杠杆超限：{leverage}x，最大允许：{config.max_leverage}x"
                self._emit(RiskEventType.RISK_LIMIT_EXCEEDED, RiskSeverity.WARNING, message,
                           symbol=symbol, risk_value=leverage, threshold=config.max_leverage)
                return RiskCheckResult(can_trade=False, reason=message, risk_amount=risk_amount,
                                       risk_percentage=risk_percentage,
                                       rejection=RejectionReason.LEVERAGE_EXCEEDED)

            # 回撤较大时建议降杠杆（仍允许交易）
            if status.max_drawdown_from_peak > config.leverage_reduction_threshold + EPS:
                recommended = max(1.0, leverage * 0.5)
                message = f"当前回撤较大，建议降低杠杆至：{recommended}x"
                self._emit(RiskEventType.LEVERAGE_REDUCED, RiskSeverity.WARNING, message,
                           symbol=symbol, risk_value=status.max_drawdown_from_peak,
                           threshold=config.leverage_reduction_threshold)
                return RiskCheckResult(can_trade=True, reason=message, risk_amount=risk_amount,
                                       risk_percentage=risk_percentage, recommended_leverage=recommended)

            return RiskCheckResult(can_trade=True, reason="风控检查通过",
                                   risk_amount=risk_amount, risk_percentage=risk_percentage)

    # ------------------------------------------------------------------
    # 账户变更
    # ------------------------------------------------------------------

    def on_position_opened(self, trade: TradeRecord) -> AccountStatus:
        """开仓：累加风险与交易数，从可用余额中预留保证金"""
        with self._lock:
            status = self.get_account_status()
            status = self._save_status(replace(
                status,
                current_risk=status.current_risk + trade.risk_percentage,
                total_trades=status.total_trades + 1,
                available_balance=status.available_balance - trade.margin,
            ))
            self.store.put(TRADE_NAMESPACE, trade.id, to_record(replace(trade, status=TradeStatus.OPEN)))

        log.info(f"[RISK] 开仓: {trade.symbol} {trade.side.value} {trade.quantity:.6f}@{trade.entry_price}")
        return status

    def on_position_closed(self, trade: TradeRecord) -> AccountStatus:
        """平仓：实现盈亏，释放保证金，更新峰值/回撤/连亏，必要时进入冷却或紧急止损"""
        with self._lock:
            status, to_close = self._settle_close(trade)
        if to_close:
            self._close_all(to_close, "紧急止损")
        return status

    def close_trade(self, trade_id: str, exit_price: float, commission: float = 0.0,
                    reason: Optional[str] = None, exit_time: Optional[datetime] = None) -> Optional[TradeRecord]:
        """按成交价结算一笔持仓；查找与结算在同一次加锁内完成，同一笔交易只会平仓一次"""
        with self._lock:
            trade = self._load_trade(trade_id)
            if trade is None or trade.status is not TradeStatus.OPEN:
                log.warning(f"[RISK] 平仓回报找不到持仓: {trade_id}")
                return None

            pnl = calculate_pnl(trade.side, trade.entry_price, exit_price, trade.quantity, trade.leverage) - commission
            closed = replace(
                trade,
                status=TradeStatus.CLOSED,
                exit_price=exit_price,
                exit_time=exit_time or self.clock(),
                pnl=pnl,
                pnl_percentage=pnl / trade.margin if trade.margin > 0 else 0.0,
                commission=commission,
                exit_reason=reason,
            )
            _, to_close = self._settle_close(closed)
        if to_close:
            self._close_all(to_close, "紧急止损")
        return closed

    def _settle_close(self, trade: TradeRecord):
        """调用方持有 self._lock；持仓不存在或已平仓时账户不变"""
        to_close: List[TradeRecord] = []
        status = self.get_account_status()
        stored = self._load_trade(trade.id)
        if stored is None or stored.status is not TradeStatus.OPEN:
            log.warning(f"[RISK] 忽略重复或未知的平仓: {trade.id}")
            return status, to_close

        config = self.get_risk_config()
        margin = stored.margin
        pnl = trade.pnl or 0.0
        is_win = pnl > 0
        consecutive_losses = 0 if is_win else status.consecutive_losses + 1
        balance = status.total_balance + pnl
        peak = max(status.peak_balance, balance)
        drawdown = (peak - balance) / peak if peak > 0 else 0.0

        self._unrealized.pop(trade.id, None)
        status = replace(
            status,
            total_balance=balance,
            available_balance=status.available_balance + margin + pnl,
            current_risk=max(0.0, status.current_risk - trade.risk_percentage),
            total_pnl=status.total_pnl + pnl,
            unrealized_pnl=sum(self._unrealized.values()),
            winning_trades=status.winning_trades + (1 if is_win else 0),
            losing_trades=status.losing_trades + (0 if is_win else 1),
            consecutive_losses=consecutive_losses,
            peak_balance=peak,
            max_drawdown_from_peak=drawdown,
        )

        if consecutive_losses >= config.cooldown_after_losses:
            end = self.clock() + timedelta(hours=config.cooldown_duration_hours)
            status = replace(status, is_in_cooldown=True, cooldown_end_time=end)
            self._emit(RiskEventType.COOLDOWN_ACTIVATED, RiskSeverity.WARNING,
                       f"连续亏损达到限制，激活{config.cooldown_duration_hours}小时冷却期",
                       details=f"冷却结束时间：{format_timestamp(end)}", trade_id=trade.id,
                       risk_value=float(consecutive_losses), threshold=float(config.cooldown_after_losses))
            log.warning(f"[RISK] 冷却期激活 {config.cooldown_duration_hours} 小时")

        status = self._save_status(status)
        closed = replace(trade, status=TradeStatus.CLOSED)
        self.store.put(TRADE_NAMESPACE, trade.id, to_record(closed))

        if drawdown > config.max_drawdown + EPS:
            self._emit(RiskEventType.EMERGENCY_STOP, RiskSeverity.CRITICAL,
                       f"触发紧急止损：回撤{drawdown * 100:.2f}%",
                       trade_id=trade.id, risk_value=drawdown, threshold=config.max_drawdown)
            if not self._closing_all:
                to_close = self.get_open_trades()
        elif drawdown > config.max_drawdown * DRAWDOWN_WARNING_RATIO + EPS:
            self._emit(RiskEventType.DRAWDOWN_WARNING, RiskSeverity.WARNING,
                       f"回撤接近限制：{drawdown * 100:.2f}%",
                       trade_id=trade.id, risk_value=drawdown, threshold=config.max_drawdown)

        log.info(f"[RISK] 平仓: {trade.symbol} PnL: {pnl:.2f}")
        return status, to_close

    def _close_all(self, trades: List[TradeRecord], reason: str):
        """强制平仓，交给外部注入的执行回调"""
        self._closing_all = True
        try:
            for trade in trades:
                log.warning(f"[RISK] 强制平仓: {trade.symbol} {trade.id} - {reason}")
                if self.position_closer is not None:
                    self.position_closer(trade, reason)
        finally:
            self._closing_all = False

    def update_unrealized_pnl(self, prices: Dict[str, float]) -> AccountStatus:
        """按最新价格重算未实现盈亏"""
        with self._lock:
            for trade in self.get_open_trades():
                price = prices.get(trade.symbol)
                if price is not None:
                    self._unrealized[trade.id] = calculate_pnl(
                        trade.side, trade.entry_price, price, trade.quantity, trade.leverage)
            status = self.get_account_status()
            return self._save_status(replace(status, unrealized_pnl=sum(self._unrealized.values())))

    def check_cooldown_expiry(self) -> bool:
        """后台循环调用：冷却期到期则恢复ACTIVE，返回是否发生了状态切换"""
        with self._lock:
            status = self.get_account_status()
            if not status.is_in_cooldown:
                return False
            end = status.cooldown_end_time
            if end is not None and self.clock() < end:
                return False
            self._save_status(replace(status, is_in_cooldown=False, cooldown_end_time=None))
        log.info("[RISK] 冷却期到期，账户恢复交易")
        return True

    # ------------------------------------------------------------------
    # 事件与统计
    # ------------------------------------------------------------------

    def _emit(self, event_type: RiskEventType, severity: RiskSeverity, message: str, **details) -> RiskEvent:
        now = self.clock()
        event = RiskEvent(
            id=f"{event_type.value.lower()}_{to_millis(now)}_{next(self._event_seq)}",
            event_type=event_type,
            severity=severity,
            message=message,
            timestamp=now,
            **details,
        )
        self.store.append(RISK_EVENT_LOG, to_record(event))
        if self.risk_channel is not None:
            self.risk_channel.publish(event)

        if severity is RiskSeverity.CRITICAL:
            log.error(f"[RISK] {event_type.value}: {message}")
        else:
            log.warning(f"[RISK] {event_type.value}: {message}")
        return event

    def get_risk_events(self, limit: int = 100) -> List[RiskEvent]:
        """最近的风控事件，按时间倒序"""
        records = self.store.read_log(RISK_EVENT_LOG, limit=limit)
        return [from_record(RiskEvent, r) for r in reversed(records)]

    def get_trading_stats(self) -> TradingStats:
        status = self.get_account_status()
        with self._lock:
            trades = [self._load_trade(key) for key in self.store.keys(TRADE_NAMESPACE)]
        closed = [t for t in trades if t is not None and t.status is TradeStatus.CLOSED]

        pnls = [t.pnl or 0.0 for t in closed]
        wins = [p for p in pnls if p > 0]
        losses = [p for p in pnls if p < 0]
        gross_loss = abs(sum(losses))
        if gross_loss > 0:
            profit_factor = sum(wins) / gross_loss
        else:
            profit_factor = float('inf') if wins else 0.0

        return TradingStats(
            total_trades=len(closed),
            winning_trades=len(wins),
            losing_trades=len(losses),
            win_rate=len(wins) / len(closed) if closed else 0.0,
            total_pnl=sum(pnls),
            avg_win=sum(wins) / len(wins) if wins else 0.0,
            avg_loss=sum(losses) / len(losses) if losses else 0.0,
            profit_factor=profit_factor,
            max_drawdown=status.max_drawdown_from_peak,
            current_balance=status.total_balance,
            peak_balance=status.peak_balance,
        )
