"""
实时交易引擎 - 协调每个品种的流水线
处理：指标更新 → 信号生成 → 仓位计算 → 风控检查 → 发布开仓意图

执行层（下单 / 成交回报）不在这里，成交后通过 record_fill / record_exit 回写账户。
"""

import threading
from datetime import datetime
from typing import AsyncIterable, Callable, List, Optional, Sequence, Union

import arrow

from orderflow.config.config import LoopsConfig
from orderflow.engine.registry import SymbolRegistry
from orderflow.models.market_data import Candle, DerivativesMetrics
from orderflow.models.risk import TradeIntent, TradeRecord, TradeStatus
from orderflow.models.signal import TradingSignal
from orderflow.risk.position_sizer import side_for_signal, size_for_signal
from orderflow.risk.risk_manager import RiskManager
from orderflow.signal.signal_engine import SignalEngine
from orderflow.utils.events import BoundedChannel
from orderflow.utils.log import setup_logging

log = setup_logging(module_prefix='ENGINE')

MarketEvent = Union[Candle, DerivativesMetrics]


def _utcnow() -> datetime:
    return arrow.utcnow().datetime


class TradingEngine:
    """
    交易引擎 - 每根已收盘K线在该品种的锁内作为一个完整事务处理
    """

    def __init__(self, signal_engine: SignalEngine, risk_manager: RiskManager,
                 intent_channel: Optional[BoundedChannel] = None, registry: Optional[SymbolRegistry] = None,
                 warmup_bars: int = 200, margin_ceiling: float = 0.9,
                 loops: Optional[LoopsConfig] = None, clock: Callable[[], datetime] = _utcnow):
        self.signal_engine = signal_engine
        self.risk_manager = risk_manager
        self.intent_channel = intent_channel
        self.registry = registry or SymbolRegistry()
        self.warmup_bars = warmup_bars
        self.margin_ceiling = margin_ceiling
        self.loops = loops or LoopsConfig()
        self.clock = clock

        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    # ------------------------------------------------------------------
    # 行情处理
    # ------------------------------------------------------------------

    def seed(self, symbol: str, interval: str, candles: Sequence[Candle]) -> int:
        """用历史K线预热指标，不生成信号"""
        state = self.registry.get_or_create(symbol, interval)
        with self.registry.symbol_lock(symbol):
            for candle in candles:
                snapshot = state.indicators.update(candle)
                state.push(snapshot, candle)
        log.info(f"{symbol} {interval}: 预加载 {len(candles)} 根历史K线")
        return len(candles)

    def on_candle(self, candle: Candle) -> Optional[TradeIntent]:
        """处理一根已收盘K线，风控通过时返回（并发布）开仓意图"""
        state = self.registry.get_or_create(candle.symbol, candle.interval)
        with self.registry.symbol_lock(candle.symbol):
            try:
                snapshot = state.indicators.update(candle)
                history = state.history(candle, self.registry.derivatives(candle.symbol))
                state.push(snapshot, candle)

                if not state.indicators.is_ready(self.warmup_bars):
                    log.debug(f"{candle.symbol} {candle.interval}: 预热中 {state.indicators.bars_seen}/{self.warmup_bars}")
                    return None

                result = self.signal_engine.generate_signal(snapshot, history)
                for warning in result.warnings:
                    log.debug(f"{candle.symbol} {candle.interval}: {warning}")
                if result.signal is None:
                    return None

                return self._evaluate_trade(result.signal)
            except Exception as e:
                log.error(f"{candle.symbol} {candle.interval} 处理错误: {e}")
                return None

    def _evaluate_trade(self, signal: TradingSignal) -> Optional[TradeIntent]:
        side = side_for_signal(signal.signal_type)
        if side is None or signal.suggested_stop_loss is None:
            log.info(f"{signal.symbol}: 信号 {signal.id} 无法开仓（无方向或无止损）")
            return None

        risk_config = self.risk_manager.get_risk_config()
        status = self.risk_manager.get_account_status()
        leverage = min(signal.suggested_leverage, risk_config.max_leverage)
        size = size_for_signal(
            signal,
            balance=status.total_balance,
            risk_fraction=risk_config.max_risk_per_trade,
            leverage=leverage,
            margin_ceiling=self.margin_ceiling,
            available_balance=status.available_balance,
        )
        if size.quantity <= 0:
            log.info(f"{signal.symbol}: 信号 {signal.id} 仓位为0，跳过")
            return None

        check = self.risk_manager.can_open_position(
            signal.symbol, side, size.quantity, signal.price, signal.suggested_stop_loss, leverage)
        if not check.can_trade:
            log.info(f"{signal.symbol}: 风控拒绝 {signal.id} - {check.reason}")
            return None

        intent = TradeIntent(
            signal=signal,
            side=side,
            quantity=size.quantity,
            entry_price=signal.price,
            stop_loss=signal.suggested_stop_loss,
            take_profit=signal.suggested_take_profit,
            leverage=leverage,
            risk_amount=check.risk_amount,
            risk_percentage=check.risk_percentage,
            recommended_leverage=check.recommended_leverage,
        )
        if self.intent_channel is not None and not self.intent_channel.publish(intent):
            log.warning(f"{signal.symbol}: 开仓意图通道已满，{signal.id} 被丢弃")
            return None

        log.info(f"[INTENT] {signal.symbol} {side.value} {size.quantity:.6f}@{signal.price} "
                 f"SL={signal.suggested_stop_loss} 风险={check.risk_percentage:.2%}")
        return intent

    def on_derivatives(self, metrics: DerivativesMetrics) -> DerivativesMetrics:
        """更新资金费率 / 持仓量，下一根K线的衍生品因子使用"""
        return self.registry.update_derivatives(metrics)

    async def run_stream(self, events: AsyncIterable[MarketEvent]) -> int:
        """消费异步行情流直到结束或 stop()，返回处理的事件数"""
        count = 0
        async for event in events:
            if self._stop_event.is_set():
                break
            if isinstance(event, Candle):
                self.on_candle(event)
            elif isinstance(event, DerivativesMetrics):
                self.on_derivatives(event)
            else:
                log.warning(f"未知的行情事件类型: {type(event).__name__}")
                continue
            count += 1
        return count

    # ------------------------------------------------------------------
    # 成交回写
    # ------------------------------------------------------------------

    def record_fill(self, intent: TradeIntent, fill_price: Optional[float] = None,
                    quantity: Optional[float] = None, trade_id: Optional[str] = None,
                    timestamp: Optional[datetime] = None) -> TradeRecord:
        """开仓成交后登记持仓"""
        signal = intent.signal
        trade = TradeRecord(
            id=trade_id or f"{signal.id}_trade",
            symbol=signal.symbol,
            side=intent.side,
            entry_price=fill_price if fill_price is not None else intent.entry_price,
            quantity=quantity if quantity is not None else intent.quantity,
            stop_loss=intent.stop_loss,
            take_profit=intent.take_profit,
            leverage=intent.leverage,
            risk_amount=intent.risk_amount,
            risk_percentage=intent.risk_percentage,
            status=TradeStatus.OPEN,
            entry_time=timestamp or self.clock(),
            signal_id=signal.id,
            signal_strength=signal.total_score,
            entry_reason=f"{signal.signal_type.value}/{signal.strength.value}",
        )
        self.risk_manager.on_position_opened(trade)
        return trade

    def record_exit(self, trade_id: str, exit_price: float, commission: float = 0.0,
                    reason: Optional[str] = None, timestamp: Optional[datetime] = None) -> Optional[TradeRecord]:
        """平仓成交后结算盈亏；持仓已被平掉（例如紧急止损先行）时返回 None"""
        return self.risk_manager.close_trade(trade_id, exit_price, commission=commission,
                                             reason=reason, exit_time=timestamp or self.clock())

    def close_at_market(self, trade: TradeRecord, reason: str):
        """按最新收盘价平仓（风控紧急止损的回调）"""
        price = self.registry.last_prices().get(trade.symbol, trade.entry_price)
        self.record_exit(trade.id, price, reason=reason)

    # ------------------------------------------------------------------
    # 后台循环
    # ------------------------------------------------------------------

    def _sweep_signals(self):
        self.signal_engine.cleanup_expired_signals(self.clock())

    def _check_cooldown(self):
        self.risk_manager.check_cooldown_expiry()

    def _refresh_stats(self):
        self.risk_manager.update_unrealized_pnl(self.registry.last_prices())
        stats = self.risk_manager.get_trading_stats()
        status = self.risk_manager.get_account_status()
        log.info(f"[STATS] 余额={status.total_balance:.2f} 可用={status.available_balance:.2f} "
                 f"交易={stats.total_trades} 胜率={stats.win_rate:.2%} 回撤={status.max_drawdown_from_peak:.2%}")

    def _run_loop(self, name: str, interval: float, task: Callable[[], None]):
        log.info(f"[LOOP] {name} 启动，间隔 {interval}s")
        while not self._stop_event.wait(interval):
            try:
                task()
            except Exception as e:
                log.error(f"[LOOP] {name} 执行错误: {e}")
        log.info(f"[LOOP] {name} 已停止")

    def start(self):
        """启动后台循环"""
        if self._threads:
            return
        self._stop_event.clear()
        loops = [
            ('signal-sweep', self.loops.signal_sweep_seconds, self._sweep_signals),
            ('cooldown-check', self.loops.cooldown_check_seconds, self._check_cooldown),
            ('stats-refresh', self.loops.stats_refresh_seconds, self._refresh_stats),
        ]
        for name, interval, task in loops:
            thread = threading.Thread(target=self._run_loop, args=(name, interval, task), name=name, daemon=True)
            thread.start()
            self._threads.append(thread)
        log.info("交易引擎已启动")

    def stop(self, timeout: float = 5.0):
        """停止后台循环"""
        log.info("停止交易引擎...")
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        if self.intent_channel is not None:
            self.intent_channel.close()
        log.info("交易引擎已停止")

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stop_event.is_set()
