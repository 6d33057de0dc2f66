"""
回测引擎

逐根K线按收盘价模拟：估值 -> 止损止盈检查 -> 生成信号 -> 开仓 -> 定期快照。
与实盘共用指标计算、信号评估和仓位公式；同样的配置和K线得到完全相同的结果。
"""

import bisect
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Mapping, Optional, Sequence

from loguru import logger

from orderflow.backtesting import metrics
from orderflow.core.errors import OrderFlowError, SimulationCancelled, SimulationFailure
from orderflow.indicators.service import build_snapshots
from orderflow.models.backtest import (
    BacktestConfig, BacktestPosition, BacktestProgress, BacktestReport, BacktestResult,
    BacktestSnapshot, BacktestTrade, ExitReason,
)
from orderflow.models.indicator import IndicatorSnapshot
from orderflow.models.market_data import Candle, DerivativesMetrics
from orderflow.models.risk import TradeSide
from orderflow.models.signal import MarketHistory, SignalConfig, SignalGenerationResult, TradingSignal
from orderflow.risk.position_sizer import (
    calculate_commission, calculate_pnl, calculate_position_size, side_for_signal,
)
from orderflow.signal.signal_engine import LOOKBACK_PERIODS, SignalEngine
from orderflow.storage.codec import from_record, to_record
from orderflow.storage.store import Store
from orderflow.utils.data_transforms import format_timestamp, to_datetime
from orderflow.utils.events import BoundedChannel

Evaluator = Callable[[SignalConfig, IndicatorSnapshot, MarketHistory], SignalGenerationResult]

CONFIG_NAMESPACE = 'backtest_configs'
RESULT_NAMESPACE = 'backtest_results'
TRADES_NAMESPACE = 'backtest_trades'
SNAPSHOT_NAMESPACE = 'backtest_snapshots'
RESULT_LOG = 'backtest_history'


@dataclass
class _SimulationState:
    balance: float
    peak_equity: float
    positions: List[BacktestPosition] = field(default_factory=list)
    trades: List[BacktestTrade] = field(default_factory=list)
    snapshots: List[BacktestSnapshot] = field(default_factory=list)
    current_drawdown: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_percentage: float = 0.0
    position_seq: int = 0
    processed_bars: int = 0

    @property
    def equity(self) -> float:
        return self.balance + sum(p.margin + p.unrealized_pnl for p in self.positions)


class _DerivativesSeries:
    """按时间排序的衍生品数据，支持 as-of 查询"""

    def __init__(self, series: Mapping[datetime, DerivativesMetrics]):
        self._times = sorted(series)
        self._values = [series[t] for t in self._times]

    def latest(self, at: datetime) -> Optional[DerivativesMetrics]:
        index = bisect.bisect_right(self._times, at)
        return self._values[index - 1] if index else None


def backtest_id_for(config: BacktestConfig) -> str:
    return f"backtest_{config.id}"


class BacktestEngine:
    """事件驱动的单品种回测"""

    def __init__(self, store: Store, progress_channel: Optional[BoundedChannel] = None,
                 evaluator: Evaluator = SignalEngine.evaluate):
        self.store = store
        self.progress_channel = progress_channel
        self.evaluator = evaluator

    # ------------------------------------------------------------------
    # 运行
    # ------------------------------------------------------------------

    def run_backtest(self, config: BacktestConfig, candles: Sequence[Candle],
                     derivatives: Optional[Mapping[datetime, DerivativesMetrics]] = None,
                     cancel_event: Optional[threading.Event] = None) -> Optional[BacktestResult]:
        """
        运行一次回测。

        Args:
            config: 回测配置（非法配置直接抛 InvalidConfiguration）
            candles: 历史K线，按开盘时间排序
            derivatives: 以时间戳为键的衍生品数据，可选；每根K线取收盘时间之前最近的一条
            cancel_event: 置位后在下一根K线前中止

        Returns:
            BacktestResult；失败或取消时返回None（同时发布带错误信息的终止进度）
        """
        config.validate()
        backtest_id = backtest_id_for(config)
        logger.info(f"Starting backtest {backtest_id}: {config.symbol} {config.interval}")

        state = _SimulationState(balance=config.initial_balance, peak_equity=config.initial_balance)
        total_bars = 0
        try:
            bars = self._select_candles(config, candles)
            if not bars:
                raise OrderFlowError(f"no historical data for {config.symbol} {config.interval}")

            snapshots = build_snapshots(config.symbol, config.interval, bars, config.warmup_bars)
            total_bars = len(snapshots)
            if not snapshots:
                logger.warning(f"Backtest {backtest_id}: not enough bars after warmup, no trades simulated")

            self._simulate(backtest_id, config, bars, snapshots, _DerivativesSeries(derivatives or {}),
                           state, cancel_event)

            last = bars[-1]
            for position in list(state.positions):
                self._close_position(backtest_id, config, state, position, last.close,
                                     last.close_time, ExitReason.TIME_LIMIT)
            self._update_drawdown(state)

            result = metrics.build_result(
                backtest_id, config, state.trades,
                final_balance=state.balance,
                peak_balance=state.peak_equity,
                max_drawdown=state.max_drawdown,
                max_drawdown_percentage=state.max_drawdown_percentage,
            )
            self._persist(config, result, state, started_at=bars[0].close_time)
        except Exception as e:
            logger.error(f"Backtest {backtest_id} failed: {e}")
            self._publish_progress(BacktestProgress(
                backtest_id=backtest_id,
                current_time=None,
                processed_bars=state.processed_bars,
                total_bars=total_bars,
                current_balance=state.balance,
                current_drawdown=state.current_drawdown,
                trades_executed=len(state.trades),
                is_completed=True,
                error=str(e),
            ))
            return None

        self._publish_progress(BacktestProgress(
            backtest_id=backtest_id,
            current_time=bars[-1].close_time,
            processed_bars=total_bars,
            total_bars=total_bars,
            current_balance=state.balance,
            current_drawdown=state.current_drawdown,
            trades_executed=len(state.trades),
            is_completed=True,
        ))
        logger.info(
            f"Backtest {backtest_id} finished: trades={result.total_trades}, "
            f"pnl={result.total_pnl:.2f} ({result.total_pnl_percentage:.2f}%), "
            f"max_dd={result.max_drawdown_percentage:.2%}"
        )
        return result

    @staticmethod
    def _select_candles(config: BacktestConfig, candles: Sequence[Candle]) -> List[Candle]:
        bars = [
            c for c in candles
            if (config.start_time is None or c.open_time >= config.start_time)
            and (config.end_time is None or c.close_time <= config.end_time)
        ]
        bars.sort(key=lambda c: c.open_time)
        return bars

    def _simulate(self, backtest_id: str, config: BacktestConfig, bars: List[Candle],
                  snapshots: List[IndicatorSnapshot], derivatives: _DerivativesSeries,
                  state: _SimulationState, cancel_event: Optional[threading.Event]):
        offset = config.warmup_bars - 1
        total_bars = len(snapshots)

        for i, snapshot in enumerate(snapshots):
            if cancel_event is not None and cancel_event.is_set():
                raise SimulationCancelled(backtest_id, i)

            candle = bars[offset + i]
            try:
                self._mark_to_market(state, candle.close)
                self._check_exits(backtest_id, config, state, candle)
                self._update_drawdown(state)

                history = MarketHistory(
                    candle=candle,
                    previous_snapshots=snapshots[max(0, i - LOOKBACK_PERIODS):i][::-1],
                    previous_candles=bars[max(0, offset + i - LOOKBACK_PERIODS):offset + i][::-1],
                    derivatives=derivatives.latest(candle.close_time),
                )
                evaluation = self.evaluator(config.signal_config, snapshot, history)
                if evaluation.signal is not None:
                    self._open_position(config, state, evaluation.signal, candle)

                if i % config.snapshot_interval == 0:
                    state.snapshots.append(BacktestSnapshot(
                        timestamp=candle.close_time,
                        balance=state.balance,
                        equity=state.equity,
                        drawdown=state.current_drawdown,
                        open_positions=len(state.positions),
                        total_trades=len(state.trades),
                        win_rate=metrics.win_rate(state.trades),
                        profit_factor=metrics.profit_factor(state.trades),
                    ))
            except OrderFlowError:
                raise
            except Exception as e:
                raise SimulationFailure(backtest_id, i, e) from e

            processed = state.processed_bars = i + 1
            if processed % config.progress_interval == 0 and processed < total_bars:
                self._publish_progress(BacktestProgress(
                    backtest_id=backtest_id,
                    current_time=candle.close_time,
                    processed_bars=processed,
                    total_bars=total_bars,
                    current_balance=state.balance,
                    current_drawdown=state.current_drawdown,
                    trades_executed=len(state.trades),
                ))

    # ------------------------------------------------------------------
    # 持仓处理
    # ------------------------------------------------------------------

    @staticmethod
    def _mark_to_market(state: _SimulationState, price: float):
        for position in state.positions:
            position.unrealized_pnl = calculate_pnl(
                position.side, position.entry_price, price, position.quantity, position.leverage)

    @staticmethod
    def _update_drawdown(state: _SimulationState):
        equity = state.equity
        if equity > state.peak_equity:
            state.peak_equity = equity
        drawdown_amount = state.peak_equity - equity
        state.current_drawdown = drawdown_amount / state.peak_equity if state.peak_equity > 0 else 0.0
        state.max_drawdown = max(state.max_drawdown, drawdown_amount)
        state.max_drawdown_percentage = max(state.max_drawdown_percentage, state.current_drawdown)

    def _check_exits(self, backtest_id: str, config: BacktestConfig, state: _SimulationState, candle: Candle):
        price = candle.close
        for position in list(state.positions):
            if position.side is TradeSide.LONG:
                hit_stop = price <= position.stop_loss
                hit_target = position.take_profit is not None and price >= position.take_profit
            else:
                hit_stop = price >= position.stop_loss
                hit_target = position.take_profit is not None and price <= position.take_profit

            if hit_stop:
                self._close_position(backtest_id, config, state, position, price,
                                     candle.close_time, ExitReason.STOP_LOSS)
            elif hit_target:
                self._close_position(backtest_id, config, state, position, price,
                                     candle.close_time, ExitReason.TAKE_PROFIT)

    @staticmethod
    def _open_position(config: BacktestConfig, state: _SimulationState, signal: TradingSignal, candle: Candle):
        if len(state.positions) >= config.max_positions:
            return
        side = side_for_signal(signal.signal_type)
        stop_loss = signal.suggested_stop_loss
        if side is None or stop_loss is None:
            return

        if side is TradeSide.LONG:
            entry_price = candle.close * (1 + config.slippage)
            if stop_loss >= entry_price:
                return
        else:
            entry_price = candle.close * (1 - config.slippage)
            if stop_loss <= entry_price:
                return

        size = calculate_position_size(
            entry_price=entry_price,
            stop_loss_price=stop_loss,
            balance=state.balance,
            risk_fraction=config.max_risk_per_trade,
            leverage=config.leverage,
            margin_ceiling=config.margin_ceiling,
        )
        if size.quantity <= 0:
            return

        state.position_seq += 1
        state.positions.append(BacktestPosition(
            id=f"pos_{state.position_seq}",
            symbol=config.symbol,
            side=side,
            entry_time=candle.close_time,
            entry_price=entry_price,
            quantity=size.quantity,
            stop_loss=stop_loss,
            take_profit=signal.suggested_take_profit,
            leverage=config.leverage,
            margin=size.margin,
            signal_id=signal.id,
            signal_strength=signal.strength,
            signal_score=signal.total_score,
            entry_balance=state.balance,
            drawdown_at_entry=state.current_drawdown,
        ))
        state.balance -= size.margin
        logger.debug(
            f"Opened {side.value} {size.quantity:.6f} {config.symbol} @ {entry_price:.4f} "
            f"SL={stop_loss:.4f} TP={signal.suggested_take_profit}"
        )

    @staticmethod
    def _close_position(backtest_id: str, config: BacktestConfig, state: _SimulationState,
                        position: BacktestPosition, price: float, exit_time: datetime, reason: ExitReason):
        if position.side is TradeSide.LONG:
            exit_price = price * (1 - config.slippage)
        else:
            exit_price = price * (1 + config.slippage)

        gross_pnl = calculate_pnl(position.side, position.entry_price, exit_price,
                                  position.quantity, position.leverage)
        commission = calculate_commission(position.entry_price, exit_price, position.quantity,
                                          position.leverage, config.commission)
        net_pnl = gross_pnl - commission

        state.positions.remove(position)
        state.balance += position.margin + net_pnl

        state.trades.append(BacktestTrade(
            id=f"trade_{len(state.trades) + 1}",
            backtest_id=backtest_id,
            signal_id=position.signal_id,
            symbol=position.symbol,
            side=position.side,
            entry_time=position.entry_time,
            exit_time=exit_time,
            entry_price=position.entry_price,
            exit_price=exit_price,
            quantity=position.quantity,
            leverage=position.leverage,
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
            exit_reason=reason,
            gross_pnl=gross_pnl,
            commission=commission,
            net_pnl=net_pnl,
            pnl_percentage=net_pnl / position.margin if position.margin > 0 else 0.0,
            holding_time_seconds=(exit_time - position.entry_time).total_seconds(),
            signal_strength=position.signal_strength,
            signal_score=position.signal_score,
            entry_balance=position.entry_balance,
            exit_balance=state.balance,
            drawdown_at_entry=position.drawdown_at_entry,
        ))
        logger.debug(f"Closed {position.id} ({reason.value}) net_pnl={net_pnl:.2f}")

    # ------------------------------------------------------------------
    # 进度与持久化
    # ------------------------------------------------------------------

    def _publish_progress(self, progress: BacktestProgress):
        if self.progress_channel is not None:
            self.progress_channel.publish(progress)

    def _persist(self, config: BacktestConfig, result: BacktestResult, state: _SimulationState,
                 started_at: datetime):
        """同一配置重复运行时覆盖之前的结果，运行历史追加到日志"""
        self.store.put(CONFIG_NAMESPACE, config.id, to_record(config))
        self.store.put(RESULT_NAMESPACE, result.id, to_record(result))
        self.store.put(TRADES_NAMESPACE, result.id, {
            'started_at': format_timestamp(started_at),
            'trades': [to_record(t) for t in state.trades],
        })
        self.store.put(SNAPSHOT_NAMESPACE, result.id, {
            'snapshots': [to_record(s) for s in state.snapshots],
        })
        self.store.append(RESULT_LOG, to_record(result))

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def get_backtest_config(self, config_id: str) -> Optional[BacktestConfig]:
        record = self.store.get(CONFIG_NAMESPACE, config_id)
        return from_record(BacktestConfig, record) if record else None

    def get_backtest_result(self, backtest_id: str) -> Optional[BacktestResult]:
        record = self.store.get(RESULT_NAMESPACE, backtest_id)
        return from_record(BacktestResult, record) if record else None

    def get_backtest_trades(self, backtest_id: str) -> List[BacktestTrade]:
        record = self.store.get(TRADES_NAMESPACE, backtest_id)
        if not record:
            return []
        return [from_record(BacktestTrade, t) for t in record['trades']]

    def get_backtest_snapshots(self, backtest_id: str) -> List[BacktestSnapshot]:
        record = self.store.get(SNAPSHOT_NAMESPACE, backtest_id)
        if not record:
            return []
        return [from_record(BacktestSnapshot, s) for s in record['snapshots']]

    def list_backtests(self) -> List[str]:
        return sorted(self.store.keys(RESULT_NAMESPACE))

    def generate_backtest_report(self, backtest_id: str) -> Optional[BacktestReport]:
        result = self.get_backtest_result(backtest_id)
        if result is None:
            logger.warning(f"Backtest result not found: {backtest_id}")
            return None
        config = self.get_backtest_config(result.config_id)
        if config is None:
            logger.warning(f"Backtest config not found: {result.config_id}")
            return None

        trades = self.get_backtest_trades(backtest_id)
        trades_record = self.store.get(TRADES_NAMESPACE, backtest_id) or {}
        started_at = trades_record.get('started_at')
        start_time = to_datetime(started_at) if started_at else config.start_time

        equity = metrics.equity_curve(trades, config.initial_balance, start_time)
        return BacktestReport(
            config=config,
            result=result,
            trades=trades,
            snapshots=self.get_backtest_snapshots(backtest_id),
            equity_curve=equity,
            drawdown_curve=metrics.drawdown_curve(equity),
            monthly_returns=metrics.monthly_returns(trades, config.initial_balance),
            risk_metrics=metrics.risk_metrics(trades, equity),
        )
