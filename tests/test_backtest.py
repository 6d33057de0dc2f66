import re
import threading
from datetime import timedelta

import pytest

from orderflow.backtesting.engine import (
    CONFIG_NAMESPACE, RESULT_LOG, RESULT_NAMESPACE, BacktestEngine, backtest_id_for,
)
from orderflow.core.errors import InvalidConfiguration
from orderflow.models.backtest import BacktestConfig, ExitReason
from orderflow.models.market_data import DerivativesMetrics
from orderflow.models.signal import SignalConfig, SignalGenerationResult, SignalStrength, SignalType, TradingSignal
from orderflow.utils.events import BoundedChannel
from conftest import BASE_TIME


def always_long(config, snapshot, history):
    """每根K线都给出做多信号：止损 -2%，止盈 +4%"""
    price = snapshot.price
    signal = TradingSignal(
        id=f"{snapshot.symbol}_{snapshot.interval}_{snapshot.timestamp.isoformat()}",
        symbol=snapshot.symbol,
        interval=snapshot.interval,
        timestamp=snapshot.timestamp,
        price=price,
        signal_type=SignalType.LONG,
        strength=SignalStrength.MEDIUM,
        confidence=1.0,
        total_score=5.0,
        suggested_stop_loss=price * 0.98,
        suggested_take_profit=price * 1.04,
    )
    return SignalGenerationResult(signal=signal, factor_scores=[], total_score=5.0, confidence=1.0, reasons=[])


def failing_evaluator(config, snapshot, history):
    raise RuntimeError("boom")


def wave_config(**kwargs):
    values = dict(id='wave', name='Wave', symbol='BTCUSDT', interval='1h', warmup_bars=50)
    values.update(kwargs)
    return BacktestConfig(**values)


@pytest.fixture
def progress():
    return BoundedChannel('progress', capacity=100)


@pytest.fixture
def candles(make_candles, wave_closes):
    return make_candles(wave_closes(300))


def test_stub_strategy_run(store, progress, candles):
    engine = BacktestEngine(store, progress_channel=progress, evaluator=always_long)

    result = engine.run_backtest(wave_config(), candles)

    assert result is not None
    assert result.id == 'backtest_wave'
    assert result.total_trades > 0
    trades = engine.get_backtest_trades(result.id)
    assert len(trades) == result.total_trades
    assert {t.exit_reason for t in trades} <= {ExitReason.STOP_LOSS, ExitReason.TAKE_PROFIT, ExitReason.TIME_LIMIT}
    assert [t.id for t in trades] == [f"trade_{i + 1}" for i in range(len(trades))]

    # 300根K线，预热50根 -> 251次评估，每24根一个快照
    assert len(engine.get_backtest_snapshots(result.id)) == 11

    updates = progress.drain()
    assert [u.processed_bars for u in updates] == [100, 200, 251]
    assert updates[-1].is_completed
    assert updates[-1].error is None


def test_margin_is_capped_at_ninety_percent(store, candles):
    engine = BacktestEngine(store, evaluator=always_long)
    result = engine.run_backtest(wave_config(), candles)

    for trade in engine.get_backtest_trades(result.id):
        assert trade.quantity * trade.entry_price == pytest.approx(0.9 * trade.entry_balance)


def test_balance_is_conserved(store, candles):
    engine = BacktestEngine(store, evaluator=always_long)
    result = engine.run_backtest(wave_config(commission=0.001, slippage=0.0005), candles)
    trades = engine.get_backtest_trades(result.id)

    assert result.final_balance == pytest.approx(result.initial_balance + sum(t.net_pnl for t in trades))
    assert result.total_pnl == pytest.approx(sum(t.net_pnl for t in trades))
    for trade in trades:
        assert trade.net_pnl == pytest.approx(trade.gross_pnl - trade.commission)


def test_slippage_worsens_fills(store, candles):
    engine = BacktestEngine(store, evaluator=always_long)
    result = engine.run_backtest(wave_config(slippage=0.001), candles)
    first = engine.get_backtest_trades(result.id)[0]

    entry_candle = next(c for c in candles if c.close_time == first.entry_time)
    assert first.entry_price == pytest.approx(entry_candle.close * 1.001)


TRADING_SIGNALS = SignalConfig(
    trend_weight=1.0, momentum_weight=0.0, volume_weight=0.0,
    volatility_weight=0.0, derivatives_weight=0.0,
    weak_signal_threshold=1.0, min_confidence=0.0,
    require_volume_confirmation=False,
)


def test_same_input_same_result(store, make_candles, wave_closes):
    candles = make_candles(wave_closes(400))
    config = BacktestConfig(id='det', name='Determinism', symbol='BTCUSDT', interval='1h',
                            signal_config=TRADING_SIGNALS)

    first = BacktestEngine(store).run_backtest(config, candles)
    trades = BacktestEngine(store).get_backtest_trades(first.id)
    second = BacktestEngine(store).run_backtest(config, candles)

    assert first.total_trades > 0
    assert first == second
    assert BacktestEngine(store).get_backtest_trades(second.id) == trades
    assert first.final_balance == pytest.approx(first.initial_balance + sum(t.net_pnl for t in trades))
    # 重复运行覆盖结果，历史日志追加
    assert store.keys(RESULT_NAMESPACE) == ['backtest_det']
    assert len(store.read_log(RESULT_LOG)) == 2


def test_cancelled_run_persists_nothing(store, progress, candles):
    cancel = threading.Event()
    cancel.set()
    engine = BacktestEngine(store, progress_channel=progress, evaluator=always_long)

    assert engine.run_backtest(wave_config(), candles, cancel_event=cancel) is None

    updates = progress.drain()
    assert len(updates) == 1
    assert updates[0].is_completed
    assert "取消" in updates[0].error
    assert store.keys(RESULT_NAMESPACE) == []
    assert store.keys(CONFIG_NAMESPACE) == []


def test_evaluator_failure_aborts_run(store, progress, candles):
    engine = BacktestEngine(store, progress_channel=progress, evaluator=failing_evaluator)

    assert engine.run_backtest(wave_config(), candles) is None
    assert "boom" in progress.drain()[-1].error
    assert engine.list_backtests() == []


def counting_evaluator(stop_at, action):
    calls = []

    def evaluate(config, snapshot, history):
        calls.append(snapshot)
        if len(calls) == stop_at:
            action()
        return always_long(config, snapshot, history)
    return evaluate


def test_cancelled_progress_reports_processed_bars(store, progress, candles):
    cancel = threading.Event()
    engine = BacktestEngine(store, progress_channel=progress, evaluator=counting_evaluator(30, cancel.set))

    assert engine.run_backtest(wave_config(), candles, cancel_event=cancel) is None

    final = progress.drain()[-1]
    assert final.is_completed
    assert final.processed_bars == 30
    assert final.total_bars == 251


def test_failed_progress_reports_processed_bars(store, progress, candles):
    def boom():
        raise RuntimeError("boom")

    engine = BacktestEngine(store, progress_channel=progress, evaluator=counting_evaluator(10, boom))

    assert engine.run_backtest(wave_config(), candles) is None
    # 第10根出错，之前完成了9根
    assert progress.drain()[-1].processed_bars == 9


def test_no_candles_fails(store):
    assert BacktestEngine(store).run_backtest(wave_config(), []) is None


def test_fewer_bars_than_warmup_gives_empty_result(store, make_candles, wave_closes):
    engine = BacktestEngine(store, evaluator=always_long)
    result = engine.run_backtest(wave_config(), make_candles(wave_closes(30)))

    assert result is not None
    assert result.total_trades == 0
    assert result.final_balance == result.initial_balance
    assert result.profit_factor == 0.0


def test_invalid_config_raises(store, candles):
    with pytest.raises(InvalidConfiguration):
        BacktestEngine(store).run_backtest(wave_config(initial_balance=0.0), candles)


def test_time_window_filters_candles(store, candles):
    engine = BacktestEngine(store, evaluator=always_long)
    config = wave_config(start_time=BASE_TIME + timedelta(hours=100))
    result = engine.run_backtest(config, candles)

    trades = engine.get_backtest_trades(result.id)
    # 预热从窗口内第一根K线开始计
    assert min(t.entry_time for t in trades) >= candles[149].close_time


def test_derivatives_are_looked_up_as_of_close(store, candles):
    seen = []

    def recording(config, snapshot, history):
        seen.append((snapshot.timestamp, history.derivatives))
        return SignalGenerationResult(signal=None, factor_scores=[], total_score=0.0, confidence=0.0, reasons=[])

    metric = DerivativesMetrics('BTCUSDT', BASE_TIME + timedelta(hours=100, minutes=30), funding_rate=0.01)
    BacktestEngine(store, evaluator=recording).run_backtest(wave_config(), candles, {metric.timestamp: metric})

    for timestamp, derivatives in seen:
        if timestamp < metric.timestamp:
            assert derivatives is None
        else:
            assert derivatives == metric


def test_report(store, candles):
    engine = BacktestEngine(store, evaluator=always_long)
    config = wave_config()
    result = engine.run_backtest(config, candles)

    report = engine.generate_backtest_report(backtest_id_for(config))

    assert report is not None
    assert report.config == engine.get_backtest_config('wave')
    assert report.result == result
    assert len(report.equity_curve) == result.total_trades + 1
    assert report.equity_curve[0][1] == config.initial_balance
    assert report.equity_curve[-1][1] == pytest.approx(result.final_balance)
    assert len(report.drawdown_curve) == len(report.equity_curve)
    assert report.monthly_returns
    assert all(re.fullmatch(r"\d{4}-\d{2}", key) for key in report.monthly_returns)
    assert report.risk_metrics.var99 >= report.risk_metrics.var95 >= 0


def test_report_for_unknown_backtest(store):
    assert BacktestEngine(store).generate_backtest_report('backtest_missing') is None
