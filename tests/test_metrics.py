import math
from datetime import datetime, timedelta, timezone

import pytest

from orderflow.backtesting import metrics
from orderflow.models.backtest import BacktestConfig, BacktestTrade, ExitReason
from orderflow.models.risk import TradeSide
from conftest import BASE_TIME


def make_trade(index, net_pnl, pnl_percentage=None, exit_time=None, hours=2):
    exit_time = exit_time or BASE_TIME + timedelta(days=index + 1)
    return BacktestTrade(
        id=f"trade_{index + 1}",
        backtest_id='backtest_test',
        signal_id=None,
        symbol='BTCUSDT',
        side=TradeSide.LONG,
        entry_time=exit_time - timedelta(hours=hours),
        exit_time=exit_time,
        entry_price=100.0,
        exit_price=100.0,
        quantity=1.0,
        leverage=1.0,
        stop_loss=98.0,
        take_profit=None,
        exit_reason=ExitReason.TAKE_PROFIT if net_pnl > 0 else ExitReason.STOP_LOSS,
        gross_pnl=net_pnl,
        commission=0.0,
        net_pnl=net_pnl,
        pnl_percentage=pnl_percentage if pnl_percentage is not None else net_pnl / 1000.0,
        holding_time_seconds=hours * 3600.0,
        signal_strength=None,
        signal_score=None,
        entry_balance=10000.0,
        exit_balance=10000.0,
        drawdown_at_entry=0.0,
    )


def test_win_rate_and_profit_factor():
    trades = [make_trade(0, 100.0), make_trade(1, -50.0), make_trade(2, 0.0), make_trade(3, 50.0)]
    assert metrics.win_rate(trades) == 0.5
    assert metrics.profit_factor(trades) == pytest.approx(3.0)


def test_profit_factor_edge_cases():
    assert metrics.profit_factor([]) == 0.0
    assert metrics.profit_factor([make_trade(0, 10.0)]) == math.inf
    assert metrics.profit_factor([make_trade(0, -10.0)]) == 0.0


def test_sharpe_uses_population_std():
    assert metrics.sharpe_ratio([0.1]) == 0.0
    assert metrics.sharpe_ratio([0.1, 0.1]) == 0.0
    # 均值 0.1，总体标准差 0.1
    assert metrics.sharpe_ratio([0.0, 0.2]) == pytest.approx(1.0)


def test_sortino_uses_downside_rms():
    assert metrics.sortino_ratio([0.1, 0.2]) == 0.0
    # 均值 0.05，下行均方根 sqrt((0.01 + 0.04) / 2)
    assert metrics.sortino_ratio([0.3, -0.1, -0.2, 0.2]) == pytest.approx(0.05 / math.sqrt(0.025))


def test_calmar():
    assert metrics.calmar_ratio(20.0, 0.1) == pytest.approx(2.0)
    assert metrics.calmar_ratio(20.0, 0.0) == 0.0


def test_holding_time_and_streaks():
    trades = [
        make_trade(0, 10.0, hours=1), make_trade(1, 10.0, hours=3), make_trade(2, 0.0, hours=2),
        make_trade(3, -5.0), make_trade(4, -5.0), make_trade(5, 10.0),
    ]
    avg, longest, shortest = metrics.holding_time_stats(trades)
    assert longest == 3 * 3600.0
    assert shortest == 3600.0
    assert avg == pytest.approx(sum(t.holding_time_seconds for t in trades) / 6)
    # 盈亏为0算作亏损
    assert metrics.consecutive_stats(trades) == (2, 3)
    assert metrics.holding_time_stats([]) == (0.0, 0.0, 0.0)


def test_build_result():
    config = BacktestConfig(id='cfg', name='cfg', symbol='BTCUSDT', interval='1h')
    trades = [make_trade(0, 300.0), make_trade(1, -100.0), make_trade(2, 200.0)]

    result = metrics.build_result('backtest_cfg', config, trades, final_balance=10400.0,
                                  peak_balance=10500.0, max_drawdown=100.0, max_drawdown_percentage=0.02)

    assert result.total_trades == 3
    assert result.winning_trades == 2
    assert result.losing_trades == 1
    assert result.total_pnl == pytest.approx(400.0)
    assert result.total_pnl_percentage == pytest.approx(4.0)
    assert result.avg_win == pytest.approx(250.0)
    assert result.largest_win == 300.0
    assert result.largest_loss == -100.0
    assert result.profit_factor == pytest.approx(5.0)
    assert result.calmar_ratio == pytest.approx(2.0)
    assert result.max_consecutive_losses == 1


def test_equity_and_drawdown_curves():
    trades = [make_trade(1, -100.0), make_trade(0, 200.0), make_trade(2, 50.0)]
    curve = metrics.equity_curve(trades, 1000.0, BASE_TIME)

    assert [v for _, v in curve] == pytest.approx([1000.0, 1200.0, 1100.0, 1150.0])
    assert curve[0][0] == BASE_TIME

    drawdowns = [d for _, d in metrics.drawdown_curve(curve)]
    assert drawdowns == pytest.approx([0.0, 0.0, 100.0 / 1200.0, 50.0 / 1200.0])

    assert metrics.equity_curve([], 1000.0, None) == []
    assert metrics.equity_curve([], 1000.0, BASE_TIME) == [(BASE_TIME, 1000.0)]


def test_monthly_returns_compound_on_realized_balance():
    trades = [
        make_trade(0, 100.0, exit_time=datetime(2024, 1, 10, tzinfo=timezone.utc)),
        make_trade(1, 100.0, exit_time=datetime(2024, 1, 20, tzinfo=timezone.utc)),
        make_trade(2, -110.0, exit_time=datetime(2024, 2, 5, tzinfo=timezone.utc)),
    ]
    returns = metrics.monthly_returns(trades, 1000.0)

    assert list(returns) == ['2024-01', '2024-02']
    assert returns['2024-01'] == pytest.approx(20.0)
    assert returns['2024-02'] == pytest.approx(-110.0 / 1200.0 * 100)
    assert metrics.monthly_returns([], 1000.0) == {}


def test_max_drawdown_duration():
    curve = [
        (BASE_TIME, 100.0),
        (BASE_TIME + timedelta(hours=1), 90.0),
        (BASE_TIME + timedelta(hours=5), 101.0),
        (BASE_TIME + timedelta(hours=6), 95.0),
        (BASE_TIME + timedelta(hours=8), 96.0),
    ]
    assert metrics.max_drawdown_duration(curve) == 5 * 3600.0
    assert metrics.max_drawdown_duration([]) == 0.0


def test_risk_metrics():
    returns = [-0.2, -0.1] + [0.05] * 18
    trades = [make_trade(i, r * 1000.0, pnl_percentage=r) for i, r in enumerate(returns)]
    risk = metrics.risk_metrics(trades, [])

    assert risk.var95 > 0
    assert risk.var99 >= risk.var95
    assert risk.expected_shortfall >= risk.var95
    assert risk.max_drawdown_duration == 0.0


def test_risk_metrics_all_winners_floor_at_zero():
    trades = [make_trade(i, 10.0, pnl_percentage=0.01) for i in range(5)]
    risk = metrics.risk_metrics(trades, [])
    assert risk.var95 == 0.0
    assert risk.var99 == 0.0
    assert risk.expected_shortfall == 0.0
