"""
回测统计纯函数：胜率、盈亏比、夏普/索提诺/卡尔玛、持仓时间、连胜连亏、
权益/回撤曲线、月度收益和风险指标
"""

import math
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from orderflow.models.backtest import BacktestConfig, BacktestResult, BacktestTrade, RiskMetrics
from orderflow.utils.data_transforms import month_key

Curve = List[Tuple[datetime, float]]


def win_rate(trades: Sequence[BacktestTrade]) -> float:
    if not trades:
        return 0.0
    return sum(1 for t in trades if t.net_pnl > 0) / len(trades)


def profit_factor(trades: Sequence[BacktestTrade]) -> float:
    """总盈利 / |总亏损|；没有亏损时有盈利为无穷大，无交易为0"""
    gross_win = sum(t.net_pnl for t in trades if t.net_pnl > 0)
    gross_loss = abs(sum(t.net_pnl for t in trades if t.net_pnl < 0))
    if gross_loss > 0:
        return gross_win / gross_loss
    return math.inf if gross_win > 0 else 0.0


def sharpe_ratio(returns: Sequence[float]) -> float:
    """每笔收益率的 均值 / 总体标准差"""
    if len(returns) < 2:
        return 0.0
    arr = np.asarray(returns, dtype=np.float64)
    std = float(arr.std())
    return float(arr.mean()) / std if std > 0 else 0.0


def sortino_ratio(returns: Sequence[float]) -> float:
    """均值 / 负收益的均方根"""
    if not returns:
        return 0.0
    arr = np.asarray(returns, dtype=np.float64)
    negative = arr[arr < 0]
    if negative.size == 0:
        return 0.0
    downside = float(np.sqrt(np.mean(negative ** 2)))
    return float(arr.mean()) / downside if downside > 0 else 0.0


def calmar_ratio(total_return_pct: float, max_drawdown_fraction: float) -> float:
    if max_drawdown_fraction <= 0:
        return 0.0
    return total_return_pct / (max_drawdown_fraction * 100)


def holding_time_stats(trades: Sequence[BacktestTrade]) -> Tuple[float, float, float]:
    """(平均, 最长, 最短) 持仓秒数"""
    if not trades:
        return 0.0, 0.0, 0.0
    times = [t.holding_time_seconds for t in trades]
    return sum(times) / len(times), max(times), min(times)


def consecutive_stats(trades: Sequence[BacktestTrade]) -> Tuple[int, int]:
    """最长连胜 / 连亏（净盈亏 > 0 为胜，其余为负）"""
    max_wins = max_losses = wins = losses = 0
    for trade in trades:
        if trade.net_pnl > 0:
            wins += 1
            losses = 0
            max_wins = max(max_wins, wins)
        else:
            losses += 1
            wins = 0
            max_losses = max(max_losses, losses)
    return max_wins, max_losses


def build_result(backtest_id: str, config: BacktestConfig, trades: Sequence[BacktestTrade],
                 final_balance: float, peak_balance: float, max_drawdown: float,
                 max_drawdown_percentage: float) -> BacktestResult:
    wins = [t.net_pnl for t in trades if t.net_pnl > 0]
    losses = [t.net_pnl for t in trades if t.net_pnl < 0]
    total_pnl = sum(t.net_pnl for t in trades)
    total_pnl_percentage = total_pnl / config.initial_balance * 100
    returns = [t.pnl_percentage for t in trades]
    avg_hold, max_hold, min_hold = holding_time_stats(trades)
    max_wins, max_losses = consecutive_stats(trades)

    return BacktestResult(
        id=backtest_id,
        config_id=config.id,
        initial_balance=config.initial_balance,
        total_trades=len(trades),
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=win_rate(trades),
        total_pnl=total_pnl,
        total_pnl_percentage=total_pnl_percentage,
        avg_win=sum(wins) / len(wins) if wins else 0.0,
        avg_loss=sum(losses) / len(losses) if losses else 0.0,
        largest_win=max(wins) if wins else 0.0,
        largest_loss=min(losses) if losses else 0.0,
        profit_factor=profit_factor(trades),
        max_drawdown=max_drawdown,
        max_drawdown_percentage=max_drawdown_percentage,
        sharpe_ratio=sharpe_ratio(returns),
        sortino_ratio=sortino_ratio(returns),
        calmar_ratio=calmar_ratio(total_pnl_percentage, max_drawdown_percentage),
        avg_holding_time=avg_hold,
        max_holding_time=max_hold,
        min_holding_time=min_hold,
        max_consecutive_wins=max_wins,
        max_consecutive_losses=max_losses,
        final_balance=final_balance,
        peak_balance=peak_balance,
    )


def equity_curve(trades: Sequence[BacktestTrade], initial_balance: float,
                 start_time: Optional[datetime]) -> Curve:
    """按平仓时间累加净盈亏得到的已实现权益曲线"""
    curve: Curve = []
    ordered = sorted(trades, key=lambda t: (t.exit_time, t.id))
    first = start_time or (ordered[0].entry_time if ordered else None)
    if first is None:
        return curve

    running = initial_balance
    curve.append((first, running))
    for trade in ordered:
        running += trade.net_pnl
        curve.append((trade.exit_time, running))
    return curve


def drawdown_curve(curve: Curve) -> Curve:
    result: Curve = []
    peak = None
    for time, balance in curve:
        peak = balance if peak is None else max(peak, balance)
        result.append((time, (peak - balance) / peak if peak > 0 else 0.0))
    return result


def monthly_returns(trades: Sequence[BacktestTrade], initial_balance: float) -> Dict[str, float]:
    """按平仓月份统计收益率（%），基数为当月初的已实现余额"""
    if not trades:
        return {}

    df = pd.DataFrame({
        'month': [month_key(t.exit_time) for t in trades],
        'exit_time': [t.exit_time for t in trades],
        'net_pnl': [t.net_pnl for t in trades],
    }).sort_values('exit_time', kind='mergesort')
    monthly = df.groupby('month', sort=True)['net_pnl'].sum()

    result = {}
    balance = initial_balance
    for month, pnl in monthly.items():
        result[month] = float(pnl) / balance * 100 if balance > 0 else 0.0
        balance += float(pnl)
    return result


def max_drawdown_duration(curve: Curve) -> float:
    """权益从峰值回落到重新创新高所经历的最长秒数（未恢复则算到曲线末尾）"""
    if not curve:
        return 0.0
    longest = 0.0
    peak_value = curve[0][1]
    peak_time = curve[0][0]
    for time, value in curve[1:]:
        if value >= peak_value:
            longest = max(longest, (time - peak_time).total_seconds())
            peak_value, peak_time = value, time
    if curve[-1][1] < peak_value:
        longest = max(longest, (curve[-1][0] - peak_time).total_seconds())
    return longest


def risk_metrics(trades: Sequence[BacktestTrade], curve: Curve) -> RiskMetrics:
    """历史模拟法 VaR / 期望损失（以每笔收益率计，损失为正数）"""
    if not trades:
        return RiskMetrics(var95=0.0, var99=0.0, expected_shortfall=0.0,
                           max_drawdown_duration=max_drawdown_duration(curve))

    returns = np.asarray([t.pnl_percentage for t in trades], dtype=np.float64)
    q95 = float(np.percentile(returns, 5))
    q99 = float(np.percentile(returns, 1))
    tail = returns[returns <= q95]
    expected_shortfall = -float(tail.mean()) if tail.size else 0.0

    return RiskMetrics(
        var95=max(0.0, -q95),
        var99=max(0.0, -q99),
        expected_shortfall=max(0.0, expected_shortfall),
        max_drawdown_duration=max_drawdown_duration(curve),
    )
