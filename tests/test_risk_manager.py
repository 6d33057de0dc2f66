from dataclasses import replace
from datetime import timedelta

import pytest

from orderflow.core.errors import InvalidConfiguration
from orderflow.models.risk import (
    AccountState, AccountStatus, RejectionReason, RiskConfig, RiskEventType,
    TradeRecord, TradeSide, TradeStatus,
)
from orderflow.risk.risk_manager import RiskManager
from orderflow.utils.events import BoundedChannel
from conftest import BASE_TIME


def make_trade(trade_id, pnl=None, quantity=10.0, entry_price=100.0, stop_loss=98.0, risk_percentage=0.002):
    return TradeRecord(
        id=trade_id,
        symbol='BTCUSDT',
        side=TradeSide.LONG,
        entry_price=entry_price,
        quantity=quantity,
        stop_loss=stop_loss,
        risk_amount=abs(entry_price - stop_loss) * quantity,
        risk_percentage=risk_percentage,
        status=TradeStatus.OPEN,
        entry_time=BASE_TIME,
        pnl=pnl,
    )


def round_trip(manager, trade_id, pnl):
    trade = make_trade(trade_id)
    manager.on_position_opened(trade)
    return manager.on_position_closed(replace(trade, pnl=pnl, status=TradeStatus.CLOSED))


@pytest.fixture
def manager(store, clock):
    return RiskManager(store, BoundedChannel('risk', capacity=100), clock=clock)


def test_two_percent_rule(manager):
    rejected = manager.can_open_position('BTCUSDT', TradeSide.LONG, 10.0, 100.0, 79.9)
    assert not rejected.can_trade
    assert rejected.rejection is RejectionReason.RISK_LIMIT_EXCEEDED
    assert rejected.risk_percentage == pytest.approx(0.0201)

    accepted = manager.can_open_position('BTCUSDT', TradeSide.LONG, 10.0, 100.0, 80.0)
    assert accepted.can_trade
    assert accepted.risk_amount == pytest.approx(200.0)
    assert accepted.rejection is None


def test_invalid_order(manager):
    result = manager.can_open_position('BTCUSDT', TradeSide.LONG, 0.0, 100.0, 98.0)
    assert result.rejection is RejectionReason.INVALID_ORDER


def test_cooldown_is_checked_first(store, clock):
    status = replace(AccountStatus(), is_in_cooldown=True, cooldown_end_time=BASE_TIME + timedelta(hours=1))
    manager = RiskManager(store, initial_status=status, clock=clock)

    # 风险同样超限，但冷却期优先
    result = manager.can_open_position('BTCUSDT', TradeSide.LONG, 100.0, 100.0, 50.0)
    assert result.rejection is RejectionReason.COOLDOWN_ACTIVE

    clock.advance(hours=2)
    assert manager.can_open_position('BTCUSDT', TradeSide.LONG, 1.0, 100.0, 98.0).can_trade
    assert manager.get_account_status().state is AccountState.ACTIVE


def test_max_positions(manager):
    for i in range(3):
        manager.on_position_opened(make_trade(f"t{i}"))

    result = manager.can_open_position('BTCUSDT', TradeSide.LONG, 1.0, 100.0, 98.0)
    assert result.rejection is RejectionReason.MAX_POSITIONS_REACHED
    assert manager.get_risk_events()[0].event_type is RiskEventType.MAX_POSITIONS_REACHED


def test_total_risk(manager):
    for i in range(2):
        manager.on_position_opened(make_trade(f"t{i}", risk_percentage=0.03))

    result = manager.can_open_position('BTCUSDT', TradeSide.LONG, 10.0, 100.0, 98.5)
    assert result.rejection is RejectionReason.RISK_LIMIT_EXCEEDED
    assert "总风险超限" in result.reason


def test_insufficient_available_balance(manager):
    result = manager.can_open_position('BTCUSDT', TradeSide.LONG, 200.0, 100.0, 99.0)
    assert result.rejection is RejectionReason.INSUFFICIENT_BALANCE


def test_min_account_balance(store, clock):
    manager = RiskManager(store, initial_status=AccountStatus.with_balance(900.0), clock=clock)
    result = manager.can_open_position('BTCUSDT', TradeSide.LONG, 1.0, 100.0, 99.0)
    assert result.rejection is RejectionReason.INSUFFICIENT_BALANCE
    assert "账户余额低于下限" in result.reason


def test_emergency_drawdown_blocks_new_positions(store, clock):
    status = replace(AccountStatus(), max_drawdown_from_peak=0.2)
    manager = RiskManager(store, initial_status=status, clock=clock)
    result = manager.can_open_position('BTCUSDT', TradeSide.LONG, 1.0, 100.0, 99.0)
    assert result.rejection is RejectionReason.EMERGENCY_STOP


def test_leverage_ceiling(manager):
    result = manager.can_open_position('BTCUSDT', TradeSide.LONG, 1.0, 100.0, 90.0, leverage=5.0)
    assert result.rejection is RejectionReason.LEVERAGE_EXCEEDED


def test_leverage_reduction_is_advisory(store, clock):
    status = replace(AccountStatus(), max_drawdown_from_peak=0.12)
    manager = RiskManager(store, initial_status=status, clock=clock)

    result = manager.can_open_position('BTCUSDT', TradeSide.LONG, 1.0, 100.0, 99.0, leverage=2.0)

    assert result.can_trade
    assert result.recommended_leverage == 1.0
    assert manager.get_risk_events()[0].event_type is RiskEventType.LEVERAGE_REDUCED


def test_open_and_close_accounting(manager):
    trade = make_trade('t1')
    opened = manager.on_position_opened(trade)
    assert opened.available_balance == pytest.approx(9000.0)
    assert opened.current_risk == pytest.approx(0.002)
    assert opened.total_trades == 1

    closed = manager.on_position_closed(replace(trade, pnl=50.0))
    assert closed.total_balance == pytest.approx(10050.0)
    assert closed.available_balance == pytest.approx(10050.0)
    assert closed.peak_balance == pytest.approx(10050.0)
    assert closed.current_risk == 0.0
    assert closed.winning_trades == 1
    assert closed.consecutive_losses == 0
    assert manager.get_open_trades() == []


def test_cooldown_after_consecutive_losses(manager, clock):
    for i in range(3):
        status = round_trip(manager, f"t{i}", -10.0)

    assert status.is_in_cooldown
    assert status.cooldown_end_time == BASE_TIME + timedelta(hours=24)
    assert manager.get_risk_events()[0].event_type is RiskEventType.COOLDOWN_ACTIVATED

    assert not manager.check_cooldown_expiry()
    clock.advance(hours=24)
    assert manager.check_cooldown_expiry()
    assert manager.get_account_status().state is AccountState.ACTIVE


def test_win_resets_loss_streak(manager):
    round_trip(manager, 't1', -10.0)
    round_trip(manager, 't2', -10.0)
    status = round_trip(manager, 't3', 5.0)
    assert status.consecutive_losses == 0
    assert not status.is_in_cooldown


def test_drawdown_warning(manager):
    status = round_trip(manager, 't1', -1300.0)
    assert status.max_drawdown_from_peak == pytest.approx(0.13)
    assert manager.get_risk_events()[0].event_type is RiskEventType.DRAWDOWN_WARNING


def test_emergency_stop_closes_remaining_positions(store, clock):
    closed = []
    manager = RiskManager(store, clock=clock, position_closer=lambda trade, reason: closed.append((trade.id, reason)))

    first, second = make_trade('a'), make_trade('b')
    manager.on_position_opened(first)
    manager.on_position_opened(second)
    manager.on_position_closed(replace(first, pnl=-1600.0))

    assert closed == [('b', "紧急止损")]
    assert manager.get_risk_events()[0].event_type is RiskEventType.EMERGENCY_STOP


def test_unrealized_pnl(manager):
    manager.on_position_opened(make_trade('t1'))
    status = manager.update_unrealized_pnl({'BTCUSDT': 103.0})
    assert status.unrealized_pnl == pytest.approx(30.0)


def test_trading_stats(manager):
    round_trip(manager, 't1', 100.0)
    round_trip(manager, 't2', -50.0)
    round_trip(manager, 't3', 30.0)

    stats = manager.get_trading_stats()
    assert stats.total_trades == 3
    assert stats.winning_trades == 2
    assert stats.win_rate == pytest.approx(2 / 3)
    assert stats.total_pnl == pytest.approx(80.0)
    assert stats.avg_win == pytest.approx(65.0)
    assert stats.avg_loss == pytest.approx(-50.0)
    assert stats.profit_factor == pytest.approx(130.0 / 50.0)
    assert stats.current_balance == pytest.approx(10080.0)


def test_events_are_published_and_newest_first(manager):
    manager.can_open_position('BTCUSDT', TradeSide.LONG, 10.0, 100.0, 50.0)
    manager.can_open_position('BTCUSDT', TradeSide.LONG, 1.0, 100.0, 90.0, leverage=5.0)

    events = manager.get_risk_events()
    assert [e.event_type for e in events] == [RiskEventType.RISK_LIMIT_EXCEEDED, RiskEventType.RISK_LIMIT_EXCEEDED]
    assert events[0].risk_value == 5.0
    assert len(manager.risk_channel) == 2


def test_invalid_risk_config(manager):
    with pytest.raises(InvalidConfiguration):
        manager.update_risk_config(RiskConfig(max_risk_per_trade=0.1, max_total_risk=0.05))
    assert manager.get_risk_config() == RiskConfig()


def test_duplicate_close_leaves_account_unchanged(manager):
    trade = make_trade('t1')
    manager.on_position_opened(trade)
    first = manager.on_position_closed(replace(trade, pnl=-20.0))
    second = manager.on_position_closed(replace(trade, pnl=-20.0))

    assert second == first
    assert second.total_balance == pytest.approx(9980.0)
    assert second.losing_trades == 1

    unknown = manager.on_position_closed(make_trade('never_opened', pnl=500.0))
    assert unknown.total_balance == pytest.approx(9980.0)


def test_close_trade_settles_stored_position(manager):
    manager.on_position_opened(make_trade('t1'))

    closed = manager.close_trade('t1', 103.0, commission=1.0, reason="take_profit")
    assert closed.status is TradeStatus.CLOSED
    assert closed.pnl == pytest.approx(29.0)
    assert closed.exit_time == BASE_TIME
    assert closed.pnl_percentage == pytest.approx(29.0 / 1000.0)

    assert manager.close_trade('t1', 103.0) is None
    assert manager.close_trade('missing', 103.0) is None
    status = manager.get_account_status()
    assert status.total_balance == pytest.approx(10029.0)
    assert status.available_balance == pytest.approx(10029.0)
