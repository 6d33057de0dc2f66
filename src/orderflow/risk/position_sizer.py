"""
仓位计算（实盘与回测共用同一套公式）

    数量   = 余额 × 单笔风险比例 / (|入场价 - 止损价| × 杠杆)
    保证金 = 数量 × 入场价
    盈亏   = 价差 × 数量 × 杠杆

因此止损触发时的亏损恰好等于 余额 × 单笔风险比例，
与风控管理器的单笔风险公式 |入场价 - 止损价| × 数量 × 杠杆 一致。
"""

from dataclasses import dataclass
from typing import Optional

from loguru import logger

from orderflow.models.risk import TradeSide
from orderflow.models.signal import SignalType, TradingSignal


@dataclass(frozen=True)
class PositionSize:
    quantity: float
    margin: float
    risk_amount: float
    capped: bool = False

    @classmethod
    def zero(cls) -> 'PositionSize':
        return cls(quantity=0.0, margin=0.0, risk_amount=0.0)


def _calculate_quantity_from_risk(
    entry_price: float,
    stop_loss_price: float,
    balance: float,
    risk_fraction: float,
    leverage: float = 1.0,
) -> float:
    """
    根据固定分数风险模型计算数量。

    Args:
        entry_price: 入场价格。
        stop_loss_price: 止损价格（多空均可，取距离）。
        balance: 账户余额。
        risk_fraction: 单笔风险占余额的比例 (e.g., 0.02 for 2%).
        leverage: 杠杆倍数。

    Returns:
        开仓数量；参数无效时返回0.0。
    """
    if entry_price <= 0 or stop_loss_price <= 0:
        logger.warning("Entry price and stop loss price must be positive.")
        return 0.0
    if balance <= 0 or risk_fraction <= 0 or leverage <= 0:
        logger.warning(f"Invalid sizing inputs: balance={balance}, risk={risk_fraction}, leverage={leverage}")
        return 0.0

    risk_distance = abs(entry_price - stop_loss_price)
    if risk_distance <= 0:
        logger.warning(f"Stop loss ({stop_loss_price}) equals entry price ({entry_price}).")
        return 0.0

    return balance * risk_fraction / (risk_distance * leverage)


def calculate_position_size(
    entry_price: float,
    stop_loss_price: float,
    balance: float,
    risk_fraction: float,
    leverage: float = 1.0,
    margin_ceiling: float = 1.0,
    available_balance: Optional[float] = None,
) -> PositionSize:
    """
    计算仓位，并把保证金限制在 可用余额 × margin_ceiling 以内（超出时按上限缩小数量）。
    """
    quantity = _calculate_quantity_from_risk(entry_price, stop_loss_price, balance, risk_fraction, leverage)
    if quantity <= 0:
        return PositionSize.zero()

    capped = False
    margin_base = balance if available_balance is None else available_balance
    max_margin = max(0.0, margin_base) * margin_ceiling
    if quantity * entry_price > max_margin:
        quantity = max_margin / entry_price
        capped = True
        if quantity <= 0:
            return PositionSize.zero()

    risk_amount = abs(entry_price - stop_loss_price) * quantity * leverage
    logger.debug(
        f"Calculated position size: {quantity:.6f} "
        f"(Entry: {entry_price}, SL: {stop_loss_price}, Risk: {risk_fraction*100}%, capped={capped})"
    )
    return PositionSize(quantity=quantity, margin=quantity * entry_price, risk_amount=risk_amount, capped=capped)


def size_for_signal(
    signal: TradingSignal,
    balance: float,
    risk_fraction: float,
    leverage: float = 1.0,
    margin_ceiling: float = 1.0,
    available_balance: Optional[float] = None,
    entry_price: Optional[float] = None,
) -> PositionSize:
    """根据交易信号计算仓位；无止损或非开仓信号返回零仓位"""
    if signal is None:
        logger.debug("No signal received, returning zero size.")
        return PositionSize.zero()
    if signal.signal_type not in (SignalType.LONG, SignalType.SHORT):
        logger.debug(f"Signal {signal.signal_type.value} does not open a position.")
        return PositionSize.zero()
    if signal.suggested_stop_loss is None:
        logger.debug(f"Signal {signal.id} has no stop loss, returning zero size.")
        return PositionSize.zero()

    return calculate_position_size(
        entry_price=entry_price if entry_price is not None else signal.price,
        stop_loss_price=signal.suggested_stop_loss,
        balance=balance,
        risk_fraction=risk_fraction,
        leverage=leverage,
        margin_ceiling=margin_ceiling,
        available_balance=available_balance,
    )


def side_for_signal(signal_type: SignalType) -> Optional[TradeSide]:
    if signal_type is SignalType.LONG:
        return TradeSide.LONG
    if signal_type is SignalType.SHORT:
        return TradeSide.SHORT
    return None


def calculate_pnl(side: TradeSide, entry_price: float, exit_price: float,
                  quantity: float, leverage: float = 1.0) -> float:
    """毛盈亏 = 价差 × 数量 × 杠杆"""
    diff = exit_price - entry_price if side is TradeSide.LONG else entry_price - exit_price
    return diff * quantity * leverage


def calculate_commission(entry_price: float, exit_price: float, quantity: float,
                         leverage: float, rate: float) -> float:
    """双边手续费，按名义价值计"""
    return quantity * leverage * (entry_price + exit_price) * rate
