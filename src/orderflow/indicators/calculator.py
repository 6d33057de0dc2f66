"""
技术指标计算纯函数

批量模式返回从第一个有效值开始的列表（长度 n - 预热期 + 1），数据不足返回空列表；
增量模式只做一步递推。数值计算委托给 TA-Lib。
"""

from typing import List, Optional, Sequence

import numpy as np
import talib

from orderflow.models.indicator import BollingerBands, MacdValue
from orderflow.models.market_data import AggTrade, Candle


def _as_array(values: Sequence[float]) -> np.ndarray:
    return np.asarray(values, dtype=np.float64)


def _valid(values: np.ndarray) -> List[float]:
    """去掉 TA-Lib 输出前导的 NaN"""
    return [float(v) for v in values[~np.isnan(values)]]


class IndicatorCalculator:
    """指标计算纯函数集合"""

    @staticmethod
    def ema(prices: Sequence[float], period: int) -> List[float]:
        """EMA：前 period 个价格的SMA作为种子，之后 alpha = 2/(period+1) 递推"""
        if period <= 0 or len(prices) < period:
            return []
        return _valid(talib.EMA(_as_array(prices), timeperiod=period))

    @staticmethod
    def ema_incremental(price: float, previous_ema: Optional[float], period: int) -> float:
        """EMA单步递推；没有前值时返回当前价格"""
        if previous_ema is None:
            return price
        alpha = 2.0 / (period + 1)
        return alpha * price + (1 - alpha) * previous_ema

    @staticmethod
    def sma(prices: Sequence[float], period: int) -> List[float]:
        if period <= 0 or len(prices) < period:
            return []
        return _valid(talib.SMA(_as_array(prices), timeperiod=period))

    @staticmethod
    def macd(prices: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9) -> List[MacdValue]:
        """MACD = EMA(fast) - EMA(slow)，信号线为 MACD 的 EMA(signal)"""
        if len(prices) < slow:
            return []

        ema_fast = IndicatorCalculator.ema(prices, fast)
        ema_slow = IndicatorCalculator.ema(prices, slow)
        offset = slow - fast  # EMA(slow) 比 EMA(fast) 晚开始

        macd_line = [ema_fast[offset + i] - ema_slow[i] for i in range(len(ema_slow))]
        signal_line = IndicatorCalculator.ema(macd_line, signal)
        start = len(macd_line) - len(signal_line)

        result = []
        for i, signal_value in enumerate(signal_line):
            m = start + i
            result.append(MacdValue(
                macd=macd_line[m],
                signal=signal_value,
                histogram=macd_line[m] - signal_value,
                ema_fast=ema_fast[offset + m],
                ema_slow=ema_slow[m],
            ))
        return result

    @staticmethod
    def rsi(prices: Sequence[float], period: int = 14) -> List[float]:
        """RSI（Wilder平滑）"""
        if len(prices) < period + 1:
            return []
        return _valid(talib.RSI(_as_array(prices), timeperiod=period))

    @staticmethod
    def true_ranges(candles: Sequence[Candle]) -> List[float]:
        """真实波幅，从第二根K线开始"""
        result = []
        for previous, current in zip(candles, candles[1:]):
            result.append(max(
                current.high - current.low,
                abs(current.high - previous.close),
                abs(current.low - previous.close),
            ))
        return result

    @staticmethod
    def atr(candles: Sequence[Candle], period: int = 14) -> List[float]:
        """ATR = 真实波幅的EMA（SMA种子）"""
        if len(candles) < period + 1:
            return []
        return IndicatorCalculator.ema(IndicatorCalculator.true_ranges(candles), period)

    @staticmethod
    def bollinger_bands(prices: Sequence[float], period: int = 20, std_dev: float = 2.0) -> List[BollingerBands]:
        """布林带，总体标准差"""
        if len(prices) < period:
            return []

        upper, middle, lower = talib.BBANDS(
            _as_array(prices), timeperiod=period, nbdevup=std_dev, nbdevdn=std_dev, matype=0
        )
        result = []
        for i in range(period - 1, len(prices)):
            u, m, lo = float(upper[i]), float(middle[i]), float(lower[i])
            bandwidth = (u - lo) / m * 100 if m != 0 else 0.0
            percent_b = (prices[i] - lo) / (u - lo) if u != lo else 0.5
            result.append(BollingerBands(upper=u, middle=m, lower=lo, bandwidth=bandwidth, percent_b=percent_b))
        return result

    @staticmethod
    def vwap(candles: Sequence[Candle]) -> List[float]:
        """累计典型价格VWAP"""
        cumulative_pv = 0.0
        cumulative_volume = 0.0
        result = []
        for candle in candles:
            typical = candle.typical_price
            cumulative_pv += typical * candle.volume
            cumulative_volume += candle.volume
            result.append(cumulative_pv / cumulative_volume if cumulative_volume > 0 else typical)
        return result

    @staticmethod
    def cvd(agg_trades: Sequence[AggTrade]) -> float:
        """累计成交量差：主动买入加，主动卖出（买方为maker）减"""
        total = 0.0
        for trade in agg_trades:
            total += -trade.quantity if trade.is_buyer_maker else trade.quantity
        return total

    @staticmethod
    def cumulative_volume_delta(candles: Sequence[Candle]) -> List[Optional[float]]:
        """按K线累计CVD；优先使用上游给出的 cvd，否则累加主动买卖差"""
        result: List[Optional[float]] = []
        running = 0.0
        for candle in candles:
            if candle.cvd is not None:
                running = candle.cvd
                result.append(running)
            elif candle.volume_delta is not None:
                running += candle.volume_delta
                result.append(running)
            else:
                result.append(None)
        return result
