"""
指标服务：把K线序列对齐成逐根的 IndicatorSnapshot

- build_snapshots: 批量计算（回测、冷启动）
- IncrementalIndicators: 单个 (symbol, interval) 的增量状态（实时）
"""

from collections import deque
from typing import Deque, List, Optional, Sequence

from orderflow.indicators.calculator import IndicatorCalculator
from orderflow.models.indicator import IndicatorSnapshot
from orderflow.models.market_data import Candle
from orderflow.utils.log import setup_logging

log = setup_logging(module_prefix='INDICATOR')

EMA_PERIODS = (12, 26, 50, 200)
SMA_PERIOD = 20
MACD_SIGNAL_PERIOD = 9
RSI_PERIOD = 14
ATR_PERIOD = 14
BOLLINGER_PERIOD = 20
BOLLINGER_STD = 2.0
DEFAULT_WARMUP = 200


def _align(values: List, total: int) -> List:
    """右对齐到长度 total，前面补 None"""
    return [None] * (total - len(values)) + list(values)


def build_snapshots(symbol: str, interval: str, candles: Sequence[Candle],
                    warmup: int = DEFAULT_WARMUP) -> List[IndicatorSnapshot]:
    """批量计算所有指标，从第 warmup 根K线开始每根一个快照

    K线不足 warmup 根时返回空列表（历史不足不是致命错误）。
    """
    n = len(candles)
    if n < warmup:
        log.warning(f"[INDICATOR] {symbol} {interval} K线不足: 需要 {warmup} 根，当前 {n} 根")
        return []

    calc = IndicatorCalculator
    closes = [c.close for c in candles]

    emas = {p: _align(calc.ema(closes, p), n) for p in EMA_PERIODS}
    sma20 = _align(calc.sma(closes, SMA_PERIOD), n)
    macd = _align(calc.macd(closes, 12, 26, MACD_SIGNAL_PERIOD), n)
    rsi = _align(calc.rsi(closes, RSI_PERIOD), n)
    atr = _align(calc.atr(candles, ATR_PERIOD), n)
    bands = _align(calc.bollinger_bands(closes, BOLLINGER_PERIOD, BOLLINGER_STD), n)
    vwap = calc.vwap(candles)
    cvd = calc.cumulative_volume_delta(candles)

    snapshots = []
    for i in range(warmup - 1, n):
        candle = candles[i]
        m = macd[i]
        b = bands[i]
        snapshots.append(IndicatorSnapshot(
            symbol=symbol,
            interval=interval,
            timestamp=candle.close_time,
            price=candle.close,
            volume=candle.volume,
            ema12=emas[12][i],
            ema26=emas[26][i],
            ema50=emas[50][i],
            ema200=emas[200][i],
            sma20=sma20[i],
            macd=m.macd if m else None,
            macd_signal=m.signal if m else None,
            macd_histogram=m.histogram if m else None,
            rsi=rsi[i],
            atr=atr[i],
            bollinger_upper=b.upper if b else None,
            bollinger_middle=b.middle if b else None,
            bollinger_lower=b.lower if b else None,
            vwap=vwap[i],
            cvd=cvd[i],
        ))

    log.debug(f"[INDICATOR] {symbol} {interval} 计算完成 {len(snapshots)} 个快照")
    return snapshots


class IncrementalIndicators:
    """单个 (symbol, interval) 的增量指标状态

    EMA/MACD/ATR 逐根递推（数据刚够时用SMA做种子，与批量结果一致），
    RSI 和布林带在有界窗口上重算，VWAP 使用累计和。
    """

    def __init__(self, symbol: str, interval: str, window: int = 500):
        self.symbol = symbol
        self.interval = interval
        self.bars_seen = 0

        self._closes: Deque[float] = deque(maxlen=window)
        self._true_ranges: Deque[float] = deque(maxlen=ATR_PERIOD)
        self._macd_values: Deque[float] = deque(maxlen=MACD_SIGNAL_PERIOD)
        self._last_candle: Optional[Candle] = None

        self._emas = {p: None for p in EMA_PERIODS}
        self._macd_signal: Optional[float] = None
        self._atr: Optional[float] = None
        self._cum_pv = 0.0
        self._cum_volume = 0.0
        self._cvd: Optional[float] = None

    def seed(self, candles: Sequence[Candle]) -> List[IndicatorSnapshot]:
        """用历史K线初始化状态，返回每根K线的快照"""
        return [self.update(candle) for candle in candles]

    def _next_ema(self, previous: Optional[float], value: float, period: int,
                  history: Sequence[float]) -> Optional[float]:
        if previous is not None:
            return IndicatorCalculator.ema_incremental(value, previous, period)
        if len(history) >= period:
            recent = list(history)[-period:]
            return sum(recent) / period
        return None

    def update(self, candle: Candle) -> IndicatorSnapshot:
        """推进一根已收盘K线，返回该K线的快照"""
        calc = IndicatorCalculator
        price = candle.close
        self._closes.append(price)
        self.bars_seen += 1

        # EMA
        for period in EMA_PERIODS:
            self._emas[period] = self._next_ema(self._emas[period], price, period, self._closes)

        # MACD
        macd = macd_signal = macd_histogram = None
        ema12, ema26 = self._emas[12], self._emas[26]
        if ema12 is not None and ema26 is not None:
            macd = ema12 - ema26
            self._macd_values.append(macd)
            self._macd_signal = self._next_ema(self._macd_signal, macd, MACD_SIGNAL_PERIOD, self._macd_values)
            if self._macd_signal is not None:
                macd_signal = self._macd_signal
                macd_histogram = macd - macd_signal
            else:
                macd = None

        # ATR
        if self._last_candle is not None:
            tr = calc.true_ranges([self._last_candle, candle])[0]
            self._true_ranges.append(tr)
            self._atr = self._next_ema(self._atr, tr, ATR_PERIOD, self._true_ranges)
        self._last_candle = candle

        # 窗口指标
        closes = list(self._closes)
        rsi_values = calc.rsi(closes, RSI_PERIOD)
        bands = calc.bollinger_bands(closes[-BOLLINGER_PERIOD:], BOLLINGER_PERIOD, BOLLINGER_STD)
        band = bands[-1] if bands else None
        sma20 = sum(closes[-SMA_PERIOD:]) / SMA_PERIOD if len(closes) >= SMA_PERIOD else None

        # VWAP / CVD
        self._cum_pv += candle.typical_price * candle.volume
        self._cum_volume += candle.volume
        vwap = self._cum_pv / self._cum_volume if self._cum_volume > 0 else candle.typical_price

        if candle.cvd is not None:
            self._cvd = candle.cvd
        elif candle.volume_delta is not None:
            self._cvd = (self._cvd or 0.0) + candle.volume_delta

        return IndicatorSnapshot(
            symbol=self.symbol,
            interval=self.interval,
            timestamp=candle.close_time,
            price=price,
            volume=candle.volume,
            ema12=ema12,
            ema26=ema26,
            ema50=self._emas[50],
            ema200=self._emas[200],
            sma20=sma20,
            macd=macd,
            macd_signal=macd_signal,
            macd_histogram=macd_histogram,
            rsi=rsi_values[-1] if rsi_values else None,
            atr=self._atr,
            bollinger_upper=band.upper if band else None,
            bollinger_middle=band.middle if band else None,
            bollinger_lower=band.lower if band else None,
            vwap=vwap,
            cvd=self._cvd,
        )

    def is_ready(self, warmup: int = DEFAULT_WARMUP) -> bool:
        return self.bars_seen >= warmup
