"""
因子计算器

五个相互独立的因子（趋势 / 动量 / 成交量 / 波动性 / 衍生品），
每个只看当前快照和一小段倒序历史，原始得分统一截断到 [-5, 5]。
权重由信号引擎在外部设置。
"""

from typing import Dict, List, Optional, Sequence

from orderflow.models.indicator import IndicatorSnapshot
from orderflow.models.market_data import Candle
from orderflow.models.signal import FactorName, FactorScore

SCORE_LIMIT = 5.0
SLOPE_THRESHOLD = 0.001
VOLUME_LOOKBACK = 20


def clamp_score(score: float) -> float:
    return max(-SCORE_LIMIT, min(SCORE_LIMIT, score))


def _factor(name: FactorName, score: float, reasons: List[str], indicators: Dict[str, float]) -> FactorScore:
    return FactorScore(name=name, score=clamp_score(score), rationale=tuple(reasons), indicators=indicators)


class FactorCalculator:
    """因子计算纯函数"""

    @staticmethod
    def trend(current: IndicatorSnapshot, previous: Sequence[IndicatorSnapshot]) -> FactorScore:
        score = 0.0
        reasons: List[str] = []
        indicators: Dict[str, float] = {}

        ema12, ema26, ema50, ema200 = current.ema12, current.ema26, current.ema50, current.ema200
        if None in (ema12, ema26, ema50, ema200):
            return _factor(FactorName.TREND, score, reasons, indicators)

        indicators.update(EMA12=ema12, EMA26=ema26, EMA50=ema50, EMA200=ema200)

        # EMA排列
        if ema12 > ema26 > ema50 > ema200:
            score += 3.0
            reasons.append("EMA完美多头排列")
        elif ema12 > ema26 > ema50:
            score += 2.0
            reasons.append("EMA短期多头排列")
        elif ema12 > ema26:
            score += 1.0
            reasons.append("EMA12上穿EMA26")
        elif ema12 < ema26 < ema50 < ema200:
            score -= 3.0
            reasons.append("EMA完美空头排列")
        elif ema12 < ema26 < ema50:
            score -= 2.0
            reasons.append("EMA短期空头排列")
        elif ema12 < ema26:
            score -= 1.0
            reasons.append("EMA12下穿EMA26")

        # 价格与短期EMA
        price = current.price
        if price > ema12 and price > ema26:
            score += 1.0
            reasons.append("价格位于短期EMA之上")
        elif price < ema12 and price < ema26:
            score -= 1.0
            reasons.append("价格位于短期EMA之下")

        # EMA斜率
        if previous:
            prev = previous[0]
            slope12 = (ema12 - prev.ema12) / prev.ema12 if prev.ema12 else 0.0
            slope26 = (ema26 - prev.ema26) / prev.ema26 if prev.ema26 else 0.0
            if slope12 > SLOPE_THRESHOLD and slope26 > SLOPE_THRESHOLD:
                score += 1.0
                reasons.append("EMA向上倾斜强劲")
            elif slope12 < -SLOPE_THRESHOLD and slope26 < -SLOPE_THRESHOLD:
                score -= 1.0
                reasons.append("EMA向下倾斜强劲")

        return _factor(FactorName.TREND, score, reasons, indicators)

    @staticmethod
    def momentum(current: IndicatorSnapshot, previous: Sequence[IndicatorSnapshot]) -> FactorScore:
        score = 0.0
        reasons: List[str] = []
        indicators: Dict[str, float] = {}

        macd, signal, histogram = current.macd, current.macd_signal, current.macd_histogram
        if macd is not None and signal is not None and histogram is not None:
            indicators.update(MACD=macd, MACD_Signal=signal, MACD_Histogram=histogram)

            if macd > signal and macd > 0:
                score += 2.0
                reasons.append("MACD金叉且位于零轴上方")
            elif macd > signal:
                score += 1.0
                reasons.append("MACD金叉")
            elif macd < signal and macd < 0:
                score -= 2.0
                reasons.append("MACD死叉且位于零轴下方")
            elif macd < signal:
                score -= 1.0
                reasons.append("MACD死叉")

            if previous and previous[0].macd_histogram is not None:
                prev_histogram = previous[0].macd_histogram
                if histogram > prev_histogram and histogram > 0:
                    score += 1.0
                    reasons.append("MACD柱状图增强")
                elif histogram < prev_histogram and histogram < 0:
                    score -= 1.0
                    reasons.append("MACD柱状图减弱")

        rsi = current.rsi
        if rsi is not None:
            indicators["RSI"] = rsi

            if rsi > 70:
                score -= 1.0
                reasons.append("RSI超买区域")
            elif rsi > 50:
                score += 1.0
                reasons.append("RSI健康上行")
            elif rsi < 30:
                score += 1.0
                reasons.append("RSI超卖区域")

            # 背离：需要至少两根历史快照
            if len(previous) >= 2 and previous[0].rsi is not None:
                prev_rsi = previous[0].rsi
                prev_price = previous[0].price
                if current.price > prev_price and rsi < prev_rsi and rsi > 70:
                    score -= 2.0
                    reasons.append("RSI顶背离")
                elif current.price < prev_price and rsi > prev_rsi and rsi < 30:
                    score += 2.0
                    reasons.append("RSI底背离")

        return _factor(FactorName.MOMENTUM, score, reasons, indicators)

    @staticmethod
    def volume(current: IndicatorSnapshot, candle: Optional[Candle],
               previous_candles: Sequence[Candle]) -> FactorScore:
        score = 0.0
        reasons: List[str] = []
        indicators: Dict[str, float] = {}

        volume = candle.volume if candle is not None else current.volume
        cvd = current.cvd if current.cvd is not None else (candle.cvd if candle is not None else None)
        vwap = current.vwap
        price = current.price

        indicators["Volume"] = volume
        if cvd is not None:
            indicators["CVD"] = cvd
        if vwap is not None:
            indicators["VWAP"] = vwap

        if previous_candles:
            recent = previous_candles[:VOLUME_LOOKBACK]
            avg_volume = sum(c.volume for c in recent) / len(recent)
            if avg_volume > 0:
                ratio = volume / avg_volume
                indicators["VolumeRatio"] = ratio
                if ratio > 2.0:
                    score += 2.0
                    reasons.append("成交量异常放大")
                elif ratio > 1.5:
                    score += 1.0
                    reasons.append("成交量明显放大")
                elif ratio < 0.5:
                    score -= 1.0
                    reasons.append("成交量萎缩")

            prev = previous_candles[0]
            if cvd is not None and prev.cvd is not None:
                cvd_change = cvd - prev.cvd
                if cvd_change > 0 and price > prev.close:
                    score += 1.0
                    reasons.append("CVD与价格同向上涨")
                elif cvd_change < 0 and price < prev.close:
                    score += 1.0
                    reasons.append("CVD与价格同向下跌")
                elif cvd_change > 0 and price < prev.close:
                    score -= 1.0
                    reasons.append("CVD与价格背离(买盘强但价格跌)")
                elif cvd_change < 0 and price > prev.close:
                    score -= 1.0
                    reasons.append("CVD与价格背离(卖盘强但价格涨)")

        if vwap is not None:
            if price > vwap * 1.002:
                score += 1.0
                reasons.append("价格显著高于VWAP")
            elif price < vwap * 0.998:
                score -= 1.0
                reasons.append("价格显著低于VWAP")

        return _factor(FactorName.VOLUME, score, reasons, indicators)

    @staticmethod
    def volatility(current: IndicatorSnapshot, previous: Sequence[IndicatorSnapshot]) -> FactorScore:
        score = 0.0
        reasons: List[str] = []
        indicators: Dict[str, float] = {}

        atr = current.atr
        if atr is not None:
            indicators["ATR"] = atr
            if previous and previous[0].atr:
                atr_change = (atr - previous[0].atr) / previous[0].atr
                if atr_change > 0.2:
                    score += 1.0
                    reasons.append("波动性显著增加")
                elif atr_change < -0.2:
                    score -= 1.0
                    reasons.append("波动性显著减少")

        if current.has_bollinger:
            upper, middle, lower = current.bollinger_upper, current.bollinger_middle, current.bollinger_lower
            indicators.update(BB_Upper=upper, BB_Middle=middle, BB_Lower=lower)

            # 带宽变化
            if previous and previous[0].has_bollinger and middle and previous[0].bollinger_middle:
                prev = previous[0]
                width = (upper - lower) / middle
                prev_width = (prev.bollinger_upper - prev.bollinger_lower) / prev.bollinger_middle
                if width > prev_width * 1.1:
                    score += 1.0
                    reasons.append("布林带扩张")
                elif width < prev_width * 0.9:
                    score -= 1.0
                    reasons.append("布林带收缩")

            # 价格在带内的位置
            if upper != lower:
                position = (current.price - lower) / (upper - lower)
                indicators["PercentB"] = position
                if position > 0.8:
                    score -= 1.0
                    reasons.append("价格接近布林带上轨")
                elif position < 0.2:
                    score += 1.0
                    reasons.append("价格接近布林带下轨")
                elif position > 0.6:
                    score += 0.5
                    reasons.append("价格位于布林带上半部")
                elif position < 0.4:
                    score -= 0.5
                    reasons.append("价格位于布林带下半部")

        return _factor(FactorName.VOLATILITY, score, reasons, indicators)

    @staticmethod
    def derivatives(funding_rate: Optional[float], open_interest: Optional[float],
                    previous_open_interest: Optional[float]) -> FactorScore:
        score = 0.0
        reasons: List[str] = []
        indicators: Dict[str, float] = {}

        if funding_rate is not None:
            indicators["FundingRate"] = funding_rate
            if funding_rate > 0.01:
                score -= 2.0
                reasons.append("资金费率过高，多头付费压力大")
            elif funding_rate > 0.005:
                score -= 1.0
                reasons.append("资金费率偏高")
            elif funding_rate < -0.01:
                score += 2.0
                reasons.append("资金费率为负，空头付费")
            elif funding_rate < -0.005:
                score += 1.0
                reasons.append("资金费率偏低")

        if open_interest is not None and previous_open_interest:
            indicators["OpenInterest"] = open_interest
            oi_change = (open_interest - previous_open_interest) / previous_open_interest
            if oi_change > 0.1:
                score += 1.0
                reasons.append("持仓量大幅增加")
            elif oi_change > 0.05:
                score += 0.5
                reasons.append("持仓量增加")
            elif oi_change < -0.1:
                score -= 1.0
                reasons.append("持仓量大幅减少")
            elif oi_change < -0.05:
                score -= 0.5
                reasons.append("持仓量减少")

        return _factor(FactorName.DERIVATIVES, score, reasons, indicators)
