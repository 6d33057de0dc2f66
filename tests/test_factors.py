import pytest

from orderflow.models.signal import FactorName
from orderflow.signal.factor_calculator import FactorCalculator, clamp_score


def test_clamp_score():
    assert clamp_score(7.5) == 5.0
    assert clamp_score(-9.0) == -5.0
    assert clamp_score(1.25) == 1.25


def test_trend_perfect_bull_alignment(make_snapshot):
    previous = make_snapshot(ema12=100.0, ema26=99.0, ema50=98.0, ema200=90.0)
    current = make_snapshot(price=105.0, ema12=101.0, ema26=100.0, ema50=98.0, ema200=90.0)

    factor = FactorCalculator.trend(current, [previous])

    assert factor.name is FactorName.TREND
    # 排列 +3，价格在短期EMA之上 +1，斜率 +1
    assert factor.score == 5.0
    assert "EMA完美多头排列" in factor.rationale


def test_trend_bear_alignment_without_history(make_snapshot):
    current = make_snapshot(price=95.0, ema12=96.0, ema26=97.0, ema50=98.0, ema200=99.0)
    assert FactorCalculator.trend(current, []).score == -4.0


def test_trend_missing_ema_is_neutral(make_snapshot):
    current = make_snapshot(ema12=101.0, ema26=100.0, ema50=None, ema200=98.0)
    factor = FactorCalculator.trend(current, [])
    assert factor.score == 0.0
    assert factor.indicators == {}


def test_momentum_macd_and_overbought_rsi(make_snapshot):
    current = make_snapshot(macd=1.0, macd_signal=0.5, macd_histogram=0.5, rsi=75.0)
    previous = make_snapshot(macd_histogram=0.2, rsi=70.0)
    # 金叉零轴上 +2，柱状图增强 +1，RSI超买 -1
    assert FactorCalculator.momentum(current, [previous]).score == 2.0


def test_volume_spike_and_vwap(make_snapshot, make_candles):
    previous = make_candles([100.0] * 5, volume=100.0)
    current_candle = make_candles([101.0], volume=250.0)[0]
    current = make_snapshot(price=101.0, volume=250.0, vwap=100.0)

    factor = FactorCalculator.volume(current, current_candle, list(reversed(previous)))

    # 放量 2.5 倍 +2，价格高于VWAP +1
    assert factor.score == 3.0
    assert factor.indicators["VolumeRatio"] == pytest.approx(2.5)


def test_volatility_near_upper_band(make_snapshot):
    current = make_snapshot(price=109.0, bollinger_upper=110.0, bollinger_middle=100.0, bollinger_lower=90.0)
    factor = FactorCalculator.volatility(current, [])
    assert factor.score == -1.0
    assert factor.indicators["PercentB"] == pytest.approx(0.95)


def test_derivatives_high_funding_and_falling_oi():
    factor = FactorCalculator.derivatives(0.02, 850.0, 1000.0)
    assert factor.score == -3.0


def test_derivatives_zero_previous_oi_is_skipped():
    factor = FactorCalculator.derivatives(None, 1000.0, 0.0)
    assert factor.score == 0.0
    assert "OpenInterest" not in factor.indicators


def test_factor_scores_are_always_clamped(make_snapshot):
    current = make_snapshot(
        price=150.0, ema12=120.0, ema26=110.0, ema50=105.0, ema200=100.0,
        macd=5.0, macd_signal=1.0, macd_histogram=4.0, rsi=60.0,
    )
    previous = make_snapshot(ema12=100.0, ema26=100.0, macd_histogram=1.0, rsi=55.0)
    for factor in (FactorCalculator.trend(current, [previous]), FactorCalculator.momentum(current, [previous])):
        assert -5.0 <= factor.score <= 5.0
