"""
信号引擎

evaluate 是纯函数：快照 + 短历史 + 配置 -> SignalGenerationResult；
SignalEngine 实例负责配置、持久化、信号发布和信号生命周期（失效 / 过期清理）。
"""

import threading
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

import arrow

from orderflow.models.indicator import IndicatorSnapshot
from orderflow.models.signal import (
    FactorName, FactorScore, MarketHistory, SignalConfig, SignalGenerationResult,
    SignalStrength, SignalType, TradingSignal,
)
from orderflow.signal.factor_calculator import FactorCalculator
from orderflow.storage.codec import from_record, to_record
from orderflow.storage.store import Store
from orderflow.utils.data_transforms import to_millis
from orderflow.utils.events import BoundedChannel
from orderflow.utils.log import setup_logging

log = setup_logging(module_prefix='SIGNAL')

LOOKBACK_PERIODS = 20
CONSISTENCY_THRESHOLD = 0.5

# 杠杆随信号强度递减
LEVERAGE_SCALE = {
    SignalStrength.VERY_STRONG: 1.0,
    SignalStrength.STRONG: 0.8,
    SignalStrength.MEDIUM: 0.6,
    SignalStrength.WEAK: 0.4,
}

CONFIG_NAMESPACE = 'config'
CONFIG_KEY = 'signal'
SIGNAL_NAMESPACE = 'signals'
SIGNAL_LOG = 'signal_history'


def signal_id(symbol: str, interval: str, timestamp: datetime) -> str:
    return f"{symbol}_{interval}_{to_millis(timestamp)}"


class SignalEngine:
    """多因子信号引擎"""

    def __init__(self, store: Store, signal_channel: Optional[BoundedChannel] = None,
                 config: Optional[SignalConfig] = None):
        self.store = store
        self.signal_channel = signal_channel
        self._lock = threading.RLock()

        if config is not None:
            self.update_signal_config(config)

    # ------------------------------------------------------------------
    # 纯计算
    # ------------------------------------------------------------------

    @staticmethod
    def calculate_factors(config: SignalConfig, current: IndicatorSnapshot,
                          history: MarketHistory) -> List[FactorScore]:
        previous = list(history.previous_snapshots[:LOOKBACK_PERIODS])
        previous_candles = list(history.previous_candles[:LOOKBACK_PERIODS])
        derivatives = history.derivatives

        raw = [
            FactorCalculator.trend(current, previous),
            FactorCalculator.momentum(current, previous),
            FactorCalculator.volume(current, history.candle, previous_candles),
            FactorCalculator.volatility(current, previous),
            FactorCalculator.derivatives(
                derivatives.funding_rate if derivatives else None,
                derivatives.open_interest if derivatives else None,
                derivatives.previous_open_interest if derivatives else None,
            ),
        ]
        return [factor.with_weight(config.weight_for(factor.name)) for factor in raw]

    @staticmethod
    def calculate_confidence(factor_scores: List[FactorScore]) -> float:
        """置信度 = 0.7 × 一致性 + 0.3 × 强度"""
        if not factor_scores:
            return 0.0
        total_weight = sum(f.weight for f in factor_scores)
        if total_weight == 0:
            return 0.0

        positive = sum(1 for f in factor_scores if f.score > CONSISTENCY_THRESHOLD)
        negative = sum(1 for f in factor_scores if f.score < -CONSISTENCY_THRESHOLD)
        if positive > negative:
            consistency = positive / len(factor_scores)
        elif negative > positive:
            consistency = negative / len(factor_scores)
        else:
            consistency = 0.5

        avg_abs = sum(abs(f.score) for f in factor_scores) / len(factor_scores)
        strength = max(0.0, min(1.0, avg_abs / 3.0))

        return max(0.0, min(1.0, consistency * 0.7 + strength * 0.3))

    @staticmethod
    def classify(total_score: float, config: SignalConfig) -> Optional[Tuple[SignalType, SignalStrength]]:
        """按带符号总分分档（边界包含）；不足弱信号阈值返回None"""
        if total_score >= config.strong_signal_threshold:
            return SignalType.LONG, SignalStrength.STRONG
        if total_score >= config.medium_signal_threshold:
            return SignalType.LONG, SignalStrength.MEDIUM
        if total_score >= config.weak_signal_threshold:
            return SignalType.LONG, SignalStrength.WEAK
        if total_score <= -config.strong_signal_threshold:
            return SignalType.SHORT, SignalStrength.STRONG
        if total_score <= -config.medium_signal_threshold:
            return SignalType.SHORT, SignalStrength.MEDIUM
        if total_score <= -config.weak_signal_threshold:
            return SignalType.SHORT, SignalStrength.WEAK
        return None

    @staticmethod
    def veto_reason(signal_type: SignalType, confidence: float, factor_scores: List[FactorScore],
                    config: SignalConfig) -> Optional[str]:
        """过滤条件，返回否决原因；通过返回None"""
        if confidence < config.min_confidence:
            return f"置信度不足: {confidence:.2f} < {config.min_confidence:.2f}"

        scores = {f.name: f.score for f in factor_scores}
        if config.require_trend_confirmation:
            trend = scores.get(FactorName.TREND, 0.0)
            if signal_type is SignalType.LONG and trend < 1.0:
                return f"趋势未确认做多: {trend:.2f}"
            if signal_type is SignalType.SHORT and trend > -1.0:
                return f"趋势未确认做空: {trend:.2f}"

        if config.require_volume_confirmation:
            volume = scores.get(FactorName.VOLUME, 0.0)
            if abs(volume) < 0.5:
                return f"成交量未确认: {volume:.2f}"
        return None

    @staticmethod
    def evaluate(config: SignalConfig, current: IndicatorSnapshot,
                 history: MarketHistory) -> SignalGenerationResult:
        """对一根收盘K线做信号评估，无副作用

        任何异常都返回带警告的空结果，不会产生半成品信号。
        """
        try:
            factor_scores = SignalEngine.calculate_factors(config, current, history)
            total_score = sum(f.weighted_score for f in factor_scores)
            confidence = SignalEngine.calculate_confidence(factor_scores)

            reasons = [f"{f.name.value}: {f.description}" for f in factor_scores if abs(f.score) > 0.5]
            warnings = []
            if confidence < config.min_confidence:
                warnings.append(f"信号置信度较低: {confidence:.2f}")

            signal = None
            classification = SignalEngine.classify(total_score, config)
            if classification is not None:
                signal_type, strength = classification
                veto = SignalEngine.veto_reason(signal_type, confidence, factor_scores, config)
                if veto is None:
                    signal = SignalEngine._build_signal(
                        config, current, history, signal_type, strength,
                        total_score, confidence, factor_scores,
                    )
                elif confidence >= config.min_confidence:
                    warnings.append(veto)

            return SignalGenerationResult(
                signal=signal,
                factor_scores=factor_scores,
                total_score=total_score,
                confidence=confidence,
                reasons=reasons,
                warnings=warnings,
            )
        except Exception as e:
            log.warning(f"[SIGNAL] 信号评估失败 {current.symbol}: {e}")
            return SignalGenerationResult.empty(f"信号生成失败: {e}")

    @staticmethod
    def _build_signal(config: SignalConfig, current: IndicatorSnapshot, history: MarketHistory,
                      signal_type: SignalType, strength: SignalStrength, total_score: float,
                      confidence: float, factor_scores: List[FactorScore]) -> TradingSignal:
        price = current.price
        direction = 1.0 if signal_type is SignalType.LONG else -1.0

        stop_loss = take_profit = risk_reward = None
        if current.atr is not None and current.atr > 0:
            stop_loss = price - direction * current.atr * config.stop_loss_atr_multiple
            risk_distance = abs(price - stop_loss)
            take_profit = price + direction * risk_distance * config.take_profit_ratio
            risk_reward = abs(take_profit - price) / risk_distance if risk_distance > 0 else 0.0

        scores = {f.name: f.score for f in factor_scores}
        derivatives = history.derivatives

        return TradingSignal(
            id=signal_id(current.symbol, current.interval, current.timestamp),
            symbol=current.symbol,
            interval=current.interval,
            timestamp=current.timestamp,
            price=price,
            signal_type=signal_type,
            strength=strength,
            confidence=confidence,
            total_score=total_score,
            trend_score=scores.get(FactorName.TREND, 0.0),
            momentum_score=scores.get(FactorName.MOMENTUM, 0.0),
            volume_score=scores.get(FactorName.VOLUME, 0.0),
            volatility_score=scores.get(FactorName.VOLATILITY, 0.0),
            derivatives_score=scores.get(FactorName.DERIVATIVES, 0.0),
            ema12=current.ema12,
            ema26=current.ema26,
            ema50=current.ema50,
            ema200=current.ema200,
            macd=current.macd,
            macd_signal=current.macd_signal,
            rsi=current.rsi,
            atr=current.atr,
            cvd=current.cvd,
            vwap=current.vwap,
            funding_rate=derivatives.funding_rate if derivatives else None,
            open_interest=derivatives.open_interest if derivatives else None,
            suggested_stop_loss=stop_loss,
            suggested_take_profit=take_profit,
            suggested_leverage=config.max_leverage * LEVERAGE_SCALE[strength],
            risk_reward_ratio=risk_reward,
            expiry_time=current.timestamp + timedelta(minutes=config.signal_expiry_minutes),
        )

    # ------------------------------------------------------------------
    # 服务操作
    # ------------------------------------------------------------------

    def generate_signal(self, current: IndicatorSnapshot, history: MarketHistory) -> SignalGenerationResult:
        """评估 + 保存 + 发布"""
        result = self.evaluate(self.get_signal_config(), current, history)
        signal = result.signal
        if signal is None:
            return result

        with self._lock:
            self.store.put(SIGNAL_NAMESPACE, signal.id, to_record(signal))
            self.store.append(SIGNAL_LOG, to_record(signal))

        if self.signal_channel is not None:
            self.signal_channel.publish(signal)
        log.info(f"[SIGNAL] 生成信号: {signal.signal_type.value}/{signal.strength.value} "
                 f"{signal.symbol} score={signal.total_score:.2f} conf={signal.confidence:.2f}")
        return result

    def get_signal_config(self) -> SignalConfig:
        with self._lock:
            record = self.store.get(CONFIG_NAMESPACE, CONFIG_KEY)
        return from_record(SignalConfig, record) if record else SignalConfig()

    def update_signal_config(self, config: SignalConfig) -> SignalConfig:
        """校验后替换配置，非法配置抛出 InvalidConfiguration"""
        config.validate()
        with self._lock:
            self.store.put(CONFIG_NAMESPACE, CONFIG_KEY, to_record(config))
        log.info("[SIGNAL] 信号配置已更新")
        return config

    def _load_signal(self, key: str) -> Optional[TradingSignal]:
        record = self.store.get(SIGNAL_NAMESPACE, key)
        return from_record(TradingSignal, record) if record else None

    def get_active_signals(self, symbol: Optional[str] = None, now: Optional[datetime] = None) -> List[TradingSignal]:
        """当前有效（未失效且未过期）的信号，按时间倒序"""
        now = now or arrow.utcnow().datetime
        with self._lock:
            signals = [self._load_signal(key) for key in self.store.keys(SIGNAL_NAMESPACE)]
        active = [
            s for s in signals
            if s is not None and s.is_active and not s.is_expired(now)
            and (symbol is None or s.symbol == symbol)
        ]
        return sorted(active, key=lambda s: s.timestamp, reverse=True)

    def get_signal_history(self, symbol: str, limit: int = 100) -> List[TradingSignal]:
        """信号历史（按时间倒序），附带当前的有效状态"""
        with self._lock:
            records = self.store.read_log(SIGNAL_LOG)
            history = []
            for record in reversed(records):
                if record.get('symbol') != symbol:
                    continue
                current = self._load_signal(record['id'])
                history.append(current or from_record(TradingSignal, record))
                if len(history) >= limit:
                    break
        return history

    def deactivate_signal(self, signal_id_: str, reason: str) -> bool:
        with self._lock:
            signal = self._load_signal(signal_id_)
            if signal is None or not signal.is_active:
                return False
            self.store.put(SIGNAL_NAMESPACE, signal_id_, to_record(signal.deactivated(reason)))
        log.info(f"[SIGNAL] 信号失效: {signal_id_} ({reason})")
        return True

    def cleanup_expired_signals(self, now: Optional[datetime] = None) -> int:
        """把已过期的有效信号标记为失效，返回处理数量"""
        now = now or arrow.utcnow().datetime
        count = 0
        with self._lock:
            for key in self.store.keys(SIGNAL_NAMESPACE):
                signal = self._load_signal(key)
                if signal is not None and signal.is_active and signal.is_expired(now):
                    self.store.put(SIGNAL_NAMESPACE, key, to_record(signal.deactivated("expired")))
                    count += 1
        if count:
            log.info(f"[SIGNAL] 清理过期信号 {count} 个")
        return count
