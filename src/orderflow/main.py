"""
订单流信号系统 - 实时引擎启动入口

交易所行情接入不在本项目范围内：这里用历史K线CSV回放驱动引擎，
接入真实行情时只需提供一个产出 Candle / DerivativesMetrics 的异步迭代器交给 run_stream。
"""

import argparse
import asyncio
import threading
from typing import AsyncIterator, List, Optional

from logbook import FileHandler

from orderflow.config.config import AppConfig
from orderflow.data.candle_loader import load_derivatives, load_historical_data
from orderflow.engine.trading_engine import MarketEvent, TradingEngine
from orderflow.models.market_data import Candle
from orderflow.models.risk import AccountStatus, TradeIntent
from orderflow.risk.risk_manager import ACCOUNT_KEY, ACCOUNT_NAMESPACE, RiskManager
from orderflow.signal.signal_engine import SignalEngine
from orderflow.storage.store import create_store
from orderflow.utils.events import BackpressurePolicy, BoundedChannel, EventTypes
from orderflow.utils.log import set_level, setup_logging
from orderflow.utils.redis_client import RedisClient

log = setup_logging(module_prefix='ENGINE')


class Application:
    """组装存储、通道、信号引擎、风控和交易引擎"""

    def __init__(self, config: AppConfig):
        self.config = config
        set_level(config.log_level)
        if config.log_file:
            FileHandler(config.log_file, level=config.log_level, bubble=True).push_application()

        self.redis_client = RedisClient(config.redis) if config.store_backend == 'redis' else None
        self.store = create_store(config.store_backend, self.redis_client)

        channels = config.channels
        self.signal_channel = BoundedChannel(EventTypes.SIGNAL_GENERATED, channels.signal_capacity,
                                             BackpressurePolicy.DROP_OLDEST)
        self.risk_channel = BoundedChannel(EventTypes.RISK_EVENT, channels.risk_event_capacity,
                                           BackpressurePolicy.DROP_OLDEST)
        self.intent_channel = BoundedChannel(EventTypes.TRADE_INTENT, channels.intent_capacity,
                                             BackpressurePolicy.BLOCK, put_timeout=channels.intent_put_timeout)

        self.signal_engine = SignalEngine(self.store, self.signal_channel, config.signal)
        self.risk_manager = RiskManager(
            self.store, self.risk_channel, config.risk,
            initial_status=None if self._has_account() else AccountStatus.with_balance(config.initial_balance),
        )
        self.engine = TradingEngine(
            self.signal_engine, self.risk_manager, self.intent_channel,
            warmup_bars=config.warmup_bars, loops=config.loops,
        )
        self.risk_manager.position_closer = self.engine.close_at_market

        self.intents: List[TradeIntent] = []
        self._intent_thread: Optional[threading.Thread] = None

    def _has_account(self) -> bool:
        return self.store.get(ACCOUNT_NAMESPACE, ACCOUNT_KEY) is not None

    def start(self):
        log.info("启动订单流信号系统...")
        log.info(f"交易品种: {self.config.symbols} 周期: {self.config.intervals} 存储: {self.config.store_backend}")
        self.engine.start()
        self._intent_thread = threading.Thread(target=self._consume_intents, name="intent-consumer", daemon=True)
        self._intent_thread.start()

    def _consume_intents(self):
        """执行层占位：只记录开仓意图"""
        while True:
            intent = self.intent_channel.get(timeout=0.5)
            if intent is None:
                if self.intent_channel.closed:
                    break
                continue
            self.intents.append(intent)
            log.info(f"[INTENT] 待执行: {intent.signal.id} {intent.side.value} {intent.quantity:.6f}")

    def stop(self):
        self.engine.stop()
        if self._intent_thread is not None:
            self._intent_thread.join(timeout=5)
        self.signal_channel.close()
        self.risk_channel.close()
        if self.redis_client is not None:
            self.redis_client.close()
        log.info("系统已停止")


async def replay(events: List[MarketEvent]) -> AsyncIterator[MarketEvent]:
    for event in events:
        yield event
        await asyncio.sleep(0)


def build_replay_events(path: str, symbol: str, interval: str,
                        derivatives_path: Optional[str] = None) -> List[MarketEvent]:
    """K线和衍生品数据按时间合并成一条事件流（同一时刻衍生品在前）"""
    candles = load_historical_data(path, symbol, interval)
    events: List[MarketEvent] = list(candles)
    if derivatives_path:
        events.extend(load_derivatives(derivatives_path, symbol).values())

    def sort_key(event):
        if isinstance(event, Candle):
            return event.close_time, 1
        return event.timestamp, 0

    return sorted(events, key=sort_key)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Order-flow signal engine")
    parser.add_argument('--config', '-c', default=None, help="config.yaml path")
    parser.add_argument('--replay', required=True, help="historical candle CSV to replay")
    parser.add_argument('--symbol', default=None)
    parser.add_argument('--interval', default=None)
    parser.add_argument('--derivatives', default=None, help="funding rate / open interest CSV")
    args = parser.parse_args(argv)

    config = AppConfig.create(args.config)
    app = Application(config)

    symbol = args.symbol or (config.symbols[0] if config.symbols else 'BTCUSDT')
    interval = args.interval or (config.intervals[0] if config.intervals else '1h')
    events = build_replay_events(args.replay, symbol, interval, args.derivatives)

    app.start()
    try:
        processed = asyncio.run(app.engine.run_stream(replay(events)))
        log.info(f"回放完成，处理事件 {processed} 条，生成开仓意图 {len(app.intents)} 条")
    except KeyboardInterrupt:
        log.info("收到停止信号...")
    finally:
        app.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
