"""
有界事件通道 - 用于解耦组件间的通信
信号流 / 风控事件流 / 回测进度流都通过显式容量和背压策略的通道发布，线程安全
"""

import threading
import time
from collections import deque
from enum import Enum
from typing import Callable, Deque, Generic, List, Optional, TypeVar

from orderflow.utils.log import setup_logging

log = setup_logging(module_prefix='EVENT')

T = TypeVar('T')


class BackpressurePolicy(Enum):
    """通道满时的处理策略"""
    DROP_OLDEST = "drop_oldest"  # 丢弃最旧的一条，发布永不阻塞
    BLOCK = "block"              # 阻塞发布者直到有空位（可设超时）


class ChannelClosed(Exception):
    """向已关闭的通道发布"""


class BoundedChannel(Generic[T]):
    """有界、线程安全的事件通道

    消费方式两种：
    - 拉取：get(timeout) / drain()
    - 推送：subscribe(callback)，发布时同步回调（回调异常只记录日志）
    """

    def __init__(self, name: str, capacity: int = 1000,
                 policy: BackpressurePolicy = BackpressurePolicy.DROP_OLDEST,
                 put_timeout: Optional[float] = None):
        if capacity <= 0:
            raise ValueError(f"channel capacity must be positive: {capacity}")
        self.name = name
        self.capacity = capacity
        self.policy = policy
        self.put_timeout = put_timeout

        self._items: Deque[T] = deque()
        self._cond = threading.Condition()
        self._subscribers: List[Callable[[T], None]] = []
        self._closed = False
        self.dropped_count = 0
        self.published_count = 0

    def publish(self, item: T) -> bool:
        """发布一条事件

        Returns:
            True 表示已入队；False 表示 BLOCK 策略下等待超时被丢弃
        """
        with self._cond:
            if self._closed:
                raise ChannelClosed(self.name)

            if len(self._items) >= self.capacity:
                if self.policy is BackpressurePolicy.DROP_OLDEST:
                    self._items.popleft()
                    self.dropped_count += 1
                else:
                    deadline = None if self.put_timeout is None else time.monotonic() + self.put_timeout
                    while len(self._items) >= self.capacity and not self._closed:
                        remaining = None if deadline is None else deadline - time.monotonic()
                        if remaining is not None and remaining <= 0:
                            self.dropped_count += 1
                            log.warning(f"[EVENT] 通道 {self.name} 已满，发布超时丢弃")
                            return False
                        self._cond.wait(remaining)
                    if self._closed:
                        raise ChannelClosed(self.name)

            self._items.append(item)
            self.published_count += 1
            subscribers = list(self._subscribers)
            self._cond.notify_all()

        for callback in subscribers:
            try:
                callback(item)
            except Exception as e:
                log.error(f"[EVENT] 通道 {self.name} 订阅者处理异常: {e}")

        return True

    def get(self, timeout: Optional[float] = None) -> Optional[T]:
        """取出最旧的一条事件；超时返回None"""
        with self._cond:
            if not self._items:
                self._cond.wait_for(lambda: self._items or self._closed, timeout)
            if not self._items:
                return None
            item = self._items.popleft()
            self._cond.notify_all()
            return item

    def drain(self, max_items: Optional[int] = None) -> List[T]:
        """非阻塞地取出当前所有（或最多max_items条）事件"""
        with self._cond:
            count = len(self._items) if max_items is None else min(max_items, len(self._items))
            items = [self._items.popleft() for _ in range(count)]
            if items:
                self._cond.notify_all()
            return items

    def subscribe(self, callback: Callable[[T], None]):
        """注册同步回调"""
        with self._cond:
            self._subscribers.append(callback)
        log.debug(f"[EVENT] 订阅通道: {self.name}")

    def unsubscribe(self, callback: Callable[[T], None]):
        with self._cond:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

    def close(self):
        """关闭通道，唤醒所有等待者"""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)


# 事件类型常量
class EventTypes:
    """标准通道名称"""

    SIGNAL_GENERATED = "signal_generated"
    RISK_EVENT = "risk_event"
    BACKTEST_PROGRESS = "backtest_progress"
    TRADE_INTENT = "trade_intent"
