"""
持久化抽象

核心只需要两类能力：
- 键值行（get / put / delete），用于配置和账户状态
- 只追加日志（append / read_log），用于信号、风控事件、回测交易与结果
"""

import json
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, List, Optional

from orderflow.utils.log import setup_logging
from orderflow.utils.redis_client import RedisClient

log = setup_logging(module_prefix='STORE')

Record = Dict[str, Any]


class Store(ABC):
    """键值/日志存储接口，实现必须线程安全"""

    @abstractmethod
    def get(self, namespace: str, key: str) -> Optional[Record]:
        ...

    @abstractmethod
    def put(self, namespace: str, key: str, record: Record):
        ...

    @abstractmethod
    def delete(self, namespace: str, key: str) -> bool:
        ...

    @abstractmethod
    def keys(self, namespace: str) -> List[str]:
        ...

    @abstractmethod
    def append(self, log_name: str, record: Record):
        ...

    @abstractmethod
    def read_log(self, log_name: str, limit: Optional[int] = None) -> List[Record]:
        """按追加顺序返回日志；limit 指定时只返回最近的 limit 条"""
        ...


def _encode(record: Record) -> str:
    return json.dumps(record, ensure_ascii=False, sort_keys=True)


class MemoryStore(Store):
    """进程内存储（测试 / 回测）；记录以JSON文本保存，读写互不共享引用"""

    def __init__(self):
        self._lock = threading.RLock()
        self._rows: Dict[str, Dict[str, str]] = defaultdict(dict)
        self._logs: Dict[str, List[str]] = defaultdict(list)

    def get(self, namespace: str, key: str) -> Optional[Record]:
        with self._lock:
            raw = self._rows[namespace].get(key)
        return json.loads(raw) if raw is not None else None

    def put(self, namespace: str, key: str, record: Record):
        raw = _encode(record)
        with self._lock:
            self._rows[namespace][key] = raw

    def delete(self, namespace: str, key: str) -> bool:
        with self._lock:
            return self._rows[namespace].pop(key, None) is not None

    def keys(self, namespace: str) -> List[str]:
        with self._lock:
            return sorted(self._rows[namespace])

    def append(self, log_name: str, record: Record):
        raw = _encode(record)
        with self._lock:
            self._logs[log_name].append(raw)

    def read_log(self, log_name: str, limit: Optional[int] = None) -> List[Record]:
        with self._lock:
            entries = list(self._logs[log_name])
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return [json.loads(raw) for raw in entries]


class RedisStore(Store):
    """Redis存储：行存为JSON字符串，日志存为Redis列表，命名空间索引存为集合"""

    def __init__(self, client: RedisClient):
        self.client = client

    def _row_key(self, namespace: str, key: str) -> str:
        return self.client.key('row', namespace, key)

    def _index_key(self, namespace: str) -> str:
        return self.client.key('index', namespace)

    def _log_key(self, log_name: str) -> str:
        return self.client.key('log', log_name)

    def get(self, namespace: str, key: str) -> Optional[Record]:
        raw = self.client.get(self._row_key(namespace, key))
        return json.loads(raw) if raw is not None else None

    def put(self, namespace: str, key: str, record: Record):
        self.client.set(self._row_key(namespace, key), _encode(record))
        self.client.sadd(self._index_key(namespace), key)

    def delete(self, namespace: str, key: str) -> bool:
        self.client.srem(self._index_key(namespace), key)
        return self.client.delete(self._row_key(namespace, key))

    def keys(self, namespace: str) -> List[str]:
        return self.client.smembers(self._index_key(namespace))

    def append(self, log_name: str, record: Record):
        self.client.rpush(self._log_key(log_name), _encode(record))

    def read_log(self, log_name: str, limit: Optional[int] = None) -> List[Record]:
        if limit is not None and limit <= 0:
            return []
        start = -limit if limit is not None else 0
        return [json.loads(raw) for raw in self.client.lrange(self._log_key(log_name), start, -1)]


def create_store(backend: str, redis_client: Optional[RedisClient] = None) -> Store:
    """按配置创建存储后端"""
    if backend == 'redis':
        if redis_client is None:
            raise ValueError("redis backend requires a RedisClient")
        log.info("[STORE] 使用Redis存储")
        return RedisStore(redis_client)
    log.info("[STORE] 使用内存存储")
    return MemoryStore()
