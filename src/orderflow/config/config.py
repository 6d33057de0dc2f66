"""应用配置管理"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

import yaml
from dotenv import load_dotenv

from orderflow.core.errors import InvalidConfiguration
from orderflow.models.risk import RiskConfig
from orderflow.models.signal import SignalConfig

T = TypeVar('T')


@dataclass
class RedisConfig:
    """Redis配置"""
    host: str = 'localhost'
    port: int = 6379
    password: Optional[str] = None
    db: int = 0
    key_prefix: str = 'orderflow'


@dataclass
class ChannelsConfig:
    """事件通道容量"""
    signal_capacity: int = 1000
    risk_event_capacity: int = 1000
    intent_capacity: int = 100
    intent_put_timeout: float = 5.0


@dataclass
class LoopsConfig:
    """后台循环间隔（秒）"""
    signal_sweep_seconds: float = 60.0
    cooldown_check_seconds: float = 30.0
    stats_refresh_seconds: float = 300.0


@dataclass
class AppConfig:
    """订单流系统配置"""
    symbols: List[str]
    intervals: List[str]

    redis: RedisConfig
    store_backend: str  # memory | redis

    log_level: str
    log_file: Optional[str]

    signal: SignalConfig
    risk: RiskConfig
    channels: ChannelsConfig = field(default_factory=ChannelsConfig)
    loops: LoopsConfig = field(default_factory=LoopsConfig)

    initial_balance: float = 10000.0
    warmup_bars: int = 200

    @classmethod
    def create(cls, config_path: str = None) -> 'AppConfig':
        """创建配置实例：加载 .env，读取 YAML，应用环境变量覆盖并校验"""
        load_dotenv()

        if config_path is None:
            # 默认配置文件路径 - 当前工作目录下的 config.yaml
            config_path = Path.cwd() / "config.yaml"

        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, config_data: Dict[str, Any]) -> 'AppConfig':
        redis_data = dict(config_data.get('redis') or {})
        redis = _build(RedisConfig, redis_data, 'redis')
        redis.host = os.getenv("ORDERFLOW_REDIS_HOST", redis.host)
        redis.port = int(os.getenv("ORDERFLOW_REDIS_PORT", redis.port))
        redis.password = os.getenv("ORDERFLOW_REDIS_PASSWORD", redis.password) or None
        redis.db = int(os.getenv("ORDERFLOW_REDIS_DB", redis.db))

        logging_data = config_data.get('logging') or {}
        log_level = os.getenv("ORDERFLOW_LOG_LEVEL", logging_data.get('level', 'INFO')).upper()

        store_backend = os.getenv("ORDERFLOW_STORE", config_data.get('store', 'memory')).lower()
        if store_backend not in ('memory', 'redis'):
            raise InvalidConfiguration(f"不支持的存储后端: {store_backend}")

        signal = _build(SignalConfig, config_data.get('signal') or {}, 'signal').validate()
        risk = _build(RiskConfig, config_data.get('risk') or {}, 'risk').validate()

        account = config_data.get('account') or {}
        initial_balance = float(account.get('initial_balance', 10000.0))
        if initial_balance <= 0:
            raise InvalidConfiguration(f"初始资金必须为正: {initial_balance}")

        return cls(
            symbols=[s.upper() for s in config_data.get('symbols', [])],
            intervals=list(config_data.get('intervals', ['1h'])),
            redis=redis,
            store_backend=store_backend,
            log_level=log_level,
            log_file=logging_data.get('file'),
            signal=signal,
            risk=risk,
            channels=_build(ChannelsConfig, config_data.get('channels') or {}, 'channels'),
            loops=_build(LoopsConfig, config_data.get('loops') or {}, 'loops'),
            initial_balance=initial_balance,
            warmup_bars=int(config_data.get('warmup_bars', 200)),
        )


def _build(cls: Type[T], data: Dict[str, Any], section: str) -> T:
    """按dataclass字段构造配置对象，未知键直接拒绝"""
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise InvalidConfiguration(f"配置段 '{section}' 含有未知字段: {sorted(unknown)}")
    try:
        return cls(**data)
    except TypeError as e:
        raise InvalidConfiguration(f"配置段 '{section}' 非法: {e}") from e
