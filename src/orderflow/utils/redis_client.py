"""Redis客户端工具"""

from typing import List, Optional

import redis

from orderflow.config.config import RedisConfig
from orderflow.utils.log import setup_logging

log = setup_logging(module_prefix='STORE')


class RedisClient:
    """Redis客户端封装

    连接懒加载；读写失败记录日志后继续抛出，由调用方所在的组件边界处理。
    """

    def __init__(self, config: RedisConfig, client: Optional[redis.Redis] = None):
        """初始化Redis客户端（client 可注入，便于测试）"""
        self.config = config
        self._client: Optional[redis.Redis] = client
        log.info(f"初始化Redis客户端: {config.host}:{config.port}, DB={config.db}")

    @property
    def client(self) -> redis.Redis:
        """获取Redis客户端连接"""
        if self._client is None:
            try:
                log.info(f"正在连接Redis服务器: {self.config.host}:{self.config.port}")
                self._client = redis.Redis(
                    host=self.config.host,
                    port=self.config.port,
                    password=self.config.password,
                    db=self.config.db,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5
                )
                # 测试连接
                self._client.ping()
                log.info("✅ Redis连接建立成功")
            except redis.RedisError as e:
                log.error(f"❌ Redis连接失败: {e}")
                self._client = None
                raise
        return self._client

    def key(self, *parts: str) -> str:
        """拼接带前缀的键名"""
        return ":".join((self.config.key_prefix,) + parts)

    def ping(self) -> bool:
        """测试连接"""
        try:
            result = self.client.ping()
            log.debug("Redis ping测试成功")
            return bool(result)
        except redis.RedisError as e:
            log.error(f"Redis ping测试失败: {e}")
            return False

    def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        """设置键值"""
        try:
            result = self.client.set(key, value, ex=ex)
            log.debug(f"设置键值成功: {key}")
            return bool(result)
        except redis.RedisError as e:
            log.error(f"设置键值失败 {key}: {e}")
            raise

    def get(self, key: str) -> Optional[str]:
        """获取值"""
        try:
            value = self.client.get(key)
            log.debug(f"获取键值: {key}")
            return value
        except redis.RedisError as e:
            log.error(f"获取键值失败 {key}: {e}")
            raise

    def delete(self, key: str) -> bool:
        """删除键"""
        try:
            result = bool(self.client.delete(key))
            log.debug(f"删除键: {key}, 结果: {result}")
            return result
        except redis.RedisError as e:
            log.error(f"删除键失败 {key}: {e}")
            raise

    def exists(self, key: str) -> bool:
        """检查键是否存在"""
        try:
            return bool(self.client.exists(key))
        except redis.RedisError as e:
            log.error(f"检查键存在失败 {key}: {e}")
            raise

    def rpush(self, key: str, value: str) -> int:
        """追加到列表尾部（只追加日志）"""
        try:
            return int(self.client.rpush(key, value))
        except redis.RedisError as e:
            log.error(f"追加列表失败 {key}: {e}")
            raise

    def lrange(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        """读取列表区间"""
        try:
            return list(self.client.lrange(key, start, end))
        except redis.RedisError as e:
            log.error(f"读取列表失败 {key}: {e}")
            raise

    def sadd(self, key: str, member: str) -> int:
        """加入集合（用于维护命名空间索引）"""
        try:
            return int(self.client.sadd(key, member))
        except redis.RedisError as e:
            log.error(f"写入集合失败 {key}: {e}")
            raise

    def srem(self, key: str, member: str) -> int:
        try:
            return int(self.client.srem(key, member))
        except redis.RedisError as e:
            log.error(f"移除集合成员失败 {key}: {e}")
            raise

    def smembers(self, key: str) -> List[str]:
        try:
            return sorted(self.client.smembers(key))
        except redis.RedisError as e:
            log.error(f"读取集合失败 {key}: {e}")
            raise

    def close(self):
        """关闭连接"""
        if self._client:
            log.info("关闭Redis连接")
            self._client.close()
            self._client = None
