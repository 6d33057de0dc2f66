import json
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import redis

from orderflow.config.config import RedisConfig
from orderflow.models.signal import FactorName, FactorScore, SignalStrength, SignalType, TradingSignal
from orderflow.storage.codec import from_record, to_record
from orderflow.storage.store import MemoryStore, RedisStore, create_store
from orderflow.utils.redis_client import RedisClient
from conftest import BASE_TIME


def test_memory_store_rows(store):
    store.put('ns', 'a', {'value': 1})
    store.put('ns', 'b', {'value': 2})
    store.put('other', 'a', {'value': 3})

    assert store.keys('ns') == ['a', 'b']
    assert store.get('ns', 'a') == {'value': 1}
    assert store.get('ns', 'missing') is None
    assert store.delete('ns', 'a')
    assert not store.delete('ns', 'a')
    assert store.keys('ns') == ['b']


def test_memory_store_returns_copies(store):
    record = {'items': [1, 2]}
    store.put('ns', 'k', record)
    record['items'].append(3)

    loaded = store.get('ns', 'k')
    loaded['items'].append(4)
    assert store.get('ns', 'k') == {'items': [1, 2]}


def test_memory_store_logs(store):
    for i in range(5):
        store.append('log', {'i': i})
    assert [r['i'] for r in store.read_log('log')] == [0, 1, 2, 3, 4]
    assert [r['i'] for r in store.read_log('log', limit=2)] == [3, 4]
    assert store.read_log('log', limit=0) == []
    assert store.read_log('empty') == []


def test_codec_round_trip():
    signal = TradingSignal(
        id='BTCUSDT_1h_1', symbol='BTCUSDT', interval='1h', timestamp=BASE_TIME, price=100.0,
        signal_type=SignalType.SHORT, strength=SignalStrength.STRONG, confidence=0.7, total_score=-7.2,
        suggested_stop_loss=103.0, expiry_time=BASE_TIME + timedelta(hours=4),
    )
    record = to_record(signal)
    assert record['signal_type'] == 'SHORT'
    assert isinstance(record['timestamp'], str)

    restored = from_record(TradingSignal, json.loads(json.dumps(record)))
    assert restored == signal
    assert restored.timestamp.utcoffset() == timedelta(0)


def test_codec_nested_tuple_and_dict():
    factor = FactorScore(FactorName.TREND, 3.0, 0.3, 0.9, ("EMA完美多头排列",), {'EMA12': 101.0})
    assert from_record(FactorScore, to_record(factor)) == factor


@pytest.fixture
def redis_mock():
    return MagicMock(spec=redis.Redis)


@pytest.fixture
def redis_store(redis_mock):
    return RedisStore(RedisClient(RedisConfig(), client=redis_mock))


def test_redis_store_put_and_get(redis_store, redis_mock):
    redis_store.put('signals', 'k1', {'value': 1})

    redis_mock.set.assert_called_once_with('orderflow:row:signals:k1', '{"value": 1}', ex=None)
    redis_mock.sadd.assert_called_once_with('orderflow:index:signals', 'k1')

    redis_mock.get.return_value = '{"value": 1}'
    assert redis_store.get('signals', 'k1') == {'value': 1}
    redis_mock.get.return_value = None
    assert redis_store.get('signals', 'k2') is None


def test_redis_store_keys_and_logs(redis_store, redis_mock):
    redis_mock.smembers.return_value = {'b', 'a'}
    assert redis_store.keys('signals') == ['a', 'b']

    redis_store.append('signal_history', {'i': 1})
    redis_mock.rpush.assert_called_once_with('orderflow:log:signal_history', '{"i": 1}')

    redis_mock.lrange.return_value = ['{"i": 1}', '{"i": 2}']
    assert redis_store.read_log('signal_history', limit=2) == [{'i': 1}, {'i': 2}]
    redis_mock.lrange.assert_called_with('orderflow:log:signal_history', -2, -1)


def test_redis_errors_propagate(redis_store, redis_mock):
    redis_mock.get.side_effect = redis.ConnectionError("down")
    with pytest.raises(redis.ConnectionError):
        redis_store.get('signals', 'k1')


def test_create_store():
    assert isinstance(create_store('memory'), MemoryStore)
    with pytest.raises(ValueError):
        create_store('redis')
