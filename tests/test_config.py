import pytest

from orderflow.config.config import AppConfig
from orderflow.core.errors import InvalidConfiguration
from orderflow.models.risk import RiskConfig
from orderflow.models.signal import SignalConfig


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ('ORDERFLOW_REDIS_HOST', 'ORDERFLOW_REDIS_PORT', 'ORDERFLOW_REDIS_PASSWORD',
                 'ORDERFLOW_REDIS_DB', 'ORDERFLOW_LOG_LEVEL', 'ORDERFLOW_STORE'):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    config = AppConfig.from_dict({})

    assert config.symbols == []
    assert config.intervals == ['1h']
    assert config.store_backend == 'memory'
    assert config.log_level == 'INFO'
    assert config.signal == SignalConfig()
    assert config.risk == RiskConfig()
    assert config.redis.host == 'localhost'
    assert config.initial_balance == 10000.0
    assert config.warmup_bars == 200


def test_sections_are_applied():
    config = AppConfig.from_dict({
        'symbols': ['btcusdt'],
        'intervals': ['15m', '1h'],
        'signal': {'min_confidence': 0.5},
        'risk': {'max_positions': 5},
        'channels': {'intent_capacity': 10},
        'loops': {'signal_sweep_seconds': 1.0},
        'account': {'initial_balance': 5000},
    })

    assert config.symbols == ['BTCUSDT']
    assert config.signal.min_confidence == 0.5
    assert config.risk.max_positions == 5
    assert config.channels.intent_capacity == 10
    assert config.loops.signal_sweep_seconds == 1.0
    assert config.initial_balance == 5000.0


@pytest.mark.parametrize("data", [
    {'signal': {'unknown_weight': 0.1}},
    {'signal': {'trend_weight': 0.5}},
    {'risk': {'max_risk_per_trade': 0.5}},
    {'store': 'sqlite'},
    {'account': {'initial_balance': 0}},
])
def test_invalid_config(data):
    with pytest.raises(InvalidConfiguration):
        AppConfig.from_dict(data)


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv('ORDERFLOW_REDIS_HOST', 'redis.internal')
    monkeypatch.setenv('ORDERFLOW_REDIS_PORT', '6380')
    monkeypatch.setenv('ORDERFLOW_LOG_LEVEL', 'debug')
    monkeypatch.setenv('ORDERFLOW_STORE', 'REDIS')

    config = AppConfig.from_dict({'redis': {'host': 'localhost'}})

    assert config.redis.host == 'redis.internal'
    assert config.redis.port == 6380
    assert config.log_level == 'DEBUG'
    assert config.store_backend == 'redis'


def test_create_from_yaml(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    path = tmp_path / 'config.yaml'
    path.write_text(
        "symbols: [ETHUSDT]\n"
        "logging:\n"
        "  level: WARNING\n"
        "  file: orderflow.log\n"
        "risk:\n"
        "  max_leverage: 2.0\n",
        encoding='utf-8',
    )

    config = AppConfig.create(str(path))
    assert config.symbols == ['ETHUSDT']
    assert config.log_level == 'WARNING'
    assert config.log_file == 'orderflow.log'
    assert config.risk.max_leverage == 2.0

    # 默认读取当前目录下的 config.yaml
    assert AppConfig.create().symbols == ['ETHUSDT']
