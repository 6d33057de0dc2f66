import json
from datetime import timedelta

import pandas as pd
import pytest

from orderflow.backtesting import runner
from orderflow.data.candle_loader import load_derivatives, load_historical_data
from orderflow.utils.data_transforms import candles_to_dataframe, to_millis
from orderflow.utils.events import BackpressurePolicy
from conftest import BASE_TIME


@pytest.fixture
def candle_csv(tmp_path, make_candles, wave_closes):
    candles = make_candles(wave_closes(120))
    df = candles_to_dataframe(candles).reset_index()
    df['open_time'] = [to_millis(t) for t in df['open_time']]
    df = df[['open_time', 'open', 'high', 'low', 'close', 'volume']]
    # 乱序 + 重复行
    df = pd.concat([df.iloc[::-1], df.iloc[:1]])
    path = tmp_path / 'candles.csv'
    df.to_csv(path, index=False)
    return path, candles


def test_load_historical_data(candle_csv):
    path, candles = candle_csv
    loaded = load_historical_data(path, 'BTCUSDT', '1h')

    assert len(loaded) == len(candles)
    assert loaded[0].open_time == BASE_TIME
    # 没有 close_time 列时按周期推算
    assert loaded[0].close_time == candles[0].close_time
    assert [c.close for c in loaded] == pytest.approx([c.close for c in candles])


def test_load_historical_data_window(candle_csv):
    path, _ = candle_csv
    loaded = load_historical_data(path, 'BTCUSDT', '1h',
                                  start_date=BASE_TIME + timedelta(hours=10),
                                  end_date=BASE_TIME + timedelta(hours=19))
    assert len(loaded) == 10
    assert loaded[0].open_time == BASE_TIME + timedelta(hours=10)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_historical_data(tmp_path / 'missing.csv', 'BTCUSDT', '1h')


def test_load_derivatives(tmp_path):
    path = tmp_path / 'derivatives.csv'
    path.write_text(
        "timestamp,funding_rate,open_interest\n"
        "2024-01-01T08:00:00Z,0.0001,1100\n"
        "2024-01-01T00:00:00Z,0.0002,1000\n"
        "2024-01-01T16:00:00Z,,\n",
        encoding='utf-8',
    )
    metrics = load_derivatives(path, 'BTCUSDT')

    ordered = [metrics[t] for t in sorted(metrics)]
    assert ordered[0].timestamp == BASE_TIME
    assert ordered[0].previous_open_interest is None
    assert ordered[1].open_interest == 1100.0
    assert ordered[1].previous_open_interest == 1000.0
    assert ordered[2].funding_rate is None
    assert ordered[2].previous_open_interest == 1100.0


def test_backtest_cli(tmp_path, candle_csv):
    path, _ = candle_csv
    config_path = tmp_path / 'backtest.yaml'
    config_path.write_text(
        "logging:\n"
        "  file: null\n"
        "backtest:\n"
        "  id: cli\n"
        "  name: CLI run\n"
        "  warmup_bars: 50\n"
        "optimization:\n"
        "  enabled: true\n"
        "  max_iterations: 3\n"
        "  parameters:\n"
        "    - name: leverage\n"
        "      type: double\n"
        "      min: 1.0\n"
        "      max: 2.0\n"
        "      steps: 3\n",
        encoding='utf-8',
    )
    output_dir = tmp_path / 'out'

    code = runner.main(['--config', str(config_path), f'data.path={path}', f'output_dir={output_dir}'])

    assert code == 0
    reports = sorted(output_dir.glob('BTCUSDT_1h_cli_*.json'))
    assert len(reports) == 2
    optimization = json.loads(next(p for p in reports if p.name.endswith('_optimization.json')).read_text())
    assert [r['rank'] for r in optimization] == [1, 2, 3]
    report = json.loads(next(p for p in reports if not p.name.endswith('_optimization.json')).read_text())
    assert report['result']['id'] == 'backtest_cli'


def test_parameter_ranges_from_config():
    cfg = runner.load_config(None, ['data.path=x.csv'])
    cfg.optimization.parameters = [{'name': 'signal.min_confidence', 'type': 'double', 'min': 0.4, 'max': 0.8}]
    ranges = runner.build_parameter_ranges(cfg)
    assert ranges['signal.min_confidence'].steps == 10
    assert ranges['signal.min_confidence'].max == 0.8


def test_progress_channel_capacity_from_config():
    assert runner.build_progress_channel(runner.load_config(None, [])).capacity == 256

    channel = runner.build_progress_channel(runner.load_config(None, ['progress.capacity=8']))
    assert channel.capacity == 8
    assert channel.policy is BackpressurePolicy.DROP_OLDEST
