"""
回测命令行入口

    orderflow-backtest --config backtest.yaml backtest.leverage=2 data.symbol=ETHUSDT

YAML 由 OmegaConf 加载，命令行的 key=value 覆盖同名配置项。
"""

import argparse
import json
import os
from datetime import datetime
from typing import List, Optional

from loguru import logger
from omegaconf import DictConfig, OmegaConf

from orderflow.backtesting.engine import BacktestEngine
from orderflow.backtesting.optimizer import ParameterOptimizer
from orderflow.data.candle_loader import load_derivatives, load_historical_data
from orderflow.models.backtest import BacktestConfig, BacktestResult, ParameterRange, ParameterType
from orderflow.models.signal import SignalConfig
from orderflow.storage.codec import to_record
from orderflow.storage.store import MemoryStore
from orderflow.utils.data_transforms import to_datetime
from orderflow.utils.events import BackpressurePolicy, BoundedChannel, EventTypes
from orderflow.utils.logger_setup import setup_logging

DEFAULTS = {
    'logging': {'level': 'INFO', 'file': 'orderflow_backtest.log'},
    'data': {
        'path': '???',
        'derivatives_path': None,
        'symbol': 'BTCUSDT',
        'interval': '1h',
        'start_date': None,
        'end_date': None,
    },
    'backtest': {'id': 'default', 'name': 'Default backtest'},
    'signal': {},
    'progress': {'capacity': 256},
    'optimization': {
        'enabled': False,
        'target_metric': 'sharpe',
        'max_iterations': 100,
        'seed': 42,
        'parameters': [],
    },
    'output_dir': 'backtest-result',
}


def load_config(config_path: Optional[str], overrides: List[str]) -> DictConfig:
    cfg = OmegaConf.create(DEFAULTS)
    if config_path:
        cfg = OmegaConf.merge(cfg, OmegaConf.load(config_path))
    if overrides:
        cfg = OmegaConf.merge(cfg, OmegaConf.from_dotlist(overrides))
    return cfg


def build_backtest_config(cfg: DictConfig) -> BacktestConfig:
    """把 OmegaConf 配置转换为不可变的 BacktestConfig（并校验）"""
    backtest = OmegaConf.to_container(cfg.backtest, resolve=True)
    signal = OmegaConf.to_container(cfg.signal, resolve=True)
    return BacktestConfig(
        symbol=cfg.data.symbol,
        interval=cfg.data.interval,
        start_time=to_datetime(cfg.data.start_date) if cfg.data.start_date else None,
        end_time=to_datetime(cfg.data.end_date) if cfg.data.end_date else None,
        signal_config=SignalConfig(**signal),
        **backtest,
    ).validate()


def build_parameter_ranges(cfg: DictConfig) -> dict:
    """optimization.parameters 为列表，每项含 name / type / min / max / steps"""
    ranges = {}
    parameters = OmegaConf.to_container(cfg.optimization.parameters, resolve=True) or []
    for item in parameters:
        ranges[item['name']] = ParameterRange(
            type=ParameterType(str(item.get('type', 'DOUBLE')).upper()),
            min=float(item.get('min', 0.0)),
            max=float(item.get('max', 1.0)),
            steps=int(item.get('steps', 10)),
        )
    return ranges


def _log_progress(progress):
    if progress.error:
        logger.error(f"[{progress.backtest_id}] aborted: {progress.error}")
    elif progress.is_completed:
        logger.info(f"[{progress.backtest_id}] completed {progress.processed_bars}/{progress.total_bars} bars")
    else:
        logger.info(
            f"[{progress.backtest_id}] {progress.percent:.1f}% "
            f"balance={progress.current_balance:.2f} trades={progress.trades_executed}"
        )


def build_progress_channel(cfg: DictConfig) -> BoundedChannel:
    """回测进度通道，满时丢弃最旧的进度"""
    channel = BoundedChannel(EventTypes.BACKTEST_PROGRESS, capacity=int(cfg.progress.capacity),
                             policy=BackpressurePolicy.DROP_OLDEST)
    channel.subscribe(_log_progress)
    return channel


def _write_json(path: str, payload) -> None:
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)


def run_backtest(cfg: DictConfig) -> Optional[BacktestResult]:
    """Runs the backtest (and optional optimization) with the given configuration."""
    config = build_backtest_config(cfg)

    candles = load_historical_data(cfg.data.path, config.symbol, config.interval,
                                   config.start_time, config.end_time)
    derivatives = load_derivatives(cfg.data.derivatives_path, config.symbol) if cfg.data.derivatives_path else None
    logger.info(f"Loaded {len(candles)} candles for {config.symbol} {config.interval}")

    store = MemoryStore()
    engine = BacktestEngine(store, progress_channel=build_progress_channel(cfg))

    result = engine.run_backtest(config, candles, derivatives)
    if result is None:
        return None

    output_dir = cfg.output_dir
    os.makedirs(output_dir, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    filename = f"{output_dir}/{config.symbol}_{config.interval}_{config.id}_{timestamp}.json"
    report = engine.generate_backtest_report(result.id)
    _write_json(filename, to_record(report))
    logger.info(f"Backtest report saved to: {filename}")

    if cfg.optimization.enabled:
        optimizer = ParameterOptimizer(engine, store)
        ranked = optimizer.optimize_parameters(
            config, candles, build_parameter_ranges(cfg),
            target_metric=cfg.optimization.target_metric,
            max_iterations=cfg.optimization.max_iterations,
            seed=cfg.optimization.seed,
        )
        opt_filename = f"{output_dir}/{config.symbol}_{config.interval}_{config.id}_{timestamp}_optimization.json"
        _write_json(opt_filename, [to_record(r) for r in ranked])
        logger.info(f"Optimization results saved to: {opt_filename}")

    return result


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Order-flow signal backtest")
    parser.add_argument('--config', '-c', help="backtest YAML file")
    parser.add_argument('overrides', nargs='*', help="key=value overrides, e.g. backtest.leverage=2")
    args = parser.parse_args(argv)

    cfg = load_config(args.config, args.overrides)
    setup_logging(OmegaConf.to_container(cfg, resolve=True))

    result = run_backtest(cfg)
    if result is None:
        return 1

    logger.info(
        f"Trades: {result.total_trades} | Win rate: {result.win_rate:.2%} | "
        f"PnL: {result.total_pnl:.2f} ({result.total_pnl_percentage:.2f}%) | "
        f"Max DD: {result.max_drawdown_percentage:.2%} | Sharpe: {result.sharpe_ratio:.3f}"
    )
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
