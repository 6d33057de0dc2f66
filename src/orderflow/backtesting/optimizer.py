"""
参数优化：网格搜索（不超过3个参数）+ 随机搜索

参数名使用 `signal.<字段>` 调整信号配置，其余名字直接对应 BacktestConfig 字段。
"""

import dataclasses
import math
import random
from typing import Any, Dict, List, Mapping, Optional, Sequence

from loguru import logger

from orderflow.backtesting.engine import BacktestEngine
from orderflow.core.errors import InvalidConfiguration
from orderflow.models.backtest import (
    BacktestConfig, BacktestResult, OptimizationResult, ParameterRange, ParameterType,
)
from orderflow.models.market_data import Candle
from orderflow.storage.codec import from_record, to_record
from orderflow.storage.store import Store

SIGNAL_PREFIX = 'signal.'
RESULT_NAMESPACE = 'optimization_results'
MAX_GRID_PARAMETERS = 3

TARGET_METRICS = {
    'sharpe': lambda r: r.sharpe_ratio,
    'profit': lambda r: r.total_pnl_percentage,
    'winRate': lambda r: r.win_rate,
    'profitFactor': lambda r: r.profit_factor,
    'calmar': lambda r: r.calmar_ratio,
}

# 优化结果中可直接比较的字段（calmar 只体现在目标值里）
RESULT_FIELDS = {
    'sharpe': 'sharpe_ratio',
    'profit': 'total_return',
    'winRate': 'win_rate',
    'profitFactor': 'profit_factor',
}


def composite_score(result: BacktestResult) -> float:
    """综合评分：收益、回撤惩罚、夏普、胜率和交易次数"""
    return_score = result.total_pnl_percentage / 100.0
    risk_score = 1.0 / (1.0 + result.max_drawdown_percentage)
    sharpe_score = result.sharpe_ratio / 10.0
    trade_count_score = min(result.total_trades / 100.0, 1.0)
    return (return_score * 0.3 + risk_score * 0.2 + sharpe_score * 0.3
            + result.win_rate * 0.1 + trade_count_score * 0.1)


def parameter_values(param_range: ParameterRange) -> List[Any]:
    if param_range.type is ParameterType.BOOLEAN:
        return [True, False]
    if param_range.steps <= 1:
        values = [param_range.min]
    else:
        step = (param_range.max - param_range.min) / (param_range.steps - 1)
        values = [param_range.min + i * step for i in range(param_range.steps)]
    if param_range.type is ParameterType.INT:
        # 去重保序
        return list(dict.fromkeys(int(v) for v in values))
    return values


def grid_search(parameter_ranges: Mapping[str, ParameterRange]) -> List[Dict[str, Any]]:
    combinations: List[Dict[str, Any]] = [{}]
    for name, param_range in parameter_ranges.items():
        combinations = [dict(c, **{name: v}) for c in combinations for v in parameter_values(param_range)]
    return combinations


def random_combination(parameter_ranges: Mapping[str, ParameterRange], rng: random.Random) -> Dict[str, Any]:
    combination: Dict[str, Any] = {}
    for name, param_range in parameter_ranges.items():
        if param_range.type is ParameterType.DOUBLE:
            combination[name] = param_range.min + rng.random() * (param_range.max - param_range.min)
        elif param_range.type is ParameterType.INT:
            combination[name] = rng.randint(int(param_range.min), int(param_range.max))
        else:
            combination[name] = rng.random() < 0.5
    return combination


def generate_combinations(parameter_ranges: Mapping[str, ParameterRange], max_iterations: int,
                          seed: int = 42) -> List[Dict[str, Any]]:
    combinations: List[Dict[str, Any]] = []
    if 0 < len(parameter_ranges) <= MAX_GRID_PARAMETERS:
        combinations.extend(grid_search(parameter_ranges))

    rng = random.Random(seed)
    while parameter_ranges and len(combinations) < max_iterations:
        combinations.append(random_combination(parameter_ranges, rng))
    return combinations[:max_iterations]


def apply_parameters(base: BacktestConfig, parameters: Mapping[str, Any], index: int) -> BacktestConfig:
    """生成新配置并校验；未知参数或非法组合抛 InvalidConfiguration"""
    signal_fields = {f.name for f in dataclasses.fields(base.signal_config)}
    backtest_fields = {f.name for f in dataclasses.fields(base)}

    signal_changes = {}
    backtest_changes = {}
    for name, value in parameters.items():
        if name.startswith(SIGNAL_PREFIX) and name[len(SIGNAL_PREFIX):] in signal_fields:
            signal_changes[name[len(SIGNAL_PREFIX):]] = value
        elif name in backtest_fields and name not in ('id', 'name', 'signal_config'):
            backtest_changes[name] = value
        else:
            raise InvalidConfiguration(f"未知的优化参数: {name}")

    config = dataclasses.replace(
        base,
        id=f"{base.id}_opt_{index}",
        name=f"{base.name} - Optimization {index}",
        signal_config=dataclasses.replace(base.signal_config, **signal_changes),
        **backtest_changes,
    )
    return config.validate()


class ParameterOptimizer:

    def __init__(self, engine: BacktestEngine, store: Store):
        self.engine = engine
        self.store = store

    def optimize_parameters(self, base_config: BacktestConfig, candles: Sequence[Candle],
                            parameter_ranges: Mapping[str, ParameterRange],
                            target_metric: str = 'sharpe', max_iterations: int = 100,
                            seed: int = 42) -> List[OptimizationResult]:
        """逐个组合回测，按目标指标降序排名并保存"""
        if target_metric != 'score' and target_metric not in TARGET_METRICS:
            raise InvalidConfiguration(f"不支持的目标指标: {target_metric}")

        combinations = generate_combinations(parameter_ranges, max_iterations, seed)
        logger.info(f"Starting parameter optimization: {len(combinations)} combinations, target={target_metric}")

        results: List[OptimizationResult] = []
        for index, parameters in enumerate(combinations):
            try:
                config = apply_parameters(base_config, parameters, index)
            except InvalidConfiguration as e:
                logger.warning(f"Optimization {index} skipped, invalid parameters {parameters}: {e}")
                continue

            backtest = self.engine.run_backtest(config, candles)
            if backtest is None:
                logger.warning(f"Optimization {index} failed, see backtest log")
                continue

            score = composite_score(backtest)
            target_value = score if target_metric == 'score' else TARGET_METRICS[target_metric](backtest)
            results.append(OptimizationResult(
                id=f"opt_{base_config.id}_{index}",
                config_id=base_config.id,
                parameter_set=dict(parameters),
                target_metric=target_metric,
                target_value=target_value,
                total_return=backtest.total_pnl_percentage,
                max_drawdown=backtest.max_drawdown_percentage,
                sharpe_ratio=backtest.sharpe_ratio,
                win_rate=backtest.win_rate,
                profit_factor=backtest.profit_factor,
                total_trades=backtest.total_trades,
                rank=0,
                score=score,
            ))
            logger.debug(f"Optimization {index} completed: {target_metric}={target_value:.4f}")

        # NaN 排在最后；sorted 是稳定排序，同分时保留生成顺序
        ranked = sorted(results, key=lambda r: -r.target_value if not math.isnan(r.target_value) else math.inf)
        ranked = [dataclasses.replace(r, rank=i + 1) for i, r in enumerate(ranked)]

        self.store.put(RESULT_NAMESPACE, base_config.id, {'results': [to_record(r) for r in ranked]})
        logger.info(f"Parameter optimization completed: {len(ranked)} results")
        return ranked

    def get_optimization_results(self, config_id: str) -> List[OptimizationResult]:
        record = self.store.get(RESULT_NAMESPACE, config_id)
        if not record:
            return []
        return [from_record(OptimizationResult, r) for r in record['results']]

    def get_best_parameters(self, config_id: str, metric: str = 'score') -> Optional[OptimizationResult]:
        results = self.get_optimization_results(config_id)
        if not results:
            return None
        if metric == 'score':
            return max(results, key=lambda r: r.score)
        if metric == results[0].target_metric:
            return min(results, key=lambda r: r.rank)
        field_name = RESULT_FIELDS.get(metric)
        if field_name is None:
            raise InvalidConfiguration(f"不支持的指标: {metric}")
        return max(results, key=lambda r: getattr(r, field_name))
