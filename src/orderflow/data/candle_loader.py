from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd

from orderflow.models.market_data import Candle, DerivativesMetrics
from orderflow.utils.data_transforms import dataframe_to_candles, to_datetime

# 时间列候选名（按优先级）
TIME_COLUMNS = ('open_time', 'timestamp', 'time', 'date')


def _parse_times(series: pd.Series) -> pd.Series:
    """毫秒时间戳或时间字符串统一转换为 UTC 时间"""
    if pd.api.types.is_numeric_dtype(series):
        return pd.to_datetime(series, unit='ms', utc=True)
    return pd.to_datetime(series, utc=True)


def _read_frame(path: Union[str, Path]) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Data file not found: {path}")
    df = pd.read_csv(path)
    df.columns = [str(c).strip().lower() for c in df.columns]
    return df


def load_historical_data(
    path: Union[str, Path],
    symbol: str,
    interval: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> List[Candle]:
    """
    从CSV文件加载单个交易品种的历史K线。

    Args:
        path: CSV文件路径，至少包含时间列和 open/high/low/close/volume。
        symbol: 交易品种, e.g., "BTCUSDT".
        interval: K线周期, e.g., "1h".
        start_date: 数据开始时间 (timezone-aware)，可选。
        end_date: 数据结束时间 (timezone-aware)，可选。

    Returns:
        按开盘时间排序的 Candle 列表。
    """
    df = _read_frame(path)

    time_column = next((c for c in TIME_COLUMNS if c in df.columns), None)
    if time_column is None:
        raise ValueError(f"No time column found, expected one of {TIME_COLUMNS}")

    df[time_column] = _parse_times(df[time_column])
    if 'close_time' in df.columns and time_column != 'close_time':
        df['close_time'] = _parse_times(df['close_time'])
    df = df.set_index(time_column).sort_index()
    df = df[~df.index.duplicated(keep='last')]

    if start_date is not None:
        df = df[df.index >= pd.Timestamp(to_datetime(start_date))]
    if end_date is not None:
        df = df[df.index <= pd.Timestamp(to_datetime(end_date))]

    return dataframe_to_candles(df, symbol, interval)


def load_derivatives(path: Union[str, Path], symbol: str) -> Dict[datetime, DerivativesMetrics]:
    """
    加载资金费率 / 持仓量数据，以时间戳为键（与K线收盘时间对齐）。

    CSV列: timestamp, funding_rate, open_interest；上一期持仓量取前一行。
    """
    df = _read_frame(path)
    if 'timestamp' not in df.columns:
        raise ValueError("Derivatives file requires a 'timestamp' column")

    df['timestamp'] = _parse_times(df['timestamp'])
    df = df.sort_values('timestamp')

    metrics: Dict[datetime, DerivativesMetrics] = {}
    previous_oi = None
    for row in df.itertuples(index=False):
        funding = getattr(row, 'funding_rate', None)
        oi = getattr(row, 'open_interest', None)
        funding = float(funding) if funding is not None and pd.notna(funding) else None
        oi = float(oi) if oi is not None and pd.notna(oi) else None

        timestamp = to_datetime(row.timestamp.to_pydatetime())
        metrics[timestamp] = DerivativesMetrics(
            symbol=symbol,
            timestamp=timestamp,
            funding_rate=funding,
            open_interest=oi,
            previous_open_interest=previous_oi,
        )
        if oi is not None:
            previous_oi = oi
    return metrics
