"""
数据转换纯函数
所有的数据格式转换逻辑都应该是纯函数
"""

from datetime import datetime, timedelta
from typing import List, Union

import arrow
import pandas as pd

from orderflow.models.market_data import Candle

CANDLE_COLUMNS = ['open', 'high', 'low', 'close', 'volume']

_INTERVAL_UNITS = {
    'm': timedelta(minutes=1),
    'h': timedelta(hours=1),
    'd': timedelta(days=1),
    'w': timedelta(weeks=1),
}


def interval_to_timedelta(interval: str) -> timedelta:
    """将K线周期字符串 (1m / 15m / 1h / 4h / 1d) 转换为 timedelta"""
    try:
        count = int(interval[:-1])
        unit = _INTERVAL_UNITS[interval[-1]]
    except (ValueError, KeyError, IndexError):
        raise ValueError(f"Interval '{interval}' is not supported. Supported units: {list(_INTERVAL_UNITS)}")
    return unit * count


def to_datetime(value: Union[datetime, int, float, str]) -> datetime:
    """毫秒时间戳 / ISO字符串 / datetime 统一转为 UTC datetime"""
    if isinstance(value, (int, float)):
        return arrow.get(value / 1000.0).datetime
    return arrow.get(value).to('UTC').datetime


def to_millis(timestamp: datetime) -> int:
    """datetime 转毫秒时间戳"""
    return int(round(arrow.get(timestamp).float_timestamp * 1000))


def format_timestamp(timestamp: datetime) -> str:
    """格式化为UTC时间字符串"""
    return arrow.get(timestamp).to('UTC').format('YYYY-MM-DD HH:mm:ss')


def month_key(timestamp: datetime) -> str:
    return arrow.get(timestamp).to('UTC').format('YYYY-MM')


def candles_to_dataframe(candles: List[Candle]) -> pd.DataFrame:
    """将 Candle 列表转换为 pandas DataFrame（以 open_time 为索引）"""
    if not candles:
        return pd.DataFrame(columns=CANDLE_COLUMNS)

    df_data = []
    for candle in candles:
        df_data.append({
            'open_time': candle.open_time,
            'close_time': candle.close_time,
            'open': candle.open,
            'high': candle.high,
            'low': candle.low,
            'close': candle.close,
            'volume': candle.volume,
            'quote_volume': candle.quote_volume,
            'trade_count': candle.trade_count,
            'taker_buy_volume': candle.taker_buy_volume,
            'cvd': candle.cvd,
        })

    df = pd.DataFrame(df_data)
    df.set_index('open_time', inplace=True)
    return df


def dataframe_to_candles(df: pd.DataFrame, symbol: str, interval: str) -> List[Candle]:
    """将标准格式的 DataFrame 转换为 Candle 列表

    索引为 open_time；缺少 close_time 列时按周期推算（开盘时间 + 周期 - 1毫秒）。
    """
    if df.empty:
        return []

    missing = [c for c in CANDLE_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"DataFrame missing required columns: {missing}")

    step = interval_to_timedelta(interval) - timedelta(milliseconds=1)
    has = set(df.columns)

    candles = []
    for open_time, row in df.sort_index().iterrows():
        opened = to_datetime(open_time.to_pydatetime() if isinstance(open_time, pd.Timestamp) else open_time)
        if 'close_time' in has and pd.notna(row['close_time']):
            closed = to_datetime(row['close_time'].to_pydatetime()
                                 if isinstance(row['close_time'], pd.Timestamp) else row['close_time'])
        else:
            closed = opened + step
        candles.append(Candle(
            symbol=symbol,
            interval=interval,
            open_time=opened,
            close_time=closed,
            open=float(row['open']),
            high=float(row['high']),
            low=float(row['low']),
            close=float(row['close']),
            volume=float(row['volume']),
            quote_volume=float(row['quote_volume']) if 'quote_volume' in has and pd.notna(row['quote_volume']) else 0.0,
            trade_count=int(row['trade_count']) if 'trade_count' in has and pd.notna(row['trade_count']) else 0,
            taker_buy_volume=(float(row['taker_buy_volume'])
                              if 'taker_buy_volume' in has and pd.notna(row['taker_buy_volume']) else None),
            cvd=float(row['cvd']) if 'cvd' in has and pd.notna(row['cvd']) else None,
        ))
    return candles


def get_latest_candles_slice(candles: List[Candle], count: int) -> List[Candle]:
    """获取最近的 N 根 K线"""
    return candles[-count:] if candles and count > 0 else []
