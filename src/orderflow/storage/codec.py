"""
dataclass <-> JSON兼容记录 的转换

datetime 存为 ISO-8601 字符串（arrow），Enum 存值，嵌套 dataclass 存为字典。
"""

import dataclasses
import typing
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Type, TypeVar

import arrow

T = TypeVar('T')

_NONE_TYPE = type(None)


def to_record(obj: Any) -> Any:
    """把 dataclass（及其嵌套值）转换为只含基础类型的结构"""
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_record(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return arrow.get(obj).isoformat()
    if isinstance(obj, (list, tuple)):
        return [to_record(v) for v in obj]
    if isinstance(obj, dict):
        return {str(k): to_record(v) for k, v in obj.items()}
    return obj


def from_record(cls: Type[T], record: Dict[str, Any]) -> T:
    """按类型注解把记录还原为 dataclass 实例"""
    hints = typing.get_type_hints(cls)
    kwargs = {}
    for f in dataclasses.fields(cls):
        if not f.init or f.name not in record:
            continue
        kwargs[f.name] = _decode(hints[f.name], record[f.name])
    return cls(**kwargs)


def _decode(tp: Any, value: Any) -> Any:
    if value is None:
        return None

    origin = typing.get_origin(tp)
    args = typing.get_args(tp)

    if origin is typing.Union:
        candidates = [a for a in args if a is not _NONE_TYPE]
        if len(candidates) == 1:
            return _decode(candidates[0], value)
        return value
    if origin in (list, typing.List):
        return [_decode(args[0], v) for v in value] if args else list(value)
    if origin in (tuple, typing.Tuple):
        if len(args) == 2 and args[1] is Ellipsis:
            return tuple(_decode(args[0], v) for v in value)
        if args:
            return tuple(_decode(a, v) for a, v in zip(args, value))
        return tuple(value)
    if origin in (dict, typing.Dict):
        value_type = args[1] if args else Any
        return {k: _decode(value_type, v) for k, v in value.items()}

    if tp is Any:
        return value
    if isinstance(tp, type):
        if dataclasses.is_dataclass(tp):
            return from_record(tp, value)
        if issubclass(tp, Enum):
            return tp(value)
        if issubclass(tp, datetime):
            return arrow.get(value).datetime
        if tp is float:
            return float(value)
        if tp is int:
            return int(value)
    return value
