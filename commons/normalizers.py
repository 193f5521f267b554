# -*- coding: utf-8 -*-
# commons/normalizers.py
from __future__ import annotations

"""
normalizers
-----------
通用“字段级转换 / 行级校验”函数库，供 BaseDataClass 的 CONVERTERS / VALIDATORS 使用。
转换函数：func(value) -> new_value；校验函数：func(row_dict) -> None（异常表示失败）。
"""

from pathlib import Path
from typing import Any, Optional


def empty_to_none(x: Any) -> Any:
    """将空串（含全空白）转换为 None，其它值保持不变。"""
    return None if isinstance(x, str) and x.strip() == "" else x


def to_int_or_none(x: Any) -> Optional[int]:
    """
    把值尽量强转为 int；空串/None/非法值返回 None：
    - "8883" -> 8883
    - 8883.0 -> 8883
    - "" / "  " / None -> None
    - "abc" -> None
    """
    try:
        return int(x) if x is not None and str(x).strip() != "" else None
    except (TypeError, ValueError):
        return None


def to_float_or_none(x: Any) -> Optional[float]:
    """同 to_int_or_none，目标类型为 float（超时秒数等）。"""
    try:
        return float(x) if x is not None and str(x).strip() != "" else None
    except (TypeError, ValueError):
        return None


_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


def to_bool_or_none(x: Any) -> Optional[bool]:
    """
    宽松布尔解析（环境变量 / YAML 都可能给字符串）：
    - True/False 原样返回
    - "1"/"true"/"yes"/"on" -> True；"0"/"false"/"no"/"off" -> False
    - 其它 -> None
    """
    if isinstance(x, bool):
        return x
    if x is None:
        return None
    s = str(x).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    return None


def to_path_str(x: Any) -> Optional[str]:
    """路径字段：展开 ~ 并转为字符串；空值返回 None。"""
    x = empty_to_none(x)
    if x is None:
        return None
    return str(Path(str(x)).expanduser())


def ensure_port_range(row: dict, key: str = "port") -> None:
    """端口必须是 1..65535 的整数。"""
    port = row.get(key)
    if not isinstance(port, int) or isinstance(port, bool) or not 1 <= port <= 65535:
        raise ValueError(f"{key} 必须在 1..65535 之间，实际为 {port!r}")


def ensure_positive(*keys: str):
    """
    生成校验器：指定字段必须为正数（缺失不校验）。
    用法：VALIDATORS = [ensure_positive("timeout", "handshake_timeout")]
    """
    def _check(row: dict) -> None:
        for k in keys:
            v = row.get(k)
            if v is None:
                continue
            if not isinstance(v, (int, float)) or isinstance(v, bool) or v <= 0:
                raise ValueError(f"{k} 必须为正数，实际为 {v!r}")
    _check.__name__ = f"ensure_positive({', '.join(keys)})"
    return _check


def ensure_choice(key: str, choices: set[str]):
    """生成校验器：字段取值必须在 choices 内。"""
    def _check(row: dict) -> None:
        v = row.get(key)
        if v not in choices:
            raise ValueError(f"{key} 只能是 {sorted(choices)} 之一，实际为 {v!r}")
    _check.__name__ = f"ensure_choice({key})"
    return _check
