# -*- coding: utf-8 -*-
"""
BaseDataClass
-------------
为 dataclass 子类提供统一的构造/清洗/校验与序列化能力。
流程：字段映射 -> 默认值合并 -> 字段转换 -> 行级校验 -> 构造实例 -> 序列化。

本项目中的使用方：
- CaptureSettings：YAML / 环境变量 / 命令行合并后的配置行，经转换与校验后构造；
- ConnectFrame：解析结果，主要用 to_dict / to_json 输出报告。

使用约定：
- 子类必须使用 @dataclass 装饰；结果类建议 frozen=True。
- DEFAULTS 中的可变对象会被 deepcopy；callable 在每次构造时调用。
- CONVERTERS 为纯函数；VALIDATORS 只抛错不改值。
"""
from __future__ import annotations

import copy
import json
import logging
import dataclasses
from typing import (
    Any,
    Callable,
    ClassVar,
    Dict,
    List,
    Mapping,
    Type,
    TypeVar,
)

from commons.base_logger import BaseLogger

# 模块级默认 logger（子类可覆盖 BaseDataClass.LOGGER）
_DEFAULT_LOGGER = BaseLogger(name="BaseDataClass").logger

T = TypeVar("T", bound="BaseDataClass")
Converter = Callable[[Any], Any]
RowValidator = Callable[[Dict[str, Any]], None]


class BaseDataClass:
    """dataclass 子类的通用基类：构造、清洗、校验、序列化。

    子类可配置以下类变量：
    - DEFAULTS: 字段默认值（非 callable 将进行 deepcopy）
    - FIELD_MAPPING: 外部字段名 -> 内部字段名
    - CONVERTERS: 字段级转换器，在默认值合并后、校验前执行
    - VALIDATORS: 行级校验器，抛异常即校验失败
    - LOGGER: 日志器
    - JSON_DEFAULT: json.dumps 的 default 钩子（bytes 等非内建类型）

    典型用法：
        @dataclass
        class Settings(BaseDataClass):
            port: int
            timeout: float = 60.0

        Settings.FIELD_MAPPING = {"listen_port": "port"}
        Settings.CONVERTERS = {"port": int, "timeout": float}

        s = Settings.from_dict({"listen_port": "8883"}, strict=True)
        js = s.to_json()
    """

    DEFAULTS: ClassVar[Dict[str, Any]] = {}
    FIELD_MAPPING: ClassVar[Dict[str, str]] = {}
    CONVERTERS: ClassVar[Dict[str, Converter]] = {}
    VALIDATORS: ClassVar[List[RowValidator]] = []

    LOGGER: ClassVar[logging.Logger] = _DEFAULT_LOGGER

    JSON_DEFAULT: ClassVar[Callable[[Any], Any] | None] = None

    @classmethod
    def _logger(cls) -> logging.Logger:
        return getattr(cls, "LOGGER", _DEFAULT_LOGGER) or _DEFAULT_LOGGER

    # ---------------- 构造 ----------------
    @classmethod
    def from_dict(
        cls: Type[T],
        data: Mapping[str, Any],
        *,
        strict: bool = False,
        log_errors: bool = True,
    ) -> T:
        """从单个字典构造实例：映射 -> 默认 -> 转换 -> 校验 -> 构造。

        参数：
            data: 外部输入（Mapping）；值为 None 的键视为“未提供”，不覆盖默认值。
            strict: True 则转换失败直接抛出；False 则记录日志并保留原值。
                    校验失败与构造失败在两种模式下都会抛出。
            log_errors: 是否记录警告日志。
        """
        logger = cls._logger()

        if not isinstance(data, Mapping):
            raise TypeError(f"from_dict 需要 Mapping，实际得到: {type(data).__name__}")

        try:
            dc_names = {f.name for f in dataclasses.fields(cls)}
        except TypeError:
            raise TypeError(f"{cls.__name__} 必须使用 @dataclass 装饰")

        # 1) 字段映射（外键 -> 内部字段名）
        mapped: Dict[str, Any] = {}
        for ext_key, val in data.items():
            if val is None:
                continue
            internal = cls.FIELD_MAPPING.get(ext_key, ext_key)
            if internal in dc_names:
                mapped[internal] = val

        # 2) 默认值展开
        defaults_expanded: Dict[str, Any] = {}
        for k, v in cls.DEFAULTS.items():
            defaults_expanded[k] = v() if callable(v) else copy.deepcopy(v)

        combined: Dict[str, Any] = {**defaults_expanded, **mapped}

        # 3) 字段级转换
        for key, fn in cls.CONVERTERS.items():
            if key in combined:
                try:
                    combined[key] = fn(combined[key])
                except Exception as e:
                    if strict:
                        raise ValueError(f"字段 {key} 转换失败: {e}") from e
                    if log_errors:
                        logger.warning(
                            "字段转换失败 %s (%s): %s; 值片段=%r",
                            key, type(e).__name__, e, str(combined.get(key))[:120],
                        )

        # 4) 行级校验
        for validate in cls.VALIDATORS:
            try:
                validate(combined)
            except Exception as e:
                if log_errors:
                    vname = getattr(validate, "__name__", repr(validate))
                    logger.warning("行级校验失败 (%s): %s", vname, e)
                raise

        # 5) 构造 dataclass 实例（仅使用声明字段）
        slim = {k: v for k, v in combined.items() if k in dc_names}
        try:
            return cls(**slim)  # type: ignore[arg-type]
        except TypeError as e:
            if log_errors:
                missing = [f.name for f in dataclasses.fields(cls) if f.name not in slim]
                logger.warning("构造实例失败: %s; 缺失=%r", e, missing)
            raise

    # ---------------- 序列化 ----------------
    def to_dict(self, *, drop_none: bool = False) -> Dict[str, Any]:
        """导出为 dict；drop_none=True 时递归剔除 None。"""
        if not dataclasses.is_dataclass(self):
            raise TypeError(f"{type(self).__name__} 不是 dataclass，无法 asdict")
        d = dataclasses.asdict(self)
        if not drop_none:
            return d

        def _strip_none(obj: Any) -> Any:
            if isinstance(obj, dict):
                return {k: _strip_none(v) for k, v in obj.items() if v is not None}
            if isinstance(obj, list):
                return [_strip_none(x) for x in obj if x is not None]
            return obj

        return _strip_none(d)

    def to_json(
        self,
        *,
        ensure_ascii: bool = False,
        drop_none: bool = False,
        indent: int | None = None,
        default: Callable[[Any], Any] | None = None,
    ) -> str:
        """导出 JSON 文本；default 未提供时使用类属性 JSON_DEFAULT。"""
        cls = type(self)
        return json.dumps(
            self.to_dict(drop_none=drop_none),
            ensure_ascii=ensure_ascii,
            indent=indent,
            default=default or cls.JSON_DEFAULT,
        )
