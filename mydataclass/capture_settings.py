from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, List

from commons.base_dataclasses import BaseDataClass
from commons.normalizers import (
    empty_to_none,
    to_int_or_none,
    to_float_or_none,
    to_bool_or_none,
    to_path_str,
    ensure_port_range,
    ensure_positive,
    ensure_choice,
)

TLS_VERSIONS = {"1.2", "1.3", "auto"}


def _tls_version(x: Any) -> Any:
    # YAML 会把 1.2 读成 float
    if isinstance(x, float):
        return f"{x:.1f}"
    return str(x).strip().lower() if x is not None else None


def _ensure_bool_flag(row: dict) -> None:
    if not isinstance(row.get("stop_on_frame"), bool):
        raise ValueError(f"stop_on_frame 不是布尔值: {row.get('stop_on_frame')!r}")


def _ensure_files_given(row: dict) -> None:
    for k in ("cert_file", "key_file"):
        if not row.get(k):
            raise ValueError(f"{k} 未配置")


@dataclass(slots=True)
class CaptureSettings(BaseDataClass):
    """一次抓包运行的全部参数（默认值 -> YAML -> 环境变量 -> 命令行 合并后）。"""

    # —— 监听 ——
    cert_file: str
    key_file: str
    host: str = "0.0.0.0"
    port: int = 8883
    timeout: float = 60.0
    handshake_timeout: float = 10.0
    tls_version: str = "1.2"
    max_bytes: int = 65536
    stop_on_frame: bool = False

    # —— broker 登记指引 ——
    broker_container: str = "mosquitto"
    broker_passwd_file: str = "/mosquitto/passwd"
    broker_conf_file: str = "mosquitto/mosquitto.conf"

    # —— 排障提示 ——
    device_hostname: str | None = None
    forward_port: int = 443

    # 校验在构造前执行，看不到 dataclass 字段默认值，这里再列一遍
    DEFAULTS: ClassVar[Dict[str, Any]] = {
        "host": "0.0.0.0",
        "port": 8883,
        "timeout": 60.0,
        "handshake_timeout": 10.0,
        "tls_version": "1.2",
        "max_bytes": 65536,
        "stop_on_frame": False,
        "broker_container": "mosquitto",
        "broker_passwd_file": "/mosquitto/passwd",
        "broker_conf_file": "mosquitto/mosquitto.conf",
        "device_hostname": None,
        "forward_port": 443,
    }

    # YAML / 环境变量里更顺手的写法
    FIELD_MAPPING: ClassVar[Dict[str, str]] = {
        "cert": "cert_file",
        "key": "key_file",
        "listen_host": "host",
        "listen_port": "port",
        "container": "broker_container",
        "passwd_file": "broker_passwd_file",
        "conf_file": "broker_conf_file",
        "hostname": "device_hostname",
    }

    CONVERTERS: ClassVar[Dict[str, Any]] = {
        "cert_file": to_path_str,
        "key_file": to_path_str,
        "host": lambda x: empty_to_none(x) or "0.0.0.0",
        "port": to_int_or_none,
        "timeout": to_float_or_none,
        "handshake_timeout": to_float_or_none,
        "tls_version": _tls_version,
        "max_bytes": to_int_or_none,
        "stop_on_frame": to_bool_or_none,
        "device_hostname": empty_to_none,
        "forward_port": to_int_or_none,
    }

    VALIDATORS: ClassVar[List[Any]] = [
        _ensure_files_given,
        ensure_port_range,
        lambda row: ensure_port_range(row, "forward_port"),
        ensure_positive("timeout", "handshake_timeout", "max_bytes"),
        ensure_choice("tls_version", TLS_VERSIONS),
        _ensure_bool_flag,
    ]
