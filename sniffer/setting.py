#  配置 / Settings
from __future__ import annotations

import os
from typing import Any, Dict, Mapping, Optional

from mydataclass.capture_settings import CaptureSettings
from tools.config_loader import load_config

DEFAULT_CONFIG_FILE = os.path.join("config", "capture.yaml")

# 环境变量 -> CaptureSettings 字段
ENV_MAPPING = {
    "MQTT_CAPTURE_HOST":          "host",
    "MQTT_CAPTURE_PORT":          "port",
    "MQTT_CAPTURE_CERT":          "cert_file",
    "MQTT_CAPTURE_KEY":           "key_file",
    "MQTT_CAPTURE_TIMEOUT":       "timeout",
    "MQTT_CAPTURE_TLS_VERSION":   "tls_version",
    "MQTT_CAPTURE_STOP_ON_FRAME": "stop_on_frame",
    "MQTT_CAPTURE_BROKER":        "broker_container",
    "MQTT_CAPTURE_DEVICE_HOST":   "device_hostname",
}

LOG_LEVEL = os.getenv("MQTT_CAPTURE_LOG_LEVEL", "INFO").upper()


def env_overrides(environ: Mapping[str, str] | None = None) -> Dict[str, Any]:
    """从环境变量收集覆盖项（空串视为未设置）。"""
    environ = os.environ if environ is None else environ
    out: Dict[str, Any] = {}
    for env_key, field in ENV_MAPPING.items():
        val = environ.get(env_key)
        if val is not None and val.strip() != "":
            out[field] = val
    return out


def load_file_config(file_path: str | None) -> Dict[str, Any]:
    """
    读取 YAML 中的 capture / broker / device 三个配置块并拍平。
    file_path 为 None 时尝试默认配置文件，不存在则返回 {}。
    """
    if file_path is None:
        try:
            cfg = load_config(file_path=DEFAULT_CONFIG_FILE)
        except FileNotFoundError:
            return {}
    else:
        cfg = load_config(file_path=file_path)

    flat: Dict[str, Any] = {}
    for section in ("capture", "broker", "device"):
        block = cfg.get(section) or {}
        if not isinstance(block, dict):
            raise ValueError(f"配置块 {section} 必须是映射")
        flat.update(block)
    return flat


def load_log_level(file_path: str | None) -> str:
    """日志级别：环境变量优先，其次 YAML 的 logging.level。"""
    if os.getenv("MQTT_CAPTURE_LOG_LEVEL"):
        return LOG_LEVEL
    try:
        block = load_config("logging", file_path or DEFAULT_CONFIG_FILE)
    except FileNotFoundError:
        return LOG_LEVEL
    return str(block.get("level", LOG_LEVEL)).upper()


def build_settings(
    cli: Optional[Mapping[str, Any]] = None,
    *,
    config_file: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> CaptureSettings:
    """
    合并顺序（后者覆盖前者）：
      CaptureSettings.DEFAULTS -> YAML -> 环境变量 -> 命令行
    命令行中值为 None 的项视为未提供。
    """
    row: Dict[str, Any] = {}
    row.update(load_file_config(config_file))
    row.update(env_overrides(environ))
    row.update({k: v for k, v in (cli or {}).items() if v is not None})
    return CaptureSettings.from_dict(row, strict=True)
