from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Optional

from commons.base_dataclasses import BaseDataClass


def _json_default(obj: Any) -> Any:
    # will_message 是原始字节，JSON 中以小写十六进制输出
    if isinstance(obj, (bytes, bytearray)):
        return bytes(obj).hex()
    raise TypeError(f"无法序列化类型 {type(obj).__name__}")


@dataclass(frozen=True, slots=True)
class ConnectFrame(BaseDataClass):
    """
    MQTT CONNECT 报文解析结果（一次解析调用内有效，不做持久化）。

    可选字段与连接标志位一一对应：
      will_topic / will_message <-> will_present
      username                  <-> username_present
      password                  <-> password_present
    """

    # —— 可变报头 ——
    protocol_name: str
    protocol_level: int
    flags: int
    username_present: bool
    password_present: bool
    will_retain: bool
    will_qos: int
    will_present: bool
    clean_session: bool
    keep_alive: int

    # —— 载荷 ——
    client_id: str
    will_topic: Optional[str] = None
    will_message: Optional[bytes] = None
    username: Optional[str] = None
    password: Optional[str] = None
    password_is_hex: bool = False   # password 是否为十六进制兜底表示

    remaining_length: int = 0       # 固定报头声明的剩余长度，仅记录

    JSON_DEFAULT: ClassVar[Callable[[Any], Any] | None] = _json_default

    @property
    def credential_action_required(self) -> bool:
        """设备带用户名时，需要在 broker 侧登记凭据。"""
        return self.username_present
