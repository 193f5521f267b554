# 抓包 / 解析异常定义
from __future__ import annotations


class CaptureError(Exception):
    """抓包工具所有预期内错误的基类（run/capture_main.py 统一处理）。"""

    exit_code = 1


class CaptureSetupError(CaptureError):
    """
    环境未就绪：端口被占用、证书缺失/不可读、监听失败、配置非法。
    remedy 为给操作员的修复建议（可为空）。
    """

    exit_code = 2

    def __init__(self, message: str, remedy: str | None = None):
        super().__init__(message)
        self.remedy = remedy


class CaptureTimeoutError(CaptureError, TimeoutError):
    """
    抓包窗口内一个字节都没收到。
    peer_connected 区分“设备根本没连上”与“连上后未发数据就断开/超时”。
    """

    exit_code = 3

    def __init__(self, message: str, *, timeout: float, peer_connected: bool = False):
        super().__init__(message)
        self.timeout = timeout
        self.peer_connected = peer_connected


class MqttDecodeError(CaptureError, ValueError):
    """
    抓到的字节与 CONNECT 报文结构不符。

    属性：
        reason:       简短原因（"too short" / "unexpected frame type" /
                      "malformed remaining length" / "truncated <field>"）
        offset:       出错的字节偏移；截断类错误为数据耗尽处（即 len(buf)）
        field:        正在解码的字段名
        field_offset: 该字段开始读取的偏移
        hexdump:      缓冲区前 32 字节的十六进制
    """

    exit_code = 4

    HEXDUMP_BYTES = 32

    def __init__(
        self,
        reason: str,
        offset: int,
        *,
        field: str | None = None,
        field_offset: int | None = None,
        data: bytes = b"",
        detail: str | None = None,
    ):
        self.reason = reason
        self.offset = offset
        self.field = field
        self.field_offset = offset if field_offset is None else field_offset
        self.detail = detail
        self.hexdump = bytes(data[: self.HEXDUMP_BYTES]).hex()
        msg = f"{reason} at offset {offset}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
