from __future__ import annotations
from typing import Optional, Tuple

from mydataclass.connect_frame import ConnectFrame
from sniffer.errors import MqttDecodeError


CONNECT = 0x10          # CONNECT 固定报头首字节（类型 1，标志位 0）
MIN_CONNECT_LEN = 10    # 比这更短的缓冲区不可能是 CONNECT
MAX_VARINT_BYTES = 4    # Remaining Length 最多 4 字节


class MqttCodec:
    """
    MQTT CONNECT 报文的严格解析。

    - 纯函数：只接受字节缓冲区，不依赖任何网络连接，便于穷举 / 模糊测试；
    - 每次读取前都校验剩余长度，越界立即抛出 MqttDecodeError（含字段名与偏移）；
    - Remaining Length 只解码记录，不用于约束后续字段（与设备实际流量保持一致的宽松行为）。
    """

    @staticmethod
    def _mqtt_varint(buf: bytes, i: int) -> Tuple[int, int]:
        """
        解析 MQTT 的 Remaining Length 可变长度字段。
        每字节低 7 位依次乘以 128^n 累加，最高位为 1 表示后面还有字节。

        返回：
            (value, new_index)
        异常：
            MqttDecodeError("malformed remaining length")  第 4 字节仍带续位
            MqttDecodeError("truncated remaining length")  缓冲区提前结束
        """
        start = i
        mult, val = 1, 0
        for n in range(MAX_VARINT_BYTES):
            if i >= len(buf):
                raise MqttDecodeError(
                    "truncated remaining length", len(buf),
                    field="remaining length", field_offset=start, data=buf,
                )
            b = buf[i]
            i += 1
            val += (b & 0x7F) * mult  # 取低 7 位作为数值
            if (b & 0x80) == 0:       # 最高位未置位，结束
                return val, i
            mult *= 128
        # 连续 4 字节都带续位：超出协议上限
        raise MqttDecodeError(
            "malformed remaining length", i - 1,
            field="remaining length", field_offset=start, data=buf,
            detail=f"continuation bit still set after {MAX_VARINT_BYTES} bytes",
        )

    @staticmethod
    def _need(buf: bytes, i: int, n: int, field: str) -> None:
        """确认从 i 起还有 n 字节可读，否则按截断报错（偏移为数据耗尽处）。"""
        if i + n > len(buf):
            raise MqttDecodeError(
                f"truncated {field}", len(buf),
                field=field, field_offset=i, data=buf,
                detail=f"need {n} byte(s) at offset {i}, buffer has {len(buf)}",
            )

    @staticmethod
    def _u8(buf: bytes, i: int, field: str) -> Tuple[int, int]:
        MqttCodec._need(buf, i, 1, field)
        return buf[i], i + 1

    @staticmethod
    def _u16(buf: bytes, i: int, field: str) -> Tuple[int, int]:
        """读取 2 字节无符号整数（大端序）。"""
        MqttCodec._need(buf, i, 2, field)
        return (buf[i] << 8) | buf[i + 1], i + 2

    @staticmethod
    def _read_bytes(buf: bytes, i: int, field: str) -> Tuple[bytes, int]:
        """读取 2 字节长度前缀 + 原始字节。"""
        ln, j = MqttCodec._u16(buf, i, field)
        MqttCodec._need(buf, j, ln, field)
        return bytes(buf[j:j + ln]), j + ln

    @staticmethod
    def _read_str(buf: bytes, i: int, field: str) -> Tuple[str, int]:
        """
        读取 MQTT 字符串字段：2 字节长度前缀 + UTF-8 数据。
        非法字节用替换字符代替，不让诊断工具因为编码问题中断。
        """
        raw, i = MqttCodec._read_bytes(buf, i, field)
        return raw.decode("utf-8", "replace"), i

    @staticmethod
    def _password_text(raw: bytes) -> Tuple[str, bool]:
        """密码优先按严格 UTF-8 解码；失败则返回小写十六进制。返回 (文本, 是否为 hex)。"""
        try:
            return raw.decode("utf-8"), False
        except UnicodeDecodeError:
            return raw.hex(), True

    @staticmethod
    def frame_length(buf: bytes) -> Optional[int]:
        """
        按固定报头计算首个报文的总长度（1 + varint 字节数 + 剩余长度）。
        缓冲区还不完整或 varint 非法时返回 None。
        """
        if len(buf) < 2:
            return None
        try:
            rem, idx = MqttCodec._mqtt_varint(buf, 1)
        except MqttDecodeError:
            return None
        total = idx + rem
        return total if len(buf) >= total else None

    @staticmethod
    def decode_connect(buf: bytes) -> ConnectFrame:
        """
        解析 CONNECT 报文。

        步骤：
        1. 长度至少 10 字节
        2. 首字节必须是 0x10
        3. Remaining Length（可变长度，只记录）
        4. 协议名（长度前缀字符串）
        5. 协议级别（1 字节）
        6. 连接标志（1 字节）
        7. Keep Alive（2 字节大端）
        8. Client ID
        9. 若 will 标志：Will Topic + Will Message
        10. 若用户名标志：Username
        11. 若密码标志：Password（UTF-8 失败则 hex）
        """
        buf = bytes(buf)
        if len(buf) < MIN_CONNECT_LEN:
            raise MqttDecodeError(
                "too short", 0, field="fixed header", data=buf,
                detail=f"{len(buf)} bytes, a CONNECT frame needs at least {MIN_CONNECT_LEN}",
            )

        if buf[0] != CONNECT:
            raise MqttDecodeError(
                "unexpected frame type", 0, field="fixed header", data=buf,
                detail=f"first byte is 0x{buf[0]:02x}, expected 0x{CONNECT:02x} (CONNECT)",
            )

        remaining_length, pos = MqttCodec._mqtt_varint(buf, 1)

        # —— 可变报头 ——
        protocol_name, pos = MqttCodec._read_str(buf, pos, "protocol name")
        protocol_level, pos = MqttCodec._u8(buf, pos, "protocol level")
        flags, pos = MqttCodec._u8(buf, pos, "connect flags")

        username_present = bool(flags & 0x80)
        password_present = bool(flags & 0x40)
        will_retain = bool(flags & 0x20)
        will_qos = (flags >> 3) & 0x03
        will_present = bool(flags & 0x04)
        clean_session = bool(flags & 0x02)

        keep_alive, pos = MqttCodec._u16(buf, pos, "keep alive")

        # —— 载荷 ——
        client_id, pos = MqttCodec._read_str(buf, pos, "client id")

        will_topic = will_message = None
        if will_present:
            will_topic, pos = MqttCodec._read_str(buf, pos, "will topic")
            will_message, pos = MqttCodec._read_bytes(buf, pos, "will message")

        username = None
        if username_present:
            username, pos = MqttCodec._read_str(buf, pos, "username")

        password, password_is_hex = None, False
        if password_present:
            raw_pw, pos = MqttCodec._read_bytes(buf, pos, "password")
            password, password_is_hex = MqttCodec._password_text(raw_pw)

        return ConnectFrame(
            protocol_name=protocol_name,
            protocol_level=protocol_level,
            flags=flags,
            username_present=username_present,
            password_present=password_present,
            will_retain=will_retain,
            will_qos=will_qos,
            will_present=will_present,
            clean_session=clean_session,
            keep_alive=keep_alive,
            client_id=client_id,
            will_topic=will_topic,
            will_message=will_message,
            username=username,
            password=password,
            password_is_hex=password_is_hex,
            remaining_length=remaining_length,
        )


parse_connect_frame = MqttCodec.decode_connect
