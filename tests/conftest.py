"""
测试公共夹具：
- build_connect：按 MQTT 3.1.1 线格式拼 CONNECT 报文（只在测试中使用）
- cert_pair：会话级自签名证书
- free_port：空闲 TCP 端口
- TlsDeviceClient：模拟设备的 TLS 客户端线程
"""
from __future__ import annotations

import socket
import ssl
import threading
import time
from typing import Optional, Tuple, Union

import pytest

from tools.cert_gen import generate_self_signed_cert


def encode_varint(n: int) -> bytes:
    out = bytearray()
    while True:
        b = n % 128
        n //= 128
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            return bytes(out)


def _field(b: Union[str, bytes]) -> bytes:
    if isinstance(b, str):
        b = b.encode("utf-8")
    return len(b).to_bytes(2, "big") + b


def build_connect(
    client_id: Union[str, bytes] = "fan01",
    *,
    protocol_name: Union[str, bytes] = "MQTT",
    level: int = 4,
    clean_session: bool = True,
    keep_alive: int = 60,
    will: Optional[Tuple[Union[str, bytes], bytes, int, bool]] = None,
    username: Optional[Union[str, bytes]] = None,
    password: Optional[Union[str, bytes]] = None,
    remaining_length: Optional[bytes] = None,
) -> bytes:
    """
    will = (topic, message, qos, retain)
    remaining_length 传入原始字节时直接使用（用于构造特殊的可变长度编码）。
    """
    flags = 0
    if clean_session:
        flags |= 0x02
    if will is not None:
        topic, message, qos, retain = will
        flags |= 0x04 | (qos << 3) | (0x20 if retain else 0)
    if username is not None:
        flags |= 0x80
    if password is not None:
        flags |= 0x40

    body = _field(protocol_name) + bytes([level, flags]) + keep_alive.to_bytes(2, "big")
    body += _field(client_id)
    if will is not None:
        body += _field(will[0]) + _field(will[1])
    if username is not None:
        body += _field(username)
    if password is not None:
        body += _field(password)

    rl = remaining_length if remaining_length is not None else encode_varint(len(body))
    return b"\x10" + rl + body


@pytest.fixture(scope="session")
def cert_pair(tmp_path_factory):
    d = tmp_path_factory.mktemp("certs")
    return generate_self_signed_cert("localhost", str(d / "test.crt"), str(d / "test.key"), days=1)


@pytest.fixture
def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TlsDeviceClient(threading.Thread):
    """
    模拟设备：反复尝试连接直到监听就绪，握手后发送 payload，
    然后保持连接直到 release 被 set（模拟设备等待 CONNACK）。

    close_after_send=True 时发送完立即断开；close_notify=True 时先发 TLS close_notify。
    delay 秒后才开始连接（模拟第二台设备）。
    """

    def __init__(
        self,
        port: int,
        payload: bytes,
        *,
        connect_timeout: float = 5.0,
        hold: float = 10.0,
        close_after_send: bool = False,
        close_notify: bool = False,
        delay: float = 0.0,
    ):
        super().__init__(daemon=True)
        self.port = port
        self.payload = payload
        self.connect_timeout = connect_timeout
        self.hold = hold
        self.close_after_send = close_after_send
        self.close_notify = close_notify
        self.delay = delay
        self.release = threading.Event()
        self.connected = threading.Event()
        self.error: Optional[BaseException] = None

    def run(self):
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        time.sleep(self.delay)
        deadline = time.monotonic() + self.connect_timeout
        while True:
            try:
                sock = socket.create_connection(("127.0.0.1", self.port), timeout=5)
                break
            except OSError as e:
                if time.monotonic() > deadline:
                    self.error = e
                    return
                time.sleep(0.05)
        try:
            with ctx.wrap_socket(sock, server_hostname="localhost") as tls:
                self.connected.set()
                if self.payload:
                    tls.sendall(self.payload)
                if self.close_after_send:
                    if self.close_notify:
                        tls.unwrap()
                    return
                self.release.wait(self.hold)
        except OSError as e:
            self.error = e

    def finish(self):
        self.release.set()
        self.join(timeout=5)


@pytest.fixture
def device_client():
    clients = []

    def _make(port: int, payload: bytes, **kw) -> TlsDeviceClient:
        c = TlsDeviceClient(port, payload, **kw)
        clients.append(c)
        c.start()
        return c

    yield _make
    for c in clients:
        c.finish()
