# TLS 终止 + 单连接抓包
"""
=========================================
TlsCaptureListener
=========================================

一次性抓包监听器：
  - 预检：证书 / 私钥可读、端口未被占用（在任何网络 I/O 之前）
  - 在指定端口上用 asyncio.start_server 做 TLS 终止
  - 只接受第一个完成握手的连接，随即关闭监听 socket
  - 把握手之后对端发来的明文字节全部读进内存缓冲区，
    直到对端断开 / 截止时间到 / 达到 max_bytes（可选：收齐一个完整报文即停）
  - 一个字节都没收到 -> CaptureTimeoutError；部分数据照常返回，交给解析器报具体错误

所有 socket / 连接都在 async with 退出时释放（成功、超时、异常都一样）。
"""
from __future__ import annotations

import asyncio
import contextlib
import os
import ssl
from pathlib import Path
from typing import List, Optional

from commons.base_logger import BaseLogger
from mydataclass.capture_settings import CaptureSettings
from sniffer.errors import CaptureSetupError, CaptureTimeoutError
from sniffer.mqtt_codec import MqttCodec
from sniffer.port_check import PortInUse, ss_port_in_use

READ_CHUNK = 4096
CLOSE_GRACE = 1.0   # 关闭连接 / 监听时最多等待的秒数

_TLS_VERSIONS = {
    "1.2": (ssl.TLSVersion.TLSv1_2, ssl.TLSVersion.TLSv1_2),
    "1.3": (ssl.TLSVersion.TLSv1_3, ssl.TLSVersion.TLSv1_3),
}


class TlsCaptureListener:
    """单连接、限时的 TLS 抓包监听器（async 上下文管理器）。"""

    def __init__(
        self,
        *,
        port: int,
        cert_file: str,
        key_file: str,
        timeout: float,
        host: str = "0.0.0.0",
        handshake_timeout: float = 10.0,
        tls_version: str = "1.2",
        max_bytes: int = 65536,
        stop_on_frame: bool = False,
        port_in_use: PortInUse = ss_port_in_use,
        broker_container: str | None = None,
    ):
        self.port = port
        self.host = host
        self.cert_file = Path(cert_file)
        self.key_file = Path(key_file)
        self.timeout = timeout
        self.handshake_timeout = handshake_timeout
        self.tls_version = tls_version
        self.max_bytes = max_bytes
        self.stop_on_frame = stop_on_frame
        self._port_in_use = port_in_use
        self._broker_container = broker_container

        self.logger = BaseLogger()

        self._server: Optional[asyncio.Server] = None
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._rejected: List[asyncio.StreamWriter] = []
        self._connected: Optional[asyncio.Event] = None
        self._deadline: float = 0.0
        self.peer: Optional[tuple] = None

    @classmethod
    def from_settings(cls, settings: CaptureSettings, *, port_in_use: PortInUse = ss_port_in_use) -> "TlsCaptureListener":
        return cls(
            port=settings.port,
            cert_file=settings.cert_file,
            key_file=settings.key_file,
            timeout=settings.timeout,
            host=settings.host,
            handshake_timeout=settings.handshake_timeout,
            tls_version=settings.tls_version,
            max_bytes=settings.max_bytes,
            stop_on_frame=settings.stop_on_frame,
            port_in_use=port_in_use,
            broker_container=settings.broker_container,
        )

    # ============ 预检 ============

    def preflight(self) -> ssl.SSLContext:
        """证书文件 -> 端口占用 -> 构建 TLS 上下文；任一失败抛 CaptureSetupError。"""
        for label, path in (("证书", self.cert_file), ("私钥", self.key_file)):
            if not path.is_file() or not os.access(path, os.R_OK):
                raise CaptureSetupError(
                    f"{label}文件不存在或不可读: {path}",
                    remedy="先生成证书：mqtt-capture gen-cert --hostname <设备连接的云端域名>",
                )

        if self._port_in_use(self.port):
            stop_cmd = (
                f"docker compose stop {self._broker_container}"
                if self._broker_container else "先停止占用该端口的服务"
            )
            raise CaptureSetupError(
                f"端口 {self.port} 已被占用（broker 还在运行？）",
                remedy=f"{stop_cmd}；抓包结束后再启动回来",
            )

        return self._build_context()

    def _build_context(self) -> ssl.SSLContext:
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        if self.tls_version in _TLS_VERSIONS:
            ctx.minimum_version, ctx.maximum_version = _TLS_VERSIONS[self.tls_version]
        try:
            ctx.load_cert_chain(certfile=str(self.cert_file), keyfile=str(self.key_file))
        except (ssl.SSLError, OSError) as e:
            raise CaptureSetupError(
                f"证书 / 私钥无法加载: {e}",
                remedy="确认两者是配对的 PEM 文件，必要时重新运行 gen-cert",
            ) from e
        return ctx

    # ============ 生命周期 ============

    async def __aenter__(self) -> "TlsCaptureListener":
        ctx = self.preflight()
        self._connected = asyncio.Event()
        try:
            self._server = await asyncio.start_server(
                self._on_client,
                self.host,
                self.port,
                ssl=ctx,
                ssl_handshake_timeout=self.handshake_timeout,
            )
        except OSError as e:
            raise CaptureSetupError(
                f"无法在 {self.host}:{self.port} 上监听: {e}",
                remedy="确认端口空闲且当前用户有权限绑定该端口",
            ) from e
        self._deadline = asyncio.get_running_loop().time() + self.timeout
        self.logger.log_info(
            f"TLS 监听 {self.host}:{self.port}，最长等待 {self.timeout:g} 秒（TLS {self.tls_version}）"
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        """关闭已接受的连接与监听 socket；可重复调用。"""
        writers = ([self._writer] if self._writer is not None else []) + self._rejected
        for w in writers:
            w.close()
        for w in writers:
            # 设备通常不回 close_notify，等不到就直接断开
            try:
                await asyncio.wait_for(w.wait_closed(), CLOSE_GRACE)
            except (asyncio.TimeoutError, OSError) as e:
                self.logger.log_debug(f"连接未正常关闭，强制断开: {e!r}")
                w.transport.abort()
        self._writer, self._reader, self._rejected = None, None, []

        if self._server is not None:
            self._server.close()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._server.wait_closed(), CLOSE_GRACE)
            self._server = None
            self.logger.log_debug(f"监听端口 {self.port} 已释放")

    async def _on_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """握手完成后的回调：第一个连接留下，其余直接关闭。"""
        peer = writer.get_extra_info("peername")
        if self._writer is not None:
            self.logger.log_warning(f"已有设备连接，关闭额外连接 {peer}")
            self._rejected.append(writer)
            writer.close()
            return

        self._reader, self._writer, self.peer = reader, writer, peer
        cipher = writer.get_extra_info("cipher")
        self.logger.log_info(f"设备已连接 {peer}，握手完成 cipher={cipher[0] if cipher else '?'}")

        # 只服务一次上电：不再接受新连接
        if self._server is not None:
            self._server.close()
        self._connected.set()

    def _remaining(self) -> float:
        return self._deadline - asyncio.get_running_loop().time()

    # ============ 抓取 ============

    async def receive(self) -> bytes:
        """
        等待设备连接并读取其发来的全部字节。

        返回：
            抓到的字节（截止时间到达时可能不完整）
        异常：
            CaptureTimeoutError  一个字节都没收到
        """
        if self._connected is None:
            raise RuntimeError("receive() 必须在 async with 内调用")

        try:
            await asyncio.wait_for(self._connected.wait(), max(self._remaining(), 0))
        except asyncio.TimeoutError:
            raise CaptureTimeoutError(
                f"{self.timeout:g} 秒内没有设备连接到端口 {self.port}",
                timeout=self.timeout,
                peer_connected=False,
            ) from None

        buf = bytearray()
        while len(buf) < self.max_bytes:
            remaining = self._remaining()
            if remaining <= 0:
                self.logger.log_info("抓包时间窗结束")
                break
            want = min(READ_CHUNK, self.max_bytes - len(buf))
            try:
                chunk = await asyncio.wait_for(self._reader.read(want), remaining)
            except asyncio.TimeoutError:
                self.logger.log_info(f"抓包时间窗结束，已收到 {len(buf)} 字节")
                break
            except OSError as e:
                self.logger.log_warning(f"连接异常中断（已收到 {len(buf)} 字节）: {e!r}")
                break
            if not chunk:
                self.logger.log_info(f"设备已断开，共收到 {len(buf)} 字节")
                break
            buf.extend(chunk)
            self.logger.log_debug(f"收到 {len(chunk)} 字节，累计 {len(buf)}")
            if self.stop_on_frame and MqttCodec.frame_length(bytes(buf)) is not None:
                self.logger.log_info("已收齐一个完整报文，提前结束抓包")
                break
        else:
            self.logger.log_warning(f"达到抓包上限 {self.max_bytes} 字节，停止读取")

        if not buf:
            raise CaptureTimeoutError(
                f"设备 {self.peer} 已连接但没有发送任何数据",
                timeout=self.timeout,
                peer_connected=True,
            )
        return bytes(buf)

    async def run(self) -> bytes:
        """预检 + 监听 + 抓取 + 释放，一次完成。"""
        async with self:
            return await self.receive()


def capture(
    port: int,
    cert_file: str,
    key_file: str,
    timeout: float,
    **kwargs,
) -> bytes:
    """
    同步入口：阻塞调用方最多 timeout 秒（外加关闭耗时），返回抓到的字节。
    其余关键字参数透传给 TlsCaptureListener（host / tls_version / port_in_use 等）。
    """
    listener = TlsCaptureListener(
        port=port, cert_file=cert_file, key_file=key_file, timeout=timeout, **kwargs
    )
    return asyncio.run(listener.run())
