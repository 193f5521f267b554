# 报告输出：解析结果 / 错误诊断 / broker 登记指引
from __future__ import annotations

import shlex
import unicodedata
from typing import List, Optional

from mydataclass.capture_settings import CaptureSettings
from mydataclass.connect_frame import ConnectFrame
from sniffer.errors import CaptureSetupError, CaptureTimeoutError, MqttDecodeError

BOX_WIDTH = 75
ROW_INDENT = 14   # "Client ID   : " 的显示宽度，续行与值对齐


def _display_width(s: str) -> int:
    """终端显示宽度：全角 / 宽字符按 2 列计。"""
    return sum(2 if unicodedata.east_asian_width(ch) in ("F", "W") else 1 for ch in s)


def _wrap(row: str, width: int) -> List[str]:
    """按显示宽度折行；续行缩进到值的起始列，内容一个字符都不丢。"""
    pieces: List[str] = []
    current, used = "", 0
    for ch in row:
        w = _display_width(ch)
        if used + w > width:
            pieces.append(current)
            current, used = " " * ROW_INDENT, ROW_INDENT
        current += ch
        used += w
    pieces.append(current)
    return pieces


def _box(title: str, rows: List[str]) -> str:
    inner = BOX_WIDTH - 2
    head = f"┌─ {title} "
    lines = [head + "─" * max(inner - _display_width(head) + 1, 0) + "┐"]
    for r in rows:
        for piece in _wrap(r, BOX_WIDTH - 4):
            text = f"│  {piece}"
            lines.append(text + " " * (BOX_WIDTH - 1 - _display_width(text)) + "│")
    lines.append("└" + "─" * inner + "┘")
    return "\n".join(lines)


def render_frame(frame: ConnectFrame) -> str:
    """把 CONNECT 报文字段渲染成方框表格。"""
    rows = [
        f"协议        : {frame.protocol_name} v{frame.protocol_level}",
        f"Client ID   : {frame.client_id}",
        f"Clean Sess  : {frame.clean_session}",
        f"Keep-Alive  : {frame.keep_alive} s",
    ]
    if frame.will_present:
        rows.append(f"Will Topic  : {frame.will_topic}")
        rows.append(f"Will QoS    : {frame.will_qos}  retain={frame.will_retain}")
    rows.append(f"用户名      : {frame.username if frame.username_present else '（无，匿名）'}")
    if frame.password_present:
        suffix = "  (hex)" if frame.password_is_hex else ""
        rows.append(f"密码        : {frame.password}{suffix}")
    else:
        rows.append("密码        : （无）")
    return _box("MQTT CONNECT 报文", rows)


def render_guidance(frame: ConnectFrame, settings: Optional[CaptureSettings] = None) -> str:
    """根据是否带凭据给出 broker 侧的下一步操作。"""
    container = settings.broker_container if settings else "mosquitto"
    passwd_file = settings.broker_passwd_file if settings else "/mosquitto/passwd"
    conf_file = settings.broker_conf_file if settings else "mosquitto/mosquitto.conf"

    out: List[str] = []
    if frame.protocol_level == 5:
        out.append("  注意：协议级别为 5（MQTT 5），属性字段未解析，载荷字段可能错位。")
        out.append("")

    if not frame.credential_action_required:
        out.append("  设备使用匿名认证 → 无需登记凭据。")
        out.append(f"  如果 broker 仍拒绝连接，检查 {conf_file} 中的 'allow_anonymous true'")
        out.append("  并重启 broker 容器。")
        return "\n".join(out)

    username = frame.username or ""
    password = frame.password or ""
    out.append("  下一步：把凭据登记到 broker")
    out.append("")
    if ":" in username:
        out.append("  用户名包含 ':'，Mosquitto 密码文件无法登记，请使用方案 B。")
    else:
        out.append("  方案 A（Mosquitto 自带密码文件）")
        out.append("")
        out.append(f"    docker exec -it {container} mosquitto_passwd -b {passwd_file} \\")
        out.append(f"      {shlex.quote(username)} {shlex.quote(password)}")
        out.append(f"    # 然后在 {conf_file} 中加入：")
        out.append(f"    #   password_file {passwd_file}")
        out.append("    #   allow_anonymous false")
        if frame.password_is_hex:
            out.append("    # 密码不是合法 UTF-8，上面是十六进制表示；设备实际发送的是原始字节。")
    out.append("")
    out.append("  方案 B（EMQX 或 Mosquitto 认证插件，支持带 ':' 的用户名）")
    out.append("    参见：https://emqx.io 或 https://github.com/iegomez/mosquitto-go-auth")
    return "\n".join(out)


def render_decode_error(err: MqttDecodeError) -> str:
    lines = [f"错误：无法解析 CONNECT 报文：{err.reason}"]
    if err.detail:
        lines.append(f"  详情        : {err.detail}")
    if err.field:
        lines.append(f"  字段        : {err.field}（起始偏移 {err.field_offset}）")
    lines.append(f"  出错偏移    : {err.offset}")
    lines.append(f"  前 32 字节  : {err.hexdump}")
    if err.reason == "unexpected frame type":
        lines.append("  设备可能没有发 CONNECT，或者先到达的是别的报文 / 非 MQTT 流量。")
    return "\n".join(lines)


def render_timeout_error(err: CaptureTimeoutError, settings: Optional[CaptureSettings] = None) -> str:
    port = settings.port if settings else "<port>"
    forward = settings.forward_port if settings else 443
    hostname = (settings.device_hostname if settings else None) or "<设备连接的云端域名>"
    lines = [f"错误：没有抓到数据（0 字节）：{err}"]
    if err.peer_connected:
        lines.append("  设备完成了 TLS 握手但没有发送数据，可能在等待别的协议。")
    lines.append(f"  - 确认 DNS 劫持生效：nslookup {hostname}")
    lines.append(f"  - 确认宿主机端口 {forward} 已转发到 {port}")
    lines.append("  - 将设备完全断电重启后再试一次")
    return "\n".join(lines)


def render_setup_error(err: CaptureSetupError) -> str:
    lines = [f"错误：{err}"]
    if err.remedy:
        lines.append(f"  处理：{err.remedy}")
    return "\n".join(lines)
