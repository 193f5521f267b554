# capture_main.py
"""
=========================================
MQTT CONNECT 凭据抓取 — 主程序入口
=========================================

子命令：
  listen   （默认）TLS 监听一次，抓取设备上电后的第一个报文并解析 CONNECT
  parse    解析已保存的原始字节文件（例如 openssl s_server -quiet 的输出）
  gen-cert 为设备连接的云端域名生成自签名证书

退出码：
  0 成功；2 环境 / 配置错误；3 未抓到数据；4 报文解析失败
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional, Sequence

import yaml

from commons.base_logger import BaseLogger, set_default_level
from mydataclass.capture_settings import CaptureSettings
from mydataclass.connect_frame import ConnectFrame
from sniffer.capture import TlsCaptureListener
from sniffer.errors import (
    CaptureError,
    CaptureSetupError,
    CaptureTimeoutError,
    MqttDecodeError,
)
from sniffer.mqtt_codec import MqttCodec
from sniffer.port_check import PortInUse, ss_port_in_use
from sniffer.report import (
    render_decode_error,
    render_frame,
    render_guidance,
    render_setup_error,
    render_timeout_error,
)
from sniffer.setting import build_settings, load_log_level
from tools.cert_gen import generate_self_signed_cert

EXIT_OK = 0
SUBCOMMANDS = ("listen", "parse", "gen-cert")

_log = BaseLogger(name="mqtt_capture")


# ╔══════════════════════════════════════════════════╗
# ║                    参数解析                      ║
# ╚══════════════════════════════════════════════════╝
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="mqtt-capture",
        description="TLS 终止抓取 IoT 设备的 MQTT CONNECT 报文并解析其中的凭据",
    )
    p.add_argument("--config", default=None, help="YAML 配置文件（默认 config/capture.yaml）")
    p.add_argument("-v", "--verbose", action="store_true", help="输出 DEBUG 日志")

    # 子命令里也能写 --config / -v；SUPPRESS 保证不覆盖主解析器的值
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=argparse.SUPPRESS)
    common.add_argument("-v", "--verbose", action="store_true", default=argparse.SUPPRESS)

    sub = p.add_subparsers(dest="command")

    listen = sub.add_parser("listen", parents=[common], help="监听并抓取一次（默认子命令）")
    _add_listen_args(listen)

    parse = sub.add_parser("parse", parents=[common], help="解析已保存的原始字节文件")
    parse.add_argument("file", help="原始字节文件路径")
    parse.add_argument("--json", action="store_true", help="以 JSON 输出解析结果")

    gen = sub.add_parser("gen-cert", parents=[common], help="生成自签名证书")
    gen.add_argument("--hostname", required=True, help="设备连接的云端域名（CN / SAN）")
    gen.add_argument("--alt-name", action="append", default=[], help="额外 SAN 域名，可重复")
    gen.add_argument("--cert", default=None, help="证书输出路径（默认 certs/<hostname>.crt）")
    gen.add_argument("--key", default=None, help="私钥输出路径（默认 certs/<hostname>.key）")
    gen.add_argument("--days", type=int, default=3650)
    gen.add_argument("--overwrite", action="store_true")
    return p


def _add_listen_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--host", default=None, help="监听地址")
    p.add_argument("--port", type=int, default=None, help="监听端口（默认 8883）")
    p.add_argument("--cert", default=None, help="PEM 证书")
    p.add_argument("--key", default=None, help="PEM 私钥")
    p.add_argument("--timeout", type=float, default=None, help="最长等待秒数（默认 60）")
    p.add_argument("--tls-version", choices=["1.2", "1.3", "auto"], default=None)
    p.add_argument("--stop-on-frame", action="store_true", default=None,
                   help="收齐一个完整报文就结束，不等设备断开")
    p.add_argument("--json", action="store_true", help="以 JSON 输出解析结果")


# ╔══════════════════════════════════════════════════╗
# ║                    业务流程                      ║
# ╚══════════════════════════════════════════════════╝
def run_capture(settings: CaptureSettings, *, port_in_use: PortInUse = ss_port_in_use) -> ConnectFrame:
    """抓一次 + 解析；错误原样抛给 main 统一处理。"""
    listener = TlsCaptureListener.from_settings(settings, port_in_use=port_in_use)

    async def _listen() -> bytes:
        async with listener:
            # 监听已就绪才提示操作员重启设备；提示走 stderr，stdout 只放报告
            print(f"  正在 TLS 端口 {settings.port} 上监听，最长 {settings.timeout:g} 秒。", file=sys.stderr)
            print("  → 现在给设备断电重启（拔掉电源，等 2 秒，再插上）。", file=sys.stderr)
            print(file=sys.stderr, flush=True)
            return await listener.receive()

    data = asyncio.run(_listen())
    _log.log_info(f"抓到 {len(data)} 字节，开始解析 MQTT CONNECT 报文")
    return MqttCodec.decode_connect(data)


def emit_frame(frame: ConnectFrame, settings: Optional[CaptureSettings], as_json: bool) -> None:
    if as_json:
        print(frame.to_json(indent=2))
        return
    print(render_frame(frame))
    print()
    print(render_guidance(frame, settings))


def _cmd_listen(args: argparse.Namespace, port_in_use: PortInUse) -> int:
    cli = {
        "host": args.host,
        "port": args.port,
        "cert_file": args.cert,
        "key_file": args.key,
        "timeout": args.timeout,
        "tls_version": args.tls_version,
        "stop_on_frame": args.stop_on_frame,
    }
    try:
        settings = build_settings(cli, config_file=args.config)
    except (ValueError, TypeError, OSError, yaml.YAMLError) as e:
        raise CaptureSetupError(f"配置无效: {e}", remedy="检查配置文件 / MQTT_CAPTURE_* 环境变量 / 命令行参数") from e

    try:
        frame = run_capture(settings, port_in_use=port_in_use)
    except CaptureTimeoutError as e:
        _log.log_error(str(e))
        print(render_timeout_error(e, settings), file=sys.stderr)
        return e.exit_code
    emit_frame(frame, settings, args.json)
    return EXIT_OK


def _cmd_parse(args: argparse.Namespace) -> int:
    path = Path(args.file)
    try:
        data = path.read_bytes()
    except OSError as e:
        raise CaptureSetupError(f"无法读取 {path}: {e}") from e
    _log.log_info(f"读取 {len(data)} 字节: {path}")

    try:
        settings = build_settings(config_file=args.config)
    except (ValueError, TypeError, OSError, yaml.YAMLError) as e:
        # 离线解析不需要监听配置，broker 指引退回默认值
        _log.log_debug(f"未加载完整配置，指引使用默认值: {e}")
        settings = None

    frame = MqttCodec.decode_connect(data)
    emit_frame(frame, settings, args.json)
    return EXIT_OK


def _cmd_gen_cert(args: argparse.Namespace) -> int:
    cert = args.cert or str(Path("certs") / f"{args.hostname}.crt")
    key = args.key or str(Path("certs") / f"{args.hostname}.key")
    try:
        generate_self_signed_cert(
            args.hostname, cert, key,
            alt_names=args.alt_name, days=args.days, overwrite=args.overwrite,
        )
    except (FileExistsError, OSError) as e:
        raise CaptureSetupError(str(e)) from e
    print(f"  证书: {cert}")
    print(f"  私钥: {key}（请妥善保管）")
    print("  下一步：把这两个文件挂载进 broker 容器，并在抓包配置中指向它们。")
    return EXIT_OK


# ╔══════════════════════════════════════════════════╗
# ║                      main()                      ║
# ╚══════════════════════════════════════════════════╝
def main(argv: Optional[Sequence[str]] = None, *, port_in_use: PortInUse = ss_port_in_use) -> int:
    """
    一次运行只做一件事；所有预期内错误都在这里转成诊断输出与非零退出码。
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if not any(a in SUBCOMMANDS or a in ("-h", "--help") for a in argv):
        argv.insert(0, "listen")
    args = build_parser().parse_args(argv)

    try:
        set_default_level("DEBUG" if args.verbose else load_log_level(args.config))
    except (ValueError, OSError, yaml.YAMLError) as e:
        _log.log_warning(f"日志级别配置无效，使用 INFO: {e}")
        set_default_level("INFO")

    try:
        if args.command == "parse":
            return _cmd_parse(args)
        if args.command == "gen-cert":
            return _cmd_gen_cert(args)
        return _cmd_listen(args, port_in_use)
    except CaptureSetupError as e:
        _log.log_error(str(e))
        print(render_setup_error(e), file=sys.stderr)
        return e.exit_code
    except MqttDecodeError as e:
        _log.log_error(str(e))
        print(render_decode_error(e), file=sys.stderr)
        return e.exit_code
    except CaptureError as e:
        _log.log_error(str(e))
        print(f"错误：{e}", file=sys.stderr)
        return e.exit_code


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(130)
