# 端口占用预检
from __future__ import annotations

import re
import shutil
import subprocess
from typing import Callable

from commons.base_logger import BaseLogger

# 签名：port -> 是否已被监听
PortInUse = Callable[[int], bool]

_log = BaseLogger(name="port_check")


def ss_port_in_use(port: int) -> bool:
    """
    用 `ss -tlnH sport = :<port>` 判断端口是否已被监听。

    找不到 ss 或执行失败时记警告并返回 False：此时以后续 bind 的结果为准，
    bind 失败同样会被报告为 CaptureSetupError。
    """
    exe = shutil.which("ss")
    if exe is None:
        _log.log_warning("未找到 ss 命令，跳过端口预检（以监听结果为准）")
        return False
    try:
        proc = subprocess.run(
            [exe, "-tlnH", f"sport = :{port}"],
            capture_output=True,
            text=True,
            timeout=5,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        _log.log_warning(f"ss 执行失败，跳过端口预检: {e!r}")
        return False
    if proc.returncode != 0:
        _log.log_warning(f"ss 返回码 {proc.returncode}，跳过端口预检: {proc.stderr.strip()}")
        return False
    pattern = re.compile(rf":{port}\b")
    return any(pattern.search(line) for line in proc.stdout.splitlines())
