import inspect
import logging
import os
import sys
from logging.handlers import TimedRotatingFileHandler


# 全局默认级别：由 run/capture_main.py 根据配置 / --verbose 调整
_DEFAULT_LEVEL = logging.INFO


def set_default_level(level: int | str) -> None:
    """
    设置之后新建 logger 的默认级别，并同步到已创建的 logger。

    :param level: logging 级别（int 或 "DEBUG"/"INFO" 等字符串）
    """
    global _DEFAULT_LEVEL
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"未知日志级别: {level!r}")
    _DEFAULT_LEVEL = level
    for name in BaseLogger.created:
        lg = logging.getLogger(name)
        lg.setLevel(level)
        for h in lg.handlers:
            if not isinstance(h, TimedRotatingFileHandler):
                h.setLevel(level)


class BaseLogger:
    """
    基础日志类：
    - 控制台（stderr）+ 可选按天轮转文件输出
    - 自动推断调用类名作为 logger 名
    - 统一格式化输出（含时间、文件名、函数）

    控制台走 stderr：stdout 只留给抓包报告，方便重定向 / 管道处理。
    """

    # 已创建过的 logger 名称（set_default_level 用）
    created: set[str] = set()

    def __init__(
        self,
        name: str | None = None,
        level: int | None = None,
        to_file: bool = False,
        file_path: str | None = None,
        file_level: int = logging.WARNING,
    ):
        """
        初始化日志系统。

        :param name: logger 名称（默认取调用者类名）
        :param level: 控制台日志级别（默认取全局默认级别）
        :param to_file: 是否启用文件日志
        :param file_path: 日志文件路径（可选）
        :param file_level: 文件日志的最低级别（默认 WARNING）
        """
        if name is None:
            name = self._get_caller_class_name() or self.__class__.__name__
        if level is None:
            level = _DEFAULT_LEVEL

        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)
        self.logger.propagate = False  # 防止重复输出
        BaseLogger.created.add(name)

        # 若尚未配置 handler，防止重复添加
        if not self.logger.handlers:
            formatter = logging.Formatter(
                "%(asctime)s | %(name)s | %(levelname)s | "
                "[%(filename)s:%(lineno)d %(funcName)s] | %(message)s"
            )

            ch = logging.StreamHandler(sys.stderr)
            ch.setLevel(level)
            ch.setFormatter(formatter)
            self.logger.addHandler(ch)

            if to_file:
                # 若未指定路径，默认 logs/xxx.log
                if file_path is None:
                    project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
                    log_dir = os.path.join(project_root, "logs")
                    os.makedirs(log_dir, exist_ok=True)
                    file_path = os.path.join(log_dir, f"{self.logger.name}.log")

                fh = TimedRotatingFileHandler(
                    filename=file_path,
                    when="midnight",  # 每天轮转
                    interval=1,
                    backupCount=7,  # 保留 7 天
                    encoding="utf-8",
                )
                fh.setLevel(file_level)
                fh.setFormatter(formatter)
                self.logger.addHandler(fh)

    # ------------------ 内部方法 ------------------

    def _get_caller_class_name(self) -> str | None:
        """
        获取调用者类名（跳过 BaseLogger 自身）。
        例如：TlsCaptureListener 内部 BaseLogger() -> 'TlsCaptureListener'
        """
        for frame_record in inspect.stack():
            instance = frame_record.frame.f_locals.get("self")
            if instance and instance.__class__ != self.__class__:
                return instance.__class__.__name__
        return None

    # ------------------ 对外日志接口 ------------------

    def log_info(self, message: str, exc_info: bool = False):
        """记录 INFO 日志"""
        self.logger.info(message, exc_info=exc_info, stacklevel=2)

    def log_warning(self, message: str, exc_info: bool = False):
        """记录 WARNING 日志"""
        self.logger.warning(message, exc_info=exc_info, stacklevel=2)

    def log_error(self, message: str, exc_info: bool = False):
        """记录 ERROR 日志（抓包工具的错误都是预期内的，默认不带堆栈）"""
        self.logger.error(message, exc_info=exc_info, stacklevel=2)

    def log_debug(self, message: str, exc_info: bool = False):
        """记录 DEBUG 日志"""
        self.logger.debug(message, exc_info=exc_info, stacklevel=2)
