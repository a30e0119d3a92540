"""
core/log.py — 日志配置

• 根日志器统一配置一次，子模块通过 get_logger(__name__) 继承
• trace_id 存放于 ContextVar：HTTP 请求由中间件设置，后台任务用 trace_ctx()
• 格式: 时间 [级别] [trace_id] 模块.函数:行号 - 消息

    from core.log import get_logger
    logger = get_logger(__name__)
"""

import logging
import logging.handlers
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Generator, Mapping, Optional

try:
    import colorlog
except ImportError:
    colorlog = None

from core.config import cfg

_trace_id_var: ContextVar[str] = ContextVar("trace_id", default="-")

TRACE_HEADER = "X-Request-Id"


def _new_trace_id() -> str:
    return uuid.uuid4().hex[:8]


def _clean_trace_id(tid: Optional[str]) -> str:
    return str(tid or "").strip()[:16] or _new_trace_id()


def set_trace_id(tid: Optional[str] = None) -> str:
    tid = _clean_trace_id(tid)
    _trace_id_var.set(tid)
    return tid


def get_trace_id() -> str:
    return _trace_id_var.get()


def trace_id_from_headers(headers: Mapping[str, str]) -> str:
    """优先沿用调用方传入的请求 ID，便于跨服务串联日志。"""
    return set_trace_id(headers.get(TRACE_HEADER) or headers.get(TRACE_HEADER.lower()))


@contextmanager
def trace_ctx(trace_id: Optional[str] = None) -> Generator[str, None, None]:
    token = _trace_id_var.set(_clean_trace_id(trace_id))
    try:
        yield _trace_id_var.get()
    finally:
        _trace_id_var.reset(token)


_FMT = "%(asctime)s [%(levelname)-5s] [%(trace_id)s] %(name)s.%(funcName)s:%(lineno)d - %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"
_APP_HANDLER_MARKER = "_is_app_log_handler"


class _TraceIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = _trace_id_var.get()
        return True


_trace_filter = _TraceIdFilter()


def _console_handler(level: int) -> logging.Handler:
    if colorlog:
        handler = colorlog.StreamHandler(stream=sys.stdout)
        handler.setFormatter(
            colorlog.ColoredFormatter(
                "%(log_color)s" + _FMT,
                datefmt=_DATE_FMT,
                log_colors={
                    "DEBUG": "cyan",
                    "INFO": "green",
                    "WARNING": "yellow",
                    "ERROR": "red",
                    "CRITICAL": "red,bg_white",
                },
            )
        )
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_FMT, datefmt=_DATE_FMT))
    handler.setLevel(level)
    return handler


def setup_logging(level_name: str = "", log_file: str = "") -> None:
    """向根日志器注册 handler（幂等，uvicorn --reload 不会重复添加）。"""
    root = logging.getLogger()
    if any(getattr(h, _APP_HANDLER_MARKER, False) for h in root.handlers):
        return

    level = logging.getLevelName(str(level_name or cfg.get("log.level", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO
    root.setLevel(level)

    handlers = [_console_handler(level)]
    log_file = log_file or cfg.get("log.file", "")
    if log_file:
        fh = logging.handlers.RotatingFileHandler(
            f"{log_file}.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=7,
            encoding="utf-8",
        )
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(_FMT, datefmt=_DATE_FMT))
        handlers.append(fh)

    for handler in handlers:
        handler.addFilter(_trace_filter)
        setattr(handler, _APP_HANDLER_MARKER, True)
        root.addHandler(handler)


setup_logging()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
