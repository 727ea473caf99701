"""结构化日志 - 基于 structlog

请求链路上的 request_id / conversation_id / user_id 通过 contextvars 传递，
由 add_context_info 自动写入每条日志。
"""
import structlog
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from datetime import datetime
from typing import List, Optional
import contextvars

request_id_var = contextvars.ContextVar("request_id", default=None)
conversation_id_var = contextvars.ContextVar("conversation_id", default=None)
user_id_var = contextvars.ContextVar("user_id", default=None)

_CONTEXT_VARS = (
    ("request_id", request_id_var),
    ("conversation_id", conversation_id_var),
    ("user_id", user_id_var),
)

# 第三方库只保留 WARNING 及以上
_NOISY_LOGGERS = (
    "aiosqlite",
    "httpx",
    "httpcore",
    "openai",
    "langchain_core",
    "langfuse",
    "multipart",
    "uvicorn.access",
)


def add_context_info(logger, method_name, event_dict):
    """把当前请求的追踪字段写入日志（显式传入的字段优先）"""
    for key, var in _CONTEXT_VARS:
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def _build_handlers(
    level: int,
    log_dir: str,
    enable_console: bool,
    enable_file: bool,
    max_bytes: int,
    backup_count: int,
) -> List[logging.Handler]:
    formatter = logging.Formatter("%(message)s")
    handlers: List[logging.Handler] = []

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        handlers.append(console_handler)

    if enable_file:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        date_str = datetime.now().strftime("%Y%m%d")

        file_handler = RotatingFileHandler(
            log_path / f"streamchat_{date_str}.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)

        # 持久化失败等错误单独成文件，方便排查丢失的对话
        error_handler = RotatingFileHandler(
            log_path / f"streamchat_error_{date_str}.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        error_handler.setLevel(logging.ERROR)
        handlers.append(error_handler)

    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def setup_structured_logging(
    log_level: str = "INFO",
    log_dir: str = "logs",
    enable_json: bool = True,
    enable_console: bool = True,
    enable_file: bool = True,
    max_bytes: int = 20 * 1024 * 1024,
    backup_count: int = 5,
):
    """
    配置结构化日志

    Args:
        log_level: 日志级别（DEBUG/INFO/WARNING/ERROR）
        log_dir: 日志目录
        enable_json: 输出JSON（生产环境），否则彩色控制台格式
        enable_console: 输出到标准输出
        enable_file: 写入按日期命名、按大小轮转的日志文件
        max_bytes: 单个日志文件大小上限
        backup_count: 保留的轮转文件数
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    for handler in _build_handlers(level, log_dir, enable_console, enable_file, max_bytes, backup_count):
        root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_context_info,
        structlog.processors.CallsiteParameterAdder(
            {
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
                structlog.processors.CallsiteParameter.FUNC_NAME,
            }
        ),
        structlog.processors.format_exc_info,
    ]
    if enable_json:
        processors.append(structlog.processors.JSONRenderer(ensure_ascii=False))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=enable_console and sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """获取结构化日志记录器（通常传入模块名）"""
    return structlog.get_logger(name)


class LogContext:
    """在代码块内绑定追踪字段，退出时恢复原值

    用法：
        with LogContext(conversation_id=cid, user_id=uid):
            await handler.complete(turn)
    """

    def __init__(
        self,
        request_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ):
        self._values = {
            "request_id": request_id,
            "conversation_id": conversation_id,
            "user_id": user_id,
        }
        self._tokens = []

    def __enter__(self):
        for key, var in _CONTEXT_VARS:
            value = self._values[key]
            if value:
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)
