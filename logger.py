"""
VLESS WebSocket 中继 - 日志管理模块

功能概述:
1. 控制台输出（终端下彩色）
2. 文件输出，按大小或按天轮转
3. 系统日志（systemd journal，可选）
4. 每条日志附带会话上下文（session / peer / target）

配置来自 config.yaml 的 logging 段，LOG_* 环境变量优先。

上下文保存在 ContextVar 中，asyncio 为每个任务复制一份，
并发会话写入的字段互不可见。
"""

import contextvars
import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

try:
    from systemd.journal import JournalHandler
    HAS_JOURNAL = True
except ImportError:
    HAS_JOURNAL = False

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"
DEFAULT_CONTEXT_FIELDS = ["session", "peer", "target"]
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

_log_context: contextvars.ContextVar = contextvars.ContextVar('log_context', default={})


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


@dataclass
class LogConfig:
    """
    日志配置

    Attributes:
        level: 日志级别名称
        log_dir / log_file: 日志文件位置（enable_file 时使用）
        max_bytes / backup_count: 轮转参数
        rotation_type: size（按大小）、date（每天零点）、none（不轮转）
        format_string: logging 格式串，可以引用 %(context)s
        enable_console / enable_file / enable_journal: 各输出目标的开关
        context_fields: 写入 %(context)s 的上下文字段
    """
    level: str = "INFO"
    log_dir: str = "/var/log/vless-relay"
    log_file: str = "vless-relay.log"
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 10
    rotation_type: str = "size"
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    enable_journal: bool = False
    context_fields: List[str] = field(default_factory=lambda: list(DEFAULT_CONTEXT_FIELDS))

    # (字段名, 环境变量, 类型转换)
    _SOURCES = (
        ('level', 'LOG_LEVEL', str),
        ('log_dir', 'LOG_DIR', str),
        ('log_file', 'LOG_FILE', str),
        ('max_bytes', 'LOG_MAX_BYTES', int),
        ('backup_count', 'LOG_BACKUP_COUNT', int),
        ('rotation_type', 'LOG_ROTATION_TYPE', str),
        ('format_string', 'LOG_FORMAT', str),
        ('enable_console', 'LOG_ENABLE_CONSOLE', _as_bool),
        ('enable_file', 'LOG_ENABLE_FILE', _as_bool),
        ('enable_journal', 'LOG_ENABLE_JOURNAL', _as_bool),
    )

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]], env: Optional[Mapping[str, str]] = None) -> 'LogConfig':
        """从 logging 配置段构造，环境变量覆盖同名字段"""
        if env is None:
            env = os.environ
        data = data or {}
        values = {}
        for name, env_name, convert in cls._SOURCES:
            raw = env.get(env_name, data.get(name))
            if raw is not None:
                values[name] = convert(raw)
        if data.get('context_fields'):
            values['context_fields'] = list(data['context_fields'])
        return cls(**values)

    @property
    def numeric_level(self) -> int:
        return getattr(logging, str(self.level).upper(), logging.INFO)


class ContextFilter(logging.Filter):
    """把当前任务的日志上下文渲染到 record.context"""

    def __init__(self, context_fields: Optional[List[str]] = None):
        super().__init__()
        self.context_fields = list(context_fields or [])

    def filter(self, record):
        current = _log_context.get()
        record.context = " | ".join(f"{name}={current.get(name, '-')}" for name in self.context_fields)
        return True


class LogFormatter(logging.Formatter):
    """终端输出时按级别着色；没有经过 ContextFilter 的记录 context 显示为 "-" """

    LEVEL_COLORS = {
        logging.DEBUG: '\033[36m',
        logging.INFO: '\033[32m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=DATE_FORMAT, use_color=False):
        super().__init__(fmt, datefmt)
        self.use_color = use_color

    def format(self, record):
        if not hasattr(record, 'context'):
            record.context = "-"
        color = self.LEVEL_COLORS.get(record.levelno) if self.use_color else None
        if color is None:
            return super().format(record)

        plain = record.levelname
        record.levelname = f"{color}{plain}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = plain


class LoggerManager:
    """
    日志管理器（单例）

    initialize() 替换根记录器上的全部处理器，可以重复调用。
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            instance = super().__new__(cls)
            instance.config = None
            instance.context_filter = None
            cls._instance = instance
        return cls._instance

    def config_from_dict(self, log_config: Optional[Dict[str, Any]]) -> LogConfig:
        return LogConfig.from_mapping(log_config)

    def initialize(self, config: Optional[LogConfig] = None, log_config: Optional[Dict[str, Any]] = None):
        """
        按配置重建根记录器的处理器

        Args:
            config: 日志配置对象，优先使用
            log_config: 配置文件的 logging 段
        """
        self.config = config or self.config_from_dict(log_config)
        self.context_filter = ContextFilter(self.config.context_fields)

        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)
        root.setLevel(self.config.numeric_level)

        for handler in self._build_handlers():
            handler.setLevel(self.config.numeric_level)
            handler.addFilter(self.context_filter)
            root.addHandler(handler)

    def _build_handlers(self) -> Iterator[logging.Handler]:
        cfg = self.config

        if cfg.enable_console:
            console = logging.StreamHandler(sys.stdout)
            console.setFormatter(LogFormatter(cfg.format_string, use_color=sys.stdout.isatty()))
            yield console

        if cfg.enable_file:
            file_handler = self._file_handler()
            file_handler.setFormatter(LogFormatter(cfg.format_string))
            yield file_handler

        if cfg.enable_journal:
            if HAS_JOURNAL:
                yield JournalHandler(SYSLOG_IDENTIFIER='vless-relay')
            else:
                logging.getLogger(__name__).warning("未安装 systemd-python，忽略 journal 输出")

    def _file_handler(self) -> logging.Handler:
        cfg = self.config
        directory = Path(cfg.log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / cfg.log_file

        if cfg.rotation_type == 'size':
            return logging.handlers.RotatingFileHandler(
                path, maxBytes=cfg.max_bytes, backupCount=cfg.backup_count, encoding='utf-8')
        if cfg.rotation_type == 'date':
            return logging.handlers.TimedRotatingFileHandler(
                path, when='midnight', backupCount=cfg.backup_count, encoding='utf-8')
        return logging.FileHandler(path, encoding='utf-8')

    def set_level(self, level: str):
        """运行时调整根记录器和全部处理器的级别（--debug）"""
        numeric = getattr(logging, level.upper(), logging.INFO)
        root = logging.getLogger()
        root.setLevel(numeric)
        for handler in root.handlers:
            handler.setLevel(numeric)

    def get_logger(self, name: str) -> logging.Logger:
        return logging.getLogger(name)


def get_logger(name: str) -> logging.Logger:
    return LoggerManager().get_logger(name)


# ============================================================================
# 会话上下文
# ============================================================================

def add_context(**kwargs) -> contextvars.Token:
    """
    合并字段到当前任务的日志上下文

    Returns:
        contextvars.Token: 交给 reset_context 恢复调用前的上下文
    """
    return _log_context.set({**_log_context.get(), **kwargs})


def get_context() -> Dict[str, Any]:
    return dict(_log_context.get())


def reset_context(token: contextvars.Token):
    _log_context.reset(token)


def clear_context():
    _log_context.set({})
