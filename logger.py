"""
SOCKS5 引擎 - 日志管理模块

功能概述:
本模块提供了日志管理功能，包括：
1. 多级别日志记录（DEBUG, INFO, WARNING, ERROR, CRITICAL）
2. 日志轮转（按日期/大小）
3. 结构化日志格式（时间戳、级别、上下文）
4. 配置文件和环境变量支持
5. 可选的 systemd journal 输出

引擎内部模块只使用 logging.getLogger()，由嵌入方调用
LoggerManager().initialize() 配置处理器。

使用示例:
    from logger import LoggerManager, add_context

    LoggerManager().initialize(config_file='config.yaml')
    add_context(peer='127.0.0.1:51234')
"""

import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from config import load_config

try:
    from systemd.journal import JournalHandler
    HAS_JOURNAL = True
except ImportError:
    HAS_JOURNAL = False


DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"


@dataclass
class LogConfig:
    """
    日志配置数据类

    Attributes:
        level: 日志级别（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        log_dir: 日志存储目录
        log_file: 日志文件名
        max_bytes: 单个日志文件最大大小（字节）
        backup_count: 保留的备份文件数量
        rotation_type: 轮转类型（size, date, none）
        format_string: 日志格式字符串
        enable_console: 是否输出到控制台
        enable_file: 是否输出到文件
        enable_journal: 是否输出到系统日志
        context_fields: 上下文字段列表
    """
    level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "socks5-engine.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10
    rotation_type: str = "size"  # size, date, none
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    enable_journal: bool = False
    context_fields: list = None

    def __post_init__(self):
        if self.context_fields is None:
            self.context_fields = ["peer", "target"]


class ContextFilter(logging.Filter):
    """
    上下文过滤器

    为日志记录添加上下文信息

    记录自身带有的字段（例如通过 LoggerAdapter 的 extra 传入）优先于
    add_context() 设置的全局上下文。
    """

    def __init__(self, context_fields: list = None):
        super().__init__()
        self.context_fields = context_fields or []
        self.context_data = {}

    def add_context(self, **kwargs):
        self.context_data.update(kwargs)

    def clear_context(self):
        self.context_data.clear()

    def filter(self, record):
        context_parts = []
        for field in self.context_fields:
            value = getattr(record, field, None)
            if value is None:
                value = self.context_data.get(field, "-")
            context_parts.append(f"{field}={value}")

        record.context = " | ".join(context_parts) or "-"
        return True


class LogFormatter(logging.Formatter):
    """
    自定义日志格式化器

    支持彩色输出
    """

    COLORS = {
        'DEBUG': '\033[36m',      # 青色
        'INFO': '\033[32m',       # 绿色
        'WARNING': '\033[33m',    # 黄色
        'ERROR': '\033[31m',      # 红色
        'CRITICAL': '\033[35m',   # 紫色
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, style='%', use_color=False):
        super().__init__(fmt, datefmt, style)
        self.use_color = use_color

    def format(self, record):
        if not hasattr(record, 'context'):
            record.context = "-"

        levelname = record.levelname
        if self.use_color and levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


def _env_bool(name: str, default: Any) -> bool:
    return os.getenv(name, str(default)).lower() == 'true'


class LoggerManager:
    """
    日志管理器

    管理日志系统的初始化和配置（单例）
    """

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self.config = None
            self.context_filter = None
            self.handlers = []
            self.loggers = {}
            self._initialized = True

    def load_config(self, config_file: Optional[str] = None) -> LogConfig:
        """
        加载日志配置

        读取配置文件的 logging 部分，LOG_* 环境变量优先。

        Args:
            config_file: 配置文件路径（可选）

        Returns:
            LogConfig: 日志配置对象
        """
        section: Dict[str, Any] = {}
        if config_file:
            section = load_config(config_file).get('logging') or {}
        defaults = LogConfig()

        return LogConfig(
            level=os.getenv('LOG_LEVEL', section.get('level', defaults.level)),
            log_dir=os.getenv('LOG_DIR', section.get('log_dir', defaults.log_dir)),
            log_file=os.getenv('LOG_FILE', section.get('log_file', defaults.log_file)),
            max_bytes=int(os.getenv('LOG_MAX_BYTES', section.get('max_bytes', defaults.max_bytes))),
            backup_count=int(os.getenv('LOG_BACKUP_COUNT', section.get('backup_count', defaults.backup_count))),
            rotation_type=os.getenv('LOG_ROTATION_TYPE', section.get('rotation_type', defaults.rotation_type)),
            format_string=os.getenv('LOG_FORMAT', section.get('format_string', defaults.format_string)),
            enable_console=_env_bool('LOG_ENABLE_CONSOLE', section.get('enable_console', defaults.enable_console)),
            enable_file=_env_bool('LOG_ENABLE_FILE', section.get('enable_file', defaults.enable_file)),
            enable_journal=_env_bool('LOG_ENABLE_JOURNAL', section.get('enable_journal', defaults.enable_journal)),
            context_fields=section.get('context_fields', defaults.context_fields)
        )

    def initialize(self, config: Optional[LogConfig] = None, config_file: Optional[str] = None):
        """
        初始化日志系统

        Args:
            config: 日志配置对象（可选）
            config_file: 配置文件路径（可选）
        """
        self.config = config or self.load_config(config_file)
        self.context_filter = ContextFilter(self.config.context_fields)

        root_logger = logging.getLogger()
        root_logger.setLevel(self._level())

        for handler in self.handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self.handlers = []

        if self.config.enable_console:
            self._add_handler(root_logger, logging.StreamHandler(sys.stdout), sys.stdout.isatty())

        if self.config.enable_file:
            Path(self.config.log_dir).mkdir(parents=True, exist_ok=True)
            self._add_handler(root_logger, self._file_handler(), False)

        if self.config.enable_journal and HAS_JOURNAL:
            self._add_handler(root_logger, JournalHandler(), False)

    def _level(self) -> int:
        return getattr(logging, self.config.level.upper(), logging.INFO)

    def _add_handler(self, logger: logging.Logger, handler: logging.Handler, use_color: bool):
        handler.setLevel(self._level())
        handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=use_color
        ))
        # 子日志记录器传播上来的记录只经过处理器上的过滤器
        handler.addFilter(self.context_filter)
        logger.addHandler(handler)
        self.handlers.append(handler)

    def _file_handler(self) -> logging.Handler:
        log_file_path = Path(self.config.log_dir) / self.config.log_file

        if self.config.rotation_type == 'size':
            return logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=self.config.max_bytes,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        if self.config.rotation_type == 'date':
            return logging.handlers.TimedRotatingFileHandler(
                filename=log_file_path,
                when='midnight',
                interval=1,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        return logging.FileHandler(filename=log_file_path, encoding='utf-8')

    def get_logger(self, name: str) -> logging.Logger:
        if name not in self.loggers:
            self.loggers[name] = logging.getLogger(name)
        return self.loggers[name]

    def add_context(self, **kwargs):
        if self.context_filter:
            self.context_filter.add_context(**kwargs)

    def clear_context(self):
        if self.context_filter:
            self.context_filter.clear_context()

    def log_exception(self, logger: logging.Logger, exc_info: bool = True):
        logger.error("发生异常", exc_info=exc_info)


def get_logger(name: str) -> logging.Logger:
    """获取日志记录器（便捷函数）"""
    return LoggerManager().get_logger(name)


def add_context(**kwargs):
    """添加上下文信息（便捷函数）"""
    LoggerManager().add_context(**kwargs)


def clear_context():
    """清除上下文信息（便捷函数）"""
    LoggerManager().clear_context()


def log_exception(logger: logging.Logger, exc_info: bool = True):
    """记录异常信息（便捷函数）"""
    LoggerManager().log_exception(logger, exc_info)
