"""
Unified logging system for HireChat.

Provides consistent logging across the realtime core with:
- Standardized log formats
- Console and rotating file output
- JSON output for log aggregation
- Environment presets (development, production, testing)
- A structured error channel for failures of best-effort work

Modules log through ``logging.getLogger(__name__)``; the entry point picks
the handlers.

Configuration:
    from HireChat.core.logging import configure_logging, LogConfig

    configure_logging(LogConfig(level="DEBUG", file_output=False))

    # or from HIRECHAT_ENV
    auto_configure()
"""

import json
import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

ERROR_CHANNEL = "HireChat.errors"


@dataclass
class LogConfig:
    """
    Configuration for the logging system.

    Attributes:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for log files
        console_output: Whether to output to console
        file_output: Whether to output to file
        json_output: Whether file output is written as JSON lines
        max_bytes: Maximum size of log file before rotation (bytes)
        backup_count: Number of backup files to keep
        format_string: Custom format string for log messages
        date_format: Custom date format string
        component_levels: Dict mapping logger names to log levels
    """
    level: str = "INFO"
    log_dir: str = "./logs"
    console_output: bool = True
    file_output: bool = True
    json_output: bool = False
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5
    format_string: Optional[str] = None
    date_format: str = "%Y-%m-%d %H:%M:%S"
    component_levels: Dict[str, str] = field(default_factory=dict)


class ColoredFormatter(logging.Formatter):
    """Formatter that adds color to console output."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
        'RESET': '\033[0m'
    }

    def __init__(self, fmt: str, datefmt: str = None, use_colors: bool = True):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and sys.platform != 'win32'

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_colors or record.levelname not in self.COLORS:
            return super().format(record)
        original = record.levelname
        record.levelname = f"{self.COLORS[original]}{original}{self.COLORS['RESET']}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


class JsonFormatter(logging.Formatter):
    """
    Formatter that outputs log records as JSON.

    Records logged with ``extra={"extra_data": {...}}`` have those keys
    merged into the top-level object.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        extra_data = getattr(record, 'extra_data', None)
        if isinstance(extra_data, dict):
            log_data.update(extra_data)

        return json.dumps(log_data, default=str)


def get_default_format() -> str:
    """Get the default log format string."""
    return "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_detailed_format() -> str:
    """Get a detailed log format string with more context."""
    return (
        "%(asctime)s - %(name)s - %(levelname)s - "
        "[%(filename)s:%(lineno)d - %(funcName)s] - %(message)s"
    )


class LoggingManager:
    """
    Centralized logging manager.

    Owns the root handlers so reconfiguration replaces them instead of
    stacking duplicates.
    """

    _instance: Optional['LoggingManager'] = None
    _initialized: bool = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config: Optional[LogConfig] = None
        self._handlers: List[logging.Handler] = []
        self._initialized = True

    @property
    def config(self) -> Optional[LogConfig]:
        return self._config

    def configure(self, config: LogConfig) -> None:
        """
        Configure the logging system.

        Args:
            config: Logging configuration
        """
        self._config = config
        level = getattr(logging, config.level.upper())

        if config.file_output:
            Path(config.log_dir).mkdir(parents=True, exist_ok=True)

        root_logger = logging.getLogger()
        root_logger.setLevel(level)

        for handler in self._handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self._handlers = []

        if config.console_output:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(level)
            fmt = config.format_string or get_default_format()
            console_handler.setFormatter(ColoredFormatter(fmt, config.date_format))
            self._add_handler(console_handler)

        if config.file_output:
            if config.json_output:
                formatter: logging.Formatter = JsonFormatter()
            else:
                formatter = logging.Formatter(
                    config.format_string or get_detailed_format(),
                    config.date_format
                )

            file_handler = logging.handlers.RotatingFileHandler(
                os.path.join(config.log_dir, "hirechat.log"),
                maxBytes=config.max_bytes,
                backupCount=config.backup_count,
                encoding='utf-8'
            )
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            self._add_handler(file_handler)

            # Failures reported through the error channel, always as JSON
            error_handler = logging.handlers.RotatingFileHandler(
                os.path.join(config.log_dir, "hirechat_errors.log"),
                maxBytes=config.max_bytes,
                backupCount=config.backup_count,
                encoding='utf-8'
            )
            error_handler.setLevel(logging.WARNING)
            error_handler.setFormatter(JsonFormatter())
            error_handler.addFilter(logging.Filter(ERROR_CHANNEL))
            self._add_handler(error_handler)

        for component, component_level in config.component_levels.items():
            logging.getLogger(component).setLevel(getattr(logging, component_level.upper()))

        logging.getLogger(__name__).info("Logging system configured with level: %s", config.level)

    def _add_handler(self, handler: logging.Handler) -> None:
        logging.getLogger().addHandler(handler)
        self._handlers.append(handler)


_logging_manager = LoggingManager()


def configure_logging(config: LogConfig) -> None:
    _logging_manager.configure(config)


def get_error_channel() -> logging.Logger:
    """Logger that receives failures of work nobody is waiting on."""
    return logging.getLogger(ERROR_CHANNEL)


def report_failure(source: str, exc: BaseException, **context: Any) -> None:
    """
    Report a swallowed failure through the error channel.

    Args:
        source: Short name of the operation that failed
        exc: The exception that was caught
        **context: Identifiers that help correlate the failure (user_id, chat_id, ...)
    """
    get_error_channel().error(
        "%s failed: %s",
        source,
        exc,
        exc_info=(type(exc), exc, exc.__traceback__),
        extra={"extra_data": {"source": source, "error_type": type(exc).__name__, **context}},
    )


def create_development_config() -> LogConfig:
    return LogConfig(
        level="DEBUG",
        log_dir="./logs/dev",
        console_output=True,
        file_output=True,
        max_bytes=5 * 1024 * 1024,
        backup_count=3,
        format_string=get_detailed_format(),
        component_levels={
            "websockets": "WARNING",
            "aiohttp": "WARNING",
            "uvicorn.access": "WARNING",
        }
    )


def create_production_config() -> LogConfig:
    return LogConfig(
        level="INFO",
        log_dir="./logs/prod",
        console_output=False,
        file_output=True,
        json_output=True,
        max_bytes=50 * 1024 * 1024,
        backup_count=10,
        component_levels={
            "websockets": "ERROR",
            "aiohttp": "ERROR",
            "uvicorn.access": "WARNING",
        }
    )


def create_testing_config() -> LogConfig:
    return LogConfig(
        level="DEBUG",
        log_dir="./logs/test",
        console_output=True,
        file_output=False,
        format_string="%(levelname)s - %(name)s - %(message)s",
        component_levels={
            "websockets": "ERROR",
        }
    )


def auto_configure(env: Optional[str] = None) -> None:
    """
    Automatically configure logging based on environment.

    Args:
        env: Environment name (development, production, testing).
             If None, read from HIRECHAT_ENV.
    """
    if env is None:
        env = os.environ.get("HIRECHAT_ENV", "development").lower()

    configs = {
        "development": create_development_config,
        "dev": create_development_config,
        "production": create_production_config,
        "prod": create_production_config,
        "testing": create_testing_config,
        "test": create_testing_config,
    }

    configure_logging(configs.get(env, create_development_config)())
    logging.getLogger(__name__).info("Logging auto-configured for environment: %s", env)


__all__ = [
    'ERROR_CHANNEL',
    'LogConfig',
    'LoggingManager',
    'ColoredFormatter',
    'JsonFormatter',
    'configure_logging',
    'get_error_channel',
    'report_failure',
    'create_development_config',
    'create_production_config',
    'create_testing_config',
    'auto_configure',
    'get_default_format',
    'get_detailed_format',
]
