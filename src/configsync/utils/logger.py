#!/usr/bin/env python3
"""
Logging utilities for configsync.

This module provides the named-logger registry used across the engine. Console
output goes through Rich by default, or through a colorama-coloured plain
formatter for terminals and collectors that do not want Rich markup. A
rotating file log always captures DEBUG output.
"""

import sys
import logging
import logging.handlers
from pathlib import Path
from typing import Dict, Optional

from colorama import init as colorama_init, Fore, Style
from rich.console import Console
from rich.logging import RichHandler

from .platform import get_config_dir

colorama_init()

ROOT_LOGGER_NAME = 'configsync'

FILE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - "
    "%(filename)s:%(lineno)d - %(message)s"
)
FILE_DATEFMT = '%Y-%m-%d %H:%M:%S'


class ColoredFormatter(logging.Formatter):
    """Plain console formatter that colours the level name."""

    COLORS = {
        'DEBUG': Fore.CYAN,
        'INFO': Fore.GREEN,
        'WARNING': Fore.YELLOW,
        'ERROR': Fore.RED,
        'CRITICAL': Fore.MAGENTA + Style.BRIGHT,
    }

    def __init__(self, fmt: str = None, datefmt: str = None, use_colors: bool = True):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_colors:
            return super().format(record)

        original_levelname = record.levelname
        color = self.COLORS.get(record.levelname, '')
        record.levelname = f"{color}{record.levelname}{Style.RESET_ALL}"
        try:
            return super().format(record)
        finally:
            record.levelname = original_levelname


def _build_console_handler(plain: bool) -> logging.Handler:
    if plain:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(ColoredFormatter(
            "[%(levelname)s] %(name)s: %(message)s",
            use_colors=sys.stderr.isatty(),
        ))
    else:
        handler = RichHandler(
            console=Console(stderr=True),
            show_time=False,
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
    handler.set_name('console')
    return handler


class ConfigSyncLogger:
    """Thin wrapper around a stdlib logger living under the configsync root."""

    def __init__(self, name: str = ROOT_LOGGER_NAME):
        self.name = name
        self.logger = logging.getLogger(name)

        # Child loggers propagate to the root one, which owns the handlers.
        if name == ROOT_LOGGER_NAME and not self.logger.handlers:
            self._setup_handlers()

    def _setup_handlers(self):
        """Setup logging handlers for console and file output."""
        console_handler = _build_console_handler(plain=False)
        console_handler.setLevel(logging.INFO)
        self.logger.addHandler(console_handler)
        self._setup_file_handler()
        self.logger.setLevel(logging.DEBUG if self._has_file_handler() else logging.INFO)

    def _setup_file_handler(self):
        """Setup the rotating file handler under the user config dir."""
        try:
            log_dir = get_config_dir() / 'logs'
            log_dir.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                log_dir / 'configsync.log',
                maxBytes=5 * 1024 * 1024,  # 5MB
                backupCount=5
            )
        except OSError as e:
            self.logger.warning(f"Could not setup file logging: {e}")
            return

        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATEFMT))
        file_handler.setLevel(logging.DEBUG)
        file_handler.set_name('file')
        self.logger.addHandler(file_handler)

    def use_plain_console(self):
        """Replace the Rich console handler with the colorama formatter."""
        for handler in list(self.logger.handlers):
            if handler.get_name() == 'console':
                level = handler.level
                self.logger.removeHandler(handler)
                plain_handler = _build_console_handler(plain=True)
                plain_handler.setLevel(level)
                self.logger.addHandler(plain_handler)

    def set_level(self, level: str):
        """Set the logging level for the logger and its console handler."""
        log_level = getattr(logging, level.upper(), logging.INFO)
        self.logger.setLevel(logging.DEBUG if self._has_file_handler() else log_level)

        for handler in self.logger.handlers:
            if handler.get_name() == 'console':
                handler.setLevel(log_level)

    def _has_file_handler(self) -> bool:
        return any(handler.get_name() == 'file' for handler in self.logger.handlers)

    def debug(self, message: str, *args, **kwargs):
        self.logger.debug(message, *args, **kwargs)

    def info(self, message: str, *args, **kwargs):
        self.logger.info(message, *args, **kwargs)

    def warning(self, message: str, *args, **kwargs):
        self.logger.warning(message, *args, **kwargs)

    def error(self, message: str, *args, **kwargs):
        self.logger.error(message, *args, **kwargs)

    def critical(self, message: str, *args, **kwargs):
        self.logger.critical(message, *args, **kwargs)

    def exception(self, message: str, *args, **kwargs):
        """Log exception with traceback."""
        self.logger.exception(message, *args, **kwargs)


# Global logger instances
_loggers: Dict[str, ConfigSyncLogger] = {}


def get_logger(name: str = ROOT_LOGGER_NAME) -> ConfigSyncLogger:
    """Get or create a logger instance.

    Module names under ``configsync.`` become children of the root logger, so
    the root handlers are installed the first time any logger is requested.
    """
    if ROOT_LOGGER_NAME not in _loggers:
        _loggers[ROOT_LOGGER_NAME] = ConfigSyncLogger(ROOT_LOGGER_NAME)
    if name not in _loggers:
        _loggers[name] = ConfigSyncLogger(name)
    return _loggers[name]


def setup_logging(
    level: str = 'INFO',
    log_file: Optional[Path] = None,
    verbose: bool = False,
    plain: bool = False
):
    """Setup logging configuration."""
    if verbose:
        level = 'DEBUG'

    logger = get_logger()
    if plain:
        logger.use_plain_console()
    logger.set_level(level)

    if log_file:
        log_file = Path(log_file)
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
        except OSError as e:
            logger.warning(f"Could not setup custom log file {log_file}: {e}")
            return

        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATEFMT))
        file_handler.setLevel(logging.DEBUG)
        logger.logger.addHandler(file_handler)
        logger.info(f"Logging to file: {log_file}")
