#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Logging utilities module
Colored console output and log file setup for registration sessions
"""

import logging
import os
import sys
from datetime import datetime

LOGGER_NAME = "sfa"


class ColoredFormatter(logging.Formatter):
    """Colored log formatter for terminal output"""

    COLORS = {
        'DEBUG': '\033[36m',     # cyan
        'INFO': '\033[32m',      # green
        'WARNING': '\033[33m',   # yellow
        'ERROR': '\033[31m',     # red
        'CRITICAL': '\033[35m',  # magenta
        'RESET': '\033[0m'
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record):
        formatted_time = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        component = record.name.split('.')[-1]

        if self.use_color:
            color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
            level = f"{color}[{record.levelname}]{self.COLORS['RESET']}"
        else:
            level = f"[{record.levelname}]"

        message = f"{level} {formatted_time} {component} - {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def setup_logging(log_level=logging.INFO, log_file=None, enable_console=True):
    """
    Configure the registration logger

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL) or its name
        log_file: Path to log file, None means do not save to file
        enable_console: Whether to enable console output

    Returns:
        The configured package logger
    """
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)
    logger.propagate = False

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(ColoredFormatter(use_color=sys.stdout.isatty()))
        logger.addHandler(console_handler)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(
            fmt='[%(levelname)s] %(asctime)s %(name)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str = None):
    """Get the package logger, or one of its children"""
    if name:
        return logging.getLogger(f"{LOGGER_NAME}.{name}")
    return logging.getLogger(LOGGER_NAME)
