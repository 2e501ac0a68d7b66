"""
Logging utility for the multiworld bot

Console output stays short; the log file gets everything.
"""

import logging
import sys
from pathlib import Path
from typing import Optional


def setup_logger(name: str, log_file: Optional[str] = None, level: int = logging.INFO) -> logging.Logger:
    """
    Setup logger with console and optional file output.

    Args:
        name: Logger name (typically __name__)
        log_file: Optional path to log file
        level: Logging level (DEBUG, INFO, WARNING, ERROR)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(levelname)s - %(message)s', datefmt='%H:%M:%S')
    )
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
        )
        logger.addHandler(file_handler)

    return logger


class _GameCodeAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return f"[{self.extra['code']}] {msg}", kwargs


def session_logger(logger: logging.Logger, code: str) -> logging.LoggerAdapter:
    """Wrap a module logger so every record is prefixed with the game code."""
    return _GameCodeAdapter(logger, {"code": code})


def quiet_library_loggers(level: int = logging.WARNING) -> None:
    """discord.py is chatty at INFO (gateway resumes, rate limits)."""
    for name in ("discord", "discord.gateway", "discord.client", "discord.http"):
        logging.getLogger(name).setLevel(level)
