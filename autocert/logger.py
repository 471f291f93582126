"""
Centralized logging setup and configuration.

Provides colored, structured console logging for certificate issuance,
renewal and nginx deployment runs.
"""

import logging
import os
import sys
from typing import Optional


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DEFAULT_LOGGER_NAME = "AutoCert"


class ColoredFormatter(logging.Formatter):
    """
    Formatter that colors the level name (and warnings/errors) on a terminal.
    """

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, fmt: str = None, use_colors: bool = True):
        super().__init__(fmt or LOG_FORMAT)
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_colors:
            return super().format(record)

        original_levelname = record.levelname
        original_msg = record.msg
        color = self.COLORS.get(original_levelname, "")

        record.levelname = f"{color}{original_levelname}{self.RESET}"
        if original_levelname in ("WARNING", "ERROR", "CRITICAL"):
            record.msg = f"{color}{original_msg}{self.RESET}"

        try:
            return super().format(record)
        finally:
            record.levelname = original_levelname
            record.msg = original_msg


class StructuredLogger(logging.Logger):
    """
    Logger with helpers for the section/step layout of a certificate run.
    """

    def section(self, title: str) -> None:
        """Log a section header."""
        self.info("")
        self.info("=" * 60)
        self.info(title)
        self.info("=" * 60)

    def subsection(self, title: str) -> None:
        """Log a subsection header."""
        self.info("")
        self.info(f"--- {title} ---")

    def success(self, message: str) -> None:
        self.info(f"[OK] {message}")

    def failure(self, message: str) -> None:
        self.error(f"[FAIL] {message}")

    def step(self, domain: str, state: str, detail: str = "") -> None:
        """
        Log an issuance state transition for a domain.

        Args:
            domain: Domain being processed
            state: New state name
            detail: Optional extra information
        """
        suffix = f" - {detail}" if detail else ""
        self.debug(f"  [{domain}] -> {state}{suffix}")


_logger: Optional[StructuredLogger] = None


def _level_from_env(default: int) -> int:
    """Resolve the log level from AUTO_CERT_LOG_LEVEL, if set."""
    value = os.environ.get("AUTO_CERT_LOG_LEVEL", "").upper()
    level = logging.getLevelName(value) if value else None
    return level if isinstance(level, int) else default


def setup_logger(
    name: str = DEFAULT_LOGGER_NAME,
    verbose: bool = False,
    use_colors: bool = True,
    log_file: Optional[str] = None,
) -> StructuredLogger:
    """
    Setup and configure the global logger.

    Args:
        name: Logger name
        verbose: Enable debug-level logging (overrides AUTO_CERT_LOG_LEVEL)
        use_colors: Enable colored output
        log_file: Optional file path for log output

    Returns:
        Configured StructuredLogger instance
    """
    global _logger

    logging.setLoggerClass(StructuredLogger)
    logger = logging.getLogger(name)
    logger.__class__ = StructuredLogger

    level = logging.DEBUG if verbose else _level_from_env(logging.INFO)
    logger.setLevel(level)
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColoredFormatter(use_colors=use_colors))
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    _logger = logger
    return logger


def get_logger() -> StructuredLogger:
    """
    Get the global logger instance, creating a default one on first use.

    Returns:
        The configured StructuredLogger instance
    """
    global _logger

    if _logger is None:
        _logger = setup_logger()

    return _logger


def set_level(level_name: str) -> None:
    """
    Apply a level name such as "debug" or "warning" to the global logger
    and its handlers. Unknown names are ignored.
    """
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        return

    logger = get_logger()
    logger.setLevel(level)
    for handler in logger.handlers:
        handler.setLevel(level)
