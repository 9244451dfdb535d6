"""
Centralized logging configuration for DeviceHub.

Library modules only create module loggers; handlers are installed once by the
host application (or the CLI) through ``setup_logging``.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional, Union

DEFAULT_LOG_DIR = Path.home() / ".devicehub"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Third-party loggers that are noisy at DEBUG
QUIET_LOGGERS = ('asyncio', 'PIL', 'reportlab')


def _level(name: Union[str, int]) -> int:
    if isinstance(name, int):
        return name
    return getattr(logging, str(name).upper(), logging.INFO)


class DeviceHubLogger:
    """
    Logger configuration for DeviceHub.

    Installs a rotating file handler and a console handler on the ``devicehub``
    logger. Console output goes to stderr so that command output on stdout
    stays machine-readable.
    """

    _configured = False
    _log_file_path: Optional[Path] = None
    _console_handler: Optional[logging.Handler] = None

    @classmethod
    def configure(
        cls,
        log_level: str = "INFO",
        log_file: Optional[Path] = None,
        console_output: bool = True,
        max_file_size: int = 10 * 1024 * 1024,  # 10MB
        backup_count: int = 5
    ) -> None:
        """
        Configure logging for DeviceHub. Later calls are ignored.

        Args:
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_file: Optional path to log file. Defaults to ~/.devicehub/devicehub.log
            console_output: Whether to output logs to the console
            max_file_size: Maximum size of log file before rotation
            backup_count: Number of backup log files to keep
        """
        if cls._configured:
            return

        level = _level(log_level)
        package_logger = logging.getLogger('devicehub')
        package_logger.setLevel(level)
        formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

        if log_file is None:
            log_file = DEFAULT_LOG_DIR / "devicehub.log"
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_file_size,
                backupCount=backup_count,
                encoding='utf-8'
            )
            file_handler.setFormatter(formatter)
            file_handler.setLevel(logging.DEBUG)
            package_logger.addHandler(file_handler)
            cls._log_file_path = Path(log_file)
        except OSError as e:
            # Read-only home directories still get console logging
            print(f"Warning: Could not set up file logging: {e}", file=sys.stderr)
            cls._log_file_path = None

        if console_output:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setFormatter(formatter)
            console_handler.setLevel(level)
            package_logger.addHandler(console_handler)
            cls._console_handler = console_handler

        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

        cls._configured = True
        logging.getLogger(__name__).debug(f"Logging configured - Level: {logging.getLevelName(level)}, "
                                          f"File: {cls._log_file_path}")

    @classmethod
    def get_log_file_path(cls) -> Optional[Path]:
        """Get the current log file path."""
        return cls._log_file_path

    @classmethod
    def set_level(cls, level: str) -> None:
        """
        Change the level of the DeviceHub loggers and the console handler.

        Args:
            level: New logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        """
        log_level = _level(level)
        logging.getLogger('devicehub').setLevel(log_level)
        if cls._console_handler is not None:
            cls._console_handler.setLevel(log_level)
        logging.getLogger(__name__).info(f"Logging level changed to {logging.getLevelName(log_level)}")

    @classmethod
    def reset(cls) -> None:
        """Remove installed handlers and the level so that configure() can run again."""
        package_logger = logging.getLogger('devicehub')
        for handler in list(package_logger.handlers):
            package_logger.removeHandler(handler)
            handler.close()
        package_logger.setLevel(logging.NOTSET)
        cls._configured = False
        cls._log_file_path = None
        cls._console_handler = None


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
    console_output: bool = True
) -> None:
    """Convenience wrapper around DeviceHubLogger.configure()."""
    DeviceHubLogger.configure(
        log_level=log_level,
        log_file=log_file,
        console_output=console_output
    )
