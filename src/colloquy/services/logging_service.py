import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from src.colloquy.config import LOGS_DIR

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s:%(funcName)s:%(lineno)d - %(message)s"


class ColorFormatter(logging.Formatter):
    """A logging formatter that adds color to console output."""

    GREY = "\x1b[38;20m"
    YELLOW = "\x1b[33;20m"
    RED = "\x1b[31;20m"
    BOLD_RED = "\x1b[31;1m"
    CYAN = "\x1b[36;20m"
    RESET = "\x1b[0m"

    FORMATS = {
        logging.DEBUG: f"{CYAN}{LOG_FORMAT}{RESET}",
        logging.INFO: f"{GREY}{LOG_FORMAT}{RESET}",
        logging.WARNING: f"{YELLOW}{LOG_FORMAT}{RESET}",
        logging.ERROR: f"{RED}{LOG_FORMAT}{RESET}",
        logging.CRITICAL: f"{BOLD_RED}{LOG_FORMAT}{RESET}",
    }

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno, LOG_FORMAT)
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


class LoggingService:
    """
    Configures centralized logging for the session core and its host application.
    """
    LOG_FILE = "colloquy.log"
    _HANDLER_MARKER = "_colloquy_handler"

    @staticmethod
    def setup_logging(
        console_level: int = logging.INFO,
        logs_dir: Optional[Path] = None,
    ) -> Path:
        """
        Configures the root logger for file and console output.
        Calling it again replaces the handlers it installed earlier.

        Args:
            console_level: Minimum level echoed to stdout.
            logs_dir: Directory for the rotating log file; defaults to LOGS_DIR.

        Returns:
            Path of the rotating log file.
        """
        target_dir = Path(logs_dir) if logs_dir else LOGS_DIR
        target_dir.mkdir(parents=True, exist_ok=True)
        log_file_path = target_dir / LoggingService.LOG_FILE

        root_logger = logging.getLogger()
        root_logger.setLevel(logging.DEBUG)
        for handler in list(root_logger.handlers):
            if getattr(handler, LoggingService._HANDLER_MARKER, False):
                root_logger.removeHandler(handler)
                handler.close()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(console_level)
        console_handler.setFormatter(ColorFormatter())

        file_handler = RotatingFileHandler(
            log_file_path, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

        for handler in (console_handler, file_handler):
            setattr(handler, LoggingService._HANDLER_MARKER, True)
            root_logger.addHandler(handler)

        logging.info("Logging service initialized.")
        return log_file_path
