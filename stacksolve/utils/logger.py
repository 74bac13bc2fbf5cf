"""Logging utilities"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

# Path of the active log file (None until a file handler is attached)
_log_file_path = None


def _writable(log_dir: Path) -> bool:
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        test_file = log_dir / ".test_write"
        test_file.write_text("test")
        test_file.unlink()
        return True
    except (PermissionError, OSError):
        return False


def get_logs_directory() -> Path:
    """Get logs directory with fallbacks"""
    # Explicit location first
    env_dir = os.environ.get("STACKSOLVE_LOG_DIR")
    if env_dir and _writable(Path(env_dir)):
        return Path(env_dir)

    # Fallback 1: local logs directory
    log_dir = Path("logs")
    if _writable(log_dir):
        return log_dir

    # Fallback 2: current directory
    return Path(".")


def setup_logger(name: str = "stacksolve", level: int = logging.INFO,
                 log_dir: Optional[Path] = None) -> logging.Logger:
    """Setup logger with consistent formatting"""
    global _log_file_path

    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        # Console handler
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

        # File handler
        try:
            log_dir = Path(log_dir) if log_dir is not None else get_logs_directory()
            log_dir.mkdir(parents=True, exist_ok=True)
            log_file = log_dir / "stacksolve.log"

            file_handler = logging.FileHandler(str(log_file), mode='a', encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

            _log_file_path = log_file
            logger.debug(f"Logging to: {log_file.absolute()}")
        except OSError as e:
            # If file logging fails, continue without it
            error_msg = f"Could not set up file logging: {e}"
            print(error_msg, file=sys.stderr)
            logger.warning(error_msg)

    return logger


def get_log_file_path() -> Optional[Path]:
    """Get the path to the log file"""
    return _log_file_path
