"""Centralized logging configuration for the telephone services."""
import logging
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional


class ServiceLogger:
    """Structured service logger with an in-memory buffer for the /logs endpoint."""

    def __init__(
        self,
        service_name: str,
        level: str = "INFO",
        log_dir: Optional[str] = "logs",
        max_buffer_size: int = 100,
    ):
        self.service_name = service_name
        self.logger = logging.getLogger(service_name)
        self.logger.setLevel(logging.DEBUG)

        # Handlers are shared per logger name, so only attach them once
        if not self.logger.handlers:
            formatter = logging.Formatter(
                '%(asctime)s | %(name)s | %(levelname)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )

            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

            if log_dir:
                try:
                    Path(log_dir).mkdir(parents=True, exist_ok=True)
                    file_handler = logging.FileHandler(Path(log_dir) / f"{service_name}.log")
                    file_handler.setLevel(logging.DEBUG)
                    file_handler.setFormatter(formatter)
                    self.logger.addHandler(file_handler)
                except OSError as e:
                    self.logger.warning(f"File logging disabled for {service_name}: {e}")

            self.logger.propagate = False

        self.log_buffer = []
        self.max_buffer_size = max_buffer_size
        self._buffer_lock = threading.Lock()

    def _add_to_buffer(self, level: str, message: str, extra: Optional[dict] = None):
        """Add log entry to in-memory buffer."""
        entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "service": self.service_name,
            "message": message,
            "extra": extra or {}
        }
        with self._buffer_lock:
            self.log_buffer.append(entry)
            if len(self.log_buffer) > self.max_buffer_size:
                self.log_buffer.pop(0)

    def _log(self, level: int, message: str, extra: dict, exc_info: bool = False):
        if extra:
            details = " ".join(f"{k}={v}" for k, v in extra.items())
            self.logger.log(level, f"{message} | {details}", exc_info=exc_info)
        else:
            self.logger.log(level, message, exc_info=exc_info)
        self._add_to_buffer(logging.getLevelName(level), message, extra)

    def debug(self, message: str, **kwargs: Any):
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs: Any):
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs: Any):
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, exc_info: bool = False, **kwargs: Any):
        self._log(logging.ERROR, message, kwargs, exc_info=exc_info)

    def critical(self, message: str, **kwargs: Any):
        self._log(logging.CRITICAL, message, kwargs)

    def get_recent_logs(self, limit: int = 50):
        """Get recent log entries for dashboard."""
        with self._buffer_lock:
            return list(self.log_buffer[-limit:]) if limit > 0 else []

    def clear_logs(self):
        """Clear the log buffer."""
        with self._buffer_lock:
            self.log_buffer = []
