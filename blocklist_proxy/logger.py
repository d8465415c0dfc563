"""Operator-facing diagnostics logging."""

import logging
from pathlib import Path
from typing import Optional


class ProxyLogger:
    """Configure the ``proxy`` logger for console output and an optional error log."""

    def __init__(self, error_log_path: Optional[str] = None, level: int = logging.INFO) -> None:
        self.error_log_path = Path(error_log_path) if error_log_path else None
        if self.error_log_path is not None:
            self.error_log_path.parent.mkdir(parents=True, exist_ok=True)
        self.logger = logging.getLogger("proxy")
        self.logger.setLevel(level)
        self.logger.propagate = False
        self._configure_handlers()

    def _configure_handlers(self) -> None:
        formatter = logging.Formatter(
            "%(asctime)s - %(levelname)s - %(message)s", "%Y-%m-%d %H:%M:%S"
        )

        if not self.logger.handlers:
            stream_handler = logging.StreamHandler()
            stream_handler.setLevel(logging.INFO)
            stream_handler.setFormatter(formatter)
            self.logger.addHandler(stream_handler)

            if self.error_log_path is not None:
                error_handler = logging.FileHandler(
                    self.error_log_path, mode="a", encoding="utf-8"
                )
                error_handler.setLevel(logging.ERROR)
                error_handler.setFormatter(formatter)
                self.logger.addHandler(error_handler)

    def info(self, message: str, *args: object) -> None:
        self.logger.info(message, *args)

    def warning(self, message: str, *args: object) -> None:
        self.logger.warning(message, *args)

    def error(self, message: str, *args: object) -> None:
        self.logger.error(message, *args)

    def exception(self, message: str, *args: object) -> None:
        self.logger.exception(message, *args)

    def close(self) -> None:
        for handler in list(self.logger.handlers):
            handler.flush()
            handler.close()
            self.logger.removeHandler(handler)
