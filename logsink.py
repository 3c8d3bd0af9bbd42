from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def _resolve_level(level: str) -> int:
    try:
        return LEVELS[level.upper()]
    except KeyError:
        raise ValueError(f"Unsupported log level: {level}") from None


class _UTCFormatter(logging.Formatter):
    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return created.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class LogSink:
    def __init__(
        self,
        log_dir: Path | str = "logs",
        prefix: str = "load_test",
        include_console: bool = True,
        level: str = "INFO",
    ) -> None:
        self.log_dir = Path(log_dir)
        self.prefix = prefix
        self.include_console = include_console
        self.level = _resolve_level(level)
        self.path: Optional[Path] = None
        self._logger = logging.getLogger(f"load_test.sink.{id(self)}")
        self._logger.setLevel(logging.DEBUG)
        # Private logger: sinks never share lines and the root logger is untouched.
        self._logger.propagate = False
        self._handlers: list[logging.Handler] = []

    def start(self) -> Path:
        if self._handlers and self.path is not None:
            return self.path
        self.log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H-%M-%S-%f")[:-3]
        self.path = self.log_dir / f"{self.prefix}_{timestamp}.txt"

        file_handler = logging.FileHandler(self.path, mode="a", encoding="utf-8")
        file_handler.setFormatter(_UTCFormatter("[%(asctime)s] [%(levelname)s] %(message)s"))
        file_handler.setLevel(self.level)
        self._add_handler(file_handler)

        if self.include_console:
            stdout_handler = logging.StreamHandler(sys.stdout)
            stdout_handler.setLevel(self.level)
            stdout_handler.addFilter(lambda record: record.levelno < logging.WARNING)
            stdout_handler.setFormatter(logging.Formatter("%(message)s"))
            self._add_handler(stdout_handler)

            stderr_handler = logging.StreamHandler(sys.stderr)
            stderr_handler.setLevel(max(self.level, logging.WARNING))
            stderr_handler.setFormatter(logging.Formatter("%(message)s"))
            self._add_handler(stderr_handler)
        return self.path

    def _add_handler(self, handler: logging.Handler) -> None:
        self._logger.addHandler(handler)
        self._handlers.append(handler)

    def write(self, level: str, message: str) -> None:
        if not self._handlers:
            raise RuntimeError("LogSink is not started")
        self._logger.log(_resolve_level(level), message)

    def debug(self, message: str) -> None:
        self.write("DEBUG", message)

    def info(self, message: str) -> None:
        self.write("INFO", message)

    def warning(self, message: str) -> None:
        self.write("WARN", message)

    def error(self, message: str) -> None:
        self.write("ERROR", message)

    def stop(self) -> None:
        for handler in self._handlers:
            self._logger.removeHandler(handler)
            handler.flush()
            handler.close()
        self._handlers = []
