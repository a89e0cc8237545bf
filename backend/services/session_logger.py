# backend/services/session_logger.py
"""
Session logging and command timing.

Provides session-scoped log context and latency logging for gateway commands.
"""

import logging
import time
from functools import wraps
from typing import Any, Optional

from models.device import StreamKey

logger = logging.getLogger("dashlink.commands")


class SessionLogger:
    """
    Logger bound to one stream key.

    Prefixes every message with the key and passes its fields as `extra`
    so structured handlers can filter on serial/camera/profile.
    """

    def __init__(self, name: str, key: Optional[StreamKey] = None):
        self._logger = logging.getLogger(name)
        self.key = key

    def bind(self, key: Optional[StreamKey]) -> None:
        self.key = key

    def _log(self, level: int, message: str, **kwargs: Any) -> None:
        extra = dict(kwargs)
        if self.key:
            extra.update(
                serial=self.key.serial,
                camera=self.key.camera,
                profile=self.key.profile,
            )
            message = f"[{self.key}] {message}"
        self._logger.log(level, message, extra=extra)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, message, **kwargs)


def timed_command(command_name: str):
    """
    Decorator for timing async gateway commands.

    Usage:
        @timed_command("stream_status")
        async def stream_status(self, ...):
            ...
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
                duration_ms = (time.perf_counter() - start) * 1000
                logger.debug(
                    f"Command '{command_name}' completed in {duration_ms:.1f}ms"
                )
                return result
            except Exception as e:
                duration_ms = (time.perf_counter() - start) * 1000
                logger.error(
                    f"Command '{command_name}' failed after {duration_ms:.1f}ms: {e}"
                )
                raise
        return wrapper
    return decorator


def configure_logging(
    level: int = logging.INFO,
    format_string: Optional[str] = None,
) -> None:
    """
    Configure the dashlink logger tree (gateway command timings under
    dashlink.commands). It does not propagate to the root logger.

    Module loggers are named by __name__ and are not under this tree; they
    go to whatever root handler the application installs (main.py uses
    logging.basicConfig).

    Args:
        level: Logging level
        format_string: Optional custom format string
    """
    if format_string is None:
        format_string = (
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        )

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(format_string))

    root = logging.getLogger("dashlink")
    root.setLevel(level)
    root.addHandler(handler)
    root.propagate = False
