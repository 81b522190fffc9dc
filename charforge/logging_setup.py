"""统一日志配置：根 logger 级别来自 LOG_LEVEL，并在内存中保留会话日志供下载。"""

from __future__ import annotations

import logging
from collections import deque

from charforge.config import LOG_LEVEL

DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
SESSION_LOG_CAPACITY = 2000


class SessionLogBuffer(logging.Handler):
    """把格式化后的日志行保留在有界队列中。"""

    def __init__(self, capacity: int = SESSION_LOG_CAPACITY) -> None:
        super().__init__()
        self._lines: deque[str] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            payload = getattr(record, "payload", None)
            if payload is not None:
                line = f"{line} | {payload!r}"
            self._lines.append(line)
        except Exception:  # pragma: no cover - logging must never raise
            self.handleError(record)

    def lines(self) -> list[str]:
        return list(self._lines)

    def text(self) -> str:
        return "\n".join(self._lines) + ("\n" if self._lines else "")

    def clear(self) -> None:
        self._lines.clear()


_SESSION_BUFFER = SessionLogBuffer()


def get_session_buffer() -> SessionLogBuffer:
    return _SESSION_BUFFER


def setup_logging(force: bool = False) -> None:
    """配置根 logger；幂等，force=True 时重建处理器。"""
    if getattr(setup_logging, "_configured", False) and not force:
        return

    root = logging.getLogger()
    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)

    root.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    formatter = logging.Formatter(DEFAULT_FORMAT)

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    root.addHandler(stream)

    _SESSION_BUFFER.setFormatter(formatter)
    if _SESSION_BUFFER not in root.handlers:
        root.addHandler(_SESSION_BUFFER)

    setup_logging._configured = True  # type: ignore[attr-defined]
