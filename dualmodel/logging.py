"""structlog setup, called once per process from ``dualmodel.main``.

Development gets the colored console renderer; every other environment emits
JSON lines. ``LOG_FILE`` mirrors each rendered line into a file as well.
"""

from __future__ import annotations

import logging
import sys
from typing import IO

import structlog

from dualmodel.config import Settings, settings


def _level(name: str) -> int:
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


class _LogFileMirror:
    """stdout writer that also appends to a file.

    The first file error turns mirroring off; stdout logging carries on.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._file: IO[str] | None = None
        try:
            self._file = open(path, "a", encoding="utf-8")  # noqa: SIM115
        except OSError as exc:
            self._disable(f"cannot open: {exc}")

    def _disable(self, reason: str) -> None:
        self._file = None
        # Runs inside logging itself, so stderr is the only safe channel
        sys.stderr.write(f"log file {self.path!r} disabled ({reason})\n")

    def write(self, data: str) -> None:
        sys.stdout.write(data)
        if self._file is None:
            return
        try:
            self._file.write(data)
            self._file.flush()
        except (OSError, ValueError) as exc:
            self._disable(f"write failed: {exc}")

    def flush(self) -> None:
        sys.stdout.flush()


def configure_logging(config: Settings | None = None) -> None:
    config = config or settings
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if config.environment == "development":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]

    output = _LogFileMirror(config.log_file) if config.log_file else None
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(_level(config.log_level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=output),  # type: ignore[arg-type]
        cache_logger_on_first_use=True,
    )
