"""Logging helpers: an explicit per-invocation context and handler setup.

Request-scoped values (registry URL, image reference, index digest) travel
through the pipeline inside a ``LogContext`` value and are rendered by
``ContextLogger`` onto every record.
"""

from __future__ import annotations

import logging
from collections.abc import MutableMapping
from dataclasses import dataclass, replace
from typing import Any

_FIELDS = ("registry_url", "repository", "digest", "index_digest")


@dataclass(frozen=True)
class LogContext:
    """Values attached to every log line of one invocation."""

    registry_url: str = ""
    repository: str = ""
    digest: str = ""
    index_digest: str = ""

    def with_index_digest(self, index_digest: str) -> LogContext:
        return replace(self, index_digest=index_digest)

    def as_dict(self) -> dict[str, str]:
        """Return the non-empty fields, in a stable order."""
        return {name: getattr(self, name) for name in _FIELDS if getattr(self, name)}


class ContextLogger(logging.LoggerAdapter):
    """LoggerAdapter that appends ``LogContext`` fields to each message."""

    def __init__(self, logger: logging.Logger, context: LogContext) -> None:
        super().__init__(logger, {"context": context})
        self.context = context

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        fields = self.context.as_dict()
        extra = kwargs.setdefault("extra", {})
        extra.update(fields)
        if not fields:
            return msg, kwargs
        suffix = " ".join(f"{key}={value}" for key, value in fields.items())
        return f"{msg} [{suffix}]", kwargs

    def bind(self, context: LogContext) -> ContextLogger:
        """Return a logger for an updated context."""
        return ContextLogger(self.logger, context)


def get_context_logger(name: str, context: LogContext) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), context)


def configure_logging(level: str = "INFO", *, rich_output: bool = True) -> None:
    """Install a root handler once.

    The CLI renders through ``rich``; Lambda uses a plain stream handler so
    that CloudWatch receives unstyled lines.
    """
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level.upper())
        return

    handler: logging.Handler
    if rich_output:
        from rich.console import Console
        from rich.logging import RichHandler

        handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
    root.addHandler(handler)
    root.setLevel(level.upper())
