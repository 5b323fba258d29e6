"""structlog setup for the sampler's log sink.

Digests are ordinary structlog events. This routes them through stdlib
logging to the console and, when configured, to an append-only log file.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Optional

import structlog


class DigestRenderer:
    """Render key=value pairs, then the ``digest`` field verbatim on the lines below.

    The digest text keeps its own line breaks so each section reads as a
    separate line in the log file.
    """

    def __init__(self, renderer: Callable[[Any, str, dict], str]):
        self._renderer = renderer

    def __call__(self, logger: Any, method_name: str, event_dict: dict) -> str:
        digest = event_dict.pop("digest", None)
        line = self._renderer(logger, method_name, event_dict)
        if digest is None:
            return line
        return f"{line}\n{digest}"


def configure_logging(level: str = "INFO", file_path: Optional[str] = None) -> None:
    """Configure structlog + stdlib logging.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file_path: Append-only log file; console only when None.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if file_path:
        Path(file_path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(file_path, mode="a", encoding="utf-8"))

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    formatter = logging.Formatter("%(message)s")
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    set_log_level(level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            DigestRenderer(
                structlog.processors.KeyValueRenderer(
                    key_order=["timestamp", "level", "event", "logger"],
                ),
            ),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def configure_logging_from_config() -> None:
    """Apply ``logging.level`` and ``logging.file_path`` from the global config.

    Later updates to ``logging.level`` take effect without a restart.
    """
    from .config.manager import get_config_manager  # noqa: PLC0415

    config = get_config_manager()
    configure_logging(config.get("logging.level"), config.get("logging.file_path"))
    config.unsubscribe(_on_config_updated)
    config.subscribe(_on_config_updated)


def set_log_level(level: str) -> None:
    """Set the root logger and all its handlers to ``level``."""
    log_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    for handler in root.handlers:
        handler.setLevel(log_level)
    root.setLevel(log_level)


def _on_config_updated(key: str, value: Any) -> None:
    if key == "logging.level":
        set_log_level(value)
