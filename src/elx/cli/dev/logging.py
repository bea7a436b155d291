"""Centralized logging for `elx dev` (component routing and CLI formatting)."""

from __future__ import annotations

import logging
from enum import Enum

from typing_extensions import override

from elx.constants import DEFAULT_RELOAD_PATH
from elx.utils import PrefixedLogHandler


class DevLogComponent(str, Enum):
    """Where a log originated (used for prefixes and fine-grained filtering)."""

    ORCHESTRATOR = "orchestrator"
    PROXY = "proxy"
    RELOAD = "reload"
    HOST = "host"
    PROCESS_CONTROL = "process_control"
    PIPELINE = "pipeline"
    RETRY = "retry"


_COMPONENT_COLOR: dict[DevLogComponent, str] = {
    DevLogComponent.ORCHESTRATOR: "bright_blue",
    DevLogComponent.PROXY: "cyan",
    DevLogComponent.RELOAD: "magenta",
    DevLogComponent.HOST: "green",
    DevLogComponent.PROCESS_CONTROL: "green",
    DevLogComponent.PIPELINE: "yellow",
    DevLogComponent.RETRY: "yellow",
}

_configured: bool = False


class _ReloadStreamAccessLogFilter(logging.Filter):
    """Drop access-log lines for the long-lived live-reload stream."""

    def __init__(self, reload_path: str) -> None:
        super().__init__()
        self._needle: str = f"/{reload_path.strip('/')} "

    @override
    def filter(self, record: logging.LogRecord) -> bool:
        return self._needle not in record.getMessage()


def _route(logger: logging.Logger, prefix: str, color: str, level: int) -> None:
    handler = PrefixedLogHandler(prefix=prefix, color=color)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.handlers[:] = [handler]
    logger.setLevel(level)
    logger.propagate = False


def configure_dev_logging(
    *, verbose: bool = False, reload_path: str = DEFAULT_RELOAD_PATH
) -> None:
    """Attach prefixed console handlers to every dev logger."""
    global _configured

    level = logging.DEBUG if verbose else logging.INFO
    for component in DevLogComponent:
        _route(
            logging.getLogger(f"elx.dev.{component.value}"),
            component.value,
            _COMPONENT_COLOR[component],
            level,
        )

    # uvicorn serves the renderer proxy, so its records share the proxy prefix.
    proxy_color = _COMPONENT_COLOR[DevLogComponent.PROXY]
    _route(logging.getLogger("uvicorn"), "proxy", proxy_color, logging.INFO)
    _route(logging.getLogger("uvicorn.error"), "proxy", proxy_color, logging.INFO)
    access = logging.getLogger("uvicorn.access")
    # Per-request lines are noise unless debugging the proxy itself.
    _route(access, "proxy", proxy_color, level if verbose else logging.WARNING)
    access.filters.clear()
    access.addFilter(_ReloadStreamAccessLogFilter(reload_path))

    _configured = True


def get_logger(component: DevLogComponent) -> logging.Logger:
    """The `elx.dev.<component>` logger.

    Until `configure_dev_logging()` runs (library use, tests) records go
    nowhere instead of to the root logger.
    """
    logger = logging.getLogger(f"elx.dev.{component.value}")
    if not _configured and not logger.handlers:
        logger.addHandler(logging.NullHandler())
        logger.propagate = False
    return logger
