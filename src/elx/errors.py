"""Exceptions raised by the `elx dev` coordination layer."""

from __future__ import annotations


class ElxDevError(Exception):
    """Base class for all dev orchestration errors."""


class ConfigError(ElxDevError):
    """The project configuration could not be loaded or validated."""


class ManifestUnavailable(ElxDevError):
    """The build manifest is missing, unreadable or not valid JSON."""


class EntryPointAmbiguous(ElxDevError):
    """`/` was requested but more than one HTML entry point is configured."""


class HtmlNotFound(ElxDevError):
    """The requested HTML entry point does not exist on disk."""


class TransformFailure(ElxDevError):
    """Rewriting or live-reload injection of an HTML document failed."""


class UpstreamForwardingFailure(ElxDevError):
    """The bundler dev server could not be reached."""


class HostProcessSpawnFailure(ElxDevError):
    """The desktop host process could not be started."""


class PipelineFailure(ElxDevError):
    """A bundler watch process exited unexpectedly."""
