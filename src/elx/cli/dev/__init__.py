"""Dev command group for elx CLI."""

from elx.cli.dev.host import HostProcessHandle, HostProcessManager
from elx.cli.dev.manifest import ManifestStore
from elx.cli.dev.orchestrator import DevOrchestrator
from elx.cli.dev.proxy import RendererProxy, create_proxy_app
from elx.cli.dev.reload import ClientSubscription, ReloadChannel
from elx.models import (
    AssetUpdated,
    BuildManifest,
    BuildResult,
    DevConfig,
    FullReload,
    SpawnSpec,
)

__all__ = [
    "AssetUpdated",
    "BuildManifest",
    "BuildResult",
    "ClientSubscription",
    "DevConfig",
    "DevOrchestrator",
    "FullReload",
    "HostProcessHandle",
    "HostProcessManager",
    "ManifestStore",
    "ReloadChannel",
    "RendererProxy",
    "SpawnSpec",
    "create_proxy_app",
]
