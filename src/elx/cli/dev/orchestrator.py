"""Top-level wiring for `elx dev`.

Architecture:
- One asyncio event loop, no threads (except psutil tree kills)
- Tasks: the renderer proxy (uvicorn), one per esbuild watch pipeline
- Components are owned here and handed to each other explicitly:
  ManifestStore + ReloadChannel -> RendererProxy, HostProcessManager

Wiring:
- renderer build -> write manifest, publish a reload event
- preload build -> logged only; the host loads it on its next launch
- main build -> replace the host process
- current host exits on its own -> stop everything, non-zero exit code
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import os
from pathlib import Path

import uvicorn

from elx.cli.dev.host import HostProcessManager
from elx.cli.dev.logging import DevLogComponent, get_logger
from elx.cli.dev.manifest import ManifestStore
from elx.cli.dev.pipelines import (
    BuildCallback,
    EsbuildWatchPipeline,
    main_pipeline,
    preload_pipeline,
    renderer_pipeline,
)
from elx.cli.dev.proxy import RendererProxy, create_proxy_app
from elx.cli.dev.reload import ReloadChannel
from elx.errors import HostProcessSpawnFailure
from elx.models import (
    AssetUpdated,
    BuildResult,
    DevConfig,
    FullReload,
    Metafile,
    ReloadEvent,
    SpawnSpec,
)
from elx.utils import ensure_dir

logger = get_logger(DevLogComponent.ORCHESTRATOR)


def _file_digest(path: Path) -> str:
    try:
        return hashlib.sha1(path.read_bytes()).hexdigest()
    except OSError:
        return ""


class DevOrchestrator:
    """Runs the proxy and the three watch pipelines until something fatal happens."""

    def __init__(
        self,
        config: DevConfig,
        *,
        manifest_store: ManifestStore | None = None,
        reload_channel: ReloadChannel | None = None,
        host_manager: HostProcessManager | None = None,
    ) -> None:
        self.config: DevConfig = config
        self.manifest_store: ManifestStore = manifest_store or ManifestStore(
            config.manifest_path
        )
        self.reload_channel: ReloadChannel = reload_channel or ReloadChannel()
        self.host_manager: HostProcessManager = host_manager or HostProcessManager()
        self.host_manager.on_exit = self._on_host_exit
        self.proxy: RendererProxy = RendererProxy.from_config(
            config, self.manifest_store, self.reload_channel
        )

        self._renderer_digests: dict[str, str] = {}
        self._stop_event: asyncio.Event = asyncio.Event()
        self._exit_code: int = 0

    # === Host process ===

    def spawn_spec(self) -> SpawnSpec:
        """The host command, told where to load its renderer content from."""
        return SpawnSpec(
            command=self.config.host_command,
            cwd=self.config.project_dir,
            env={self.config.renderer_url_env: self.config.proxy_url},
        )

    def _on_host_exit(self, returncode: int) -> None:
        logger.error(f"Host process exited (code {returncode}), shutting down")
        self.request_stop(returncode or 1)

    def request_stop(self, exit_code: int = 0) -> None:
        """Ask `run()` to shut everything down; the first exit code wins."""
        if self._stop_event.is_set():
            return
        self._exit_code = exit_code
        self._stop_event.set()

    # === Build completion handlers ===

    async def on_renderer_build(self, result: BuildResult) -> None:
        if not result.success:
            logger.error(
                f"Renderer build failed with {len(result.errors)} error(s), "
                "keeping last manifest"
            )
            return
        if not self.manifest_store.write_from_metafile(result.metafile):
            # Clients would only reload against the previous bundles.
            return
        self.reload_channel.publish(await self.reload_event_for(result.metafile))

    def _digest_outputs(self, outputs: dict[str, object]) -> dict[str, str]:
        return {key: _file_digest(self.config.project_dir / key) for key in outputs}

    async def reload_event_for(self, metafile: Metafile | None) -> ReloadEvent:
        """Pick a stylesheet swap when only one stylesheet changed, else a full reload."""
        outputs = (metafile or {}).get("outputs") or {}
        digests = await asyncio.to_thread(self._digest_outputs, outputs)
        previous, self._renderer_digests = self._renderer_digests, digests
        if not previous:
            return FullReload()

        added = digests.keys() - previous.keys()
        removed = previous.keys() - digests.keys()
        updated = [k for k in digests if k in previous and digests[k] != previous[k]]
        only_stylesheet = len(updated) == 1 and updated[0].endswith(".css")
        if only_stylesheet and not added and not removed:
            url_path = os.path.relpath(
                self.config.project_dir / updated[0],
                self.config.project_dir / self.config.out_dir,
            ).replace(os.sep, "/")
            return AssetUpdated(path=f"/{url_path}")
        return FullReload()

    async def on_preload_build(self, result: BuildResult) -> None:
        if result.success:
            logger.info("Preload rebuilt, the host picks it up on its next launch")
        else:
            logger.error(f"Preload build failed with {len(result.errors)} error(s)")

    async def on_main_build(self, result: BuildResult) -> None:
        if not result.success:
            logger.error(
                f"Main build failed with {len(result.errors)} error(s), "
                "keeping the running host process"
            )
            return
        try:
            await self.host_manager.replace(self.spawn_spec())
        except HostProcessSpawnFailure as e:
            logger.error(str(e))
            self.request_stop(1)

    # === Lifecycle ===

    def pipelines(self) -> list[tuple[EsbuildWatchPipeline, BuildCallback]]:
        pipelines: list[tuple[EsbuildWatchPipeline, BuildCallback]] = [
            (renderer_pipeline(self.config), self.on_renderer_build)
        ]
        preload = preload_pipeline(self.config)
        if preload is not None:
            pipelines.append((preload, self.on_preload_build))
        pipelines.append((main_pipeline(self.config), self.on_main_build))
        return pipelines

    async def _run_pipeline(
        self, pipeline: EsbuildWatchPipeline, on_build: BuildCallback
    ) -> None:
        try:
            await pipeline.run(on_build)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"{pipeline.name.value} pipeline failed: {e}")
            self.request_stop(1)

    def create_server(self) -> uvicorn.Server:
        config = uvicorn.Config(
            app=create_proxy_app(self.proxy),
            host=self.config.host,
            port=self.config.proxy_port,
            log_config=None,
            lifespan="on",
        )
        return uvicorn.Server(config)

    async def run(self) -> int:
        """Run until stopped and return the process exit code."""
        ensure_dir(self.config.state_dir)

        pipelines = self.pipelines()
        server = self.create_server()
        server_task = asyncio.create_task(server.serve())
        pipeline_tasks = [
            asyncio.create_task(self._run_pipeline(pipeline, on_build))
            for pipeline, on_build in pipelines
        ]
        stop_task = asyncio.create_task(self._stop_event.wait())
        logger.info(f"Started esbuild serve process [{self.config.proxy_url}]")

        try:
            done, _ = await asyncio.wait(
                [server_task, stop_task], return_when=asyncio.FIRST_COMPLETED
            )
            if server_task in done and not self._stop_event.is_set():
                exc = server_task.exception()
                if exc is not None:
                    logger.error(f"Proxy server failed: {exc}")
                    self._exit_code = 1
        finally:
            await self._shutdown(server, server_task, pipelines, pipeline_tasks)
            stop_task.cancel()

        return self._exit_code

    async def _shutdown(
        self,
        server: uvicorn.Server,
        server_task: asyncio.Task[None],
        pipelines: list[tuple[EsbuildWatchPipeline, BuildCallback]],
        pipeline_tasks: list[asyncio.Task[None]],
    ) -> None:
        logger.info("Shutting down...")
        await asyncio.gather(
            *(pipeline.stop() for pipeline, _ in pipelines), return_exceptions=True
        )
        for task in pipeline_tasks:
            task.cancel()
        await asyncio.gather(*pipeline_tasks, return_exceptions=True)

        await self.host_manager.shutdown()

        server.should_exit = True
        with contextlib.suppress(asyncio.CancelledError, asyncio.TimeoutError):
            await asyncio.wait_for(server_task, timeout=5.0)
