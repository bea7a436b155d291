"""esbuild watch pipelines for the renderer, preload and main bundles.

Each pipeline runs the esbuild CLI in watch mode as a subprocess and turns
its log output into one `BuildResult` per (re)build. esbuild keeps watching
until its stdin is closed, which is how pipelines are stopped.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Awaitable, Callable
from pathlib import Path

from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from elx.cli.dev.logging import DevLogComponent, get_logger
from elx.errors import PipelineFailure
from elx.models import BuildResult, DevConfig, Metafile, PipelineName

logger = get_logger(DevLogComponent.PIPELINE)

BuildCallback = Callable[[BuildResult], Awaitable[None]]

_BUILD_STARTED = re.compile(r"\[watch\] build started")
_BUILD_FINISHED = re.compile(r"\[watch\] build finished")
_ERROR = re.compile(r"\[ERROR\]\s*(?P<message>.*)")


def log_retry_attempt(retry_state: RetryCallState) -> None:
    """Log retry attempts to the retry logger.

    Args:
        retry_state: Tenacity retry state
    """
    attempt_number = retry_state.attempt_number
    if retry_state.outcome and retry_state.outcome.failed:
        exception = retry_state.outcome.exception()
        get_logger(DevLogComponent.RETRY).error(
            f"Attempt {attempt_number} failed with error: {exception}. Retrying..."
        )


class EsbuildLogParser:
    """Tracks esbuild watch-mode output and reports finished builds."""

    def __init__(self) -> None:
        self.errors: list[str] = []

    def feed(self, line: str) -> tuple[bool, list[str]] | None:
        """Consume one log line.

        Returns:
            `(success, errors)` when the line marks the end of a build,
            otherwise None
        """
        if _BUILD_STARTED.search(line):
            self.errors = []
            return None
        match = _ERROR.search(line)
        if match:
            self.errors.append(match.group("message").strip())
            return None
        if _BUILD_FINISHED.search(line):
            errors, self.errors = self.errors, []
            return (not errors, errors)
        return None


class EsbuildWatchPipeline:
    """One long-lived esbuild watch process.

    Attributes:
        name: Which bundle this pipeline builds
        args: esbuild arguments (entry points and build options)
        metafile_path: Where esbuild writes its metafile, if requested
    """

    def __init__(
        self,
        name: PipelineName,
        args: list[str],
        *,
        cwd: Path,
        esbuild_command: list[str],
        metafile_path: Path | None = None,
        max_retries: int = 10,
    ) -> None:
        self.name: PipelineName = name
        self.args: list[str] = list(args)
        self.cwd: Path = cwd
        self.esbuild_command: list[str] = list(esbuild_command)
        self.metafile_path: Path | None = metafile_path
        self.max_retries: int = max_retries
        self._process: asyncio.subprocess.Process | None = None
        self._stopping: bool = False

    def build_command(self) -> list[str]:
        command = [
            *self.esbuild_command,
            *self.args,
            "--watch",
            "--color=false",
            "--log-level=info",
        ]
        if self.metafile_path is not None:
            command.append(f"--metafile={self.metafile_path}")
        return command

    def _read_metafile(self) -> Metafile | None:
        if self.metafile_path is None:
            return None
        try:
            data = json.loads(self.metafile_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"[{self.name.value}] Could not read metafile: {e}")
            return None
        return data if isinstance(data, dict) else None

    def _result(self, success: bool, errors: list[str]) -> BuildResult:
        return BuildResult(
            pipeline=self.name,
            success=success,
            errors=errors,
            metafile=self._read_metafile() if success else None,
        )

    async def run(self, on_build: BuildCallback) -> None:
        """Run esbuild until stopped, restarting it if it dies.

        Raises:
            PipelineFailure: If esbuild keeps exiting after `max_retries` attempts
            OSError: If the esbuild executable cannot be started at all
        """

        @retry(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=1, min=2, max=60),
            before_sleep=log_retry_attempt,
            retry=retry_if_exception_type(PipelineFailure),
            reraise=True,
        )
        async def run_with_retry() -> None:
            await self._run_once(on_build)

        await run_with_retry()

    async def _run_once(self, on_build: BuildCallback) -> None:
        command = self.build_command()
        logger.info(f"[{self.name.value}] Starting {' '.join(command)}")

        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=self.cwd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._process = process
        parser = EsbuildLogParser()

        async def read_stream(stream: asyncio.StreamReader | None) -> None:
            if stream is None:
                return
            async for line in stream:
                text = line.decode("utf-8", errors="replace").rstrip()
                if not text:
                    continue
                logger.info(f"[{self.name.value}] {text}")
                finished = parser.feed(text)
                if finished is not None:
                    await on_build(self._result(*finished))

        try:
            await asyncio.gather(read_stream(process.stdout), read_stream(process.stderr))
            await process.wait()
        except asyncio.CancelledError:
            await self.stop()
            raise

        if self._stopping:
            return
        raise PipelineFailure(
            f"esbuild {self.name.value} pipeline exited with code {process.returncode}"
        )

    async def stop(self, timeout: float = 3.0) -> None:
        """Close esbuild's stdin (ends watch mode), terminating it if needed."""
        self._stopping = True
        process = self._process
        if process is None or process.returncode is not None:
            return
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            process.terminate()
            await process.wait()


# === Pipeline factories ===


def _host_outfile(config: DevConfig, entry_point: str) -> str:
    return (Path(config.host_out_dir) / f"{Path(entry_point).stem}.js").as_posix()


def renderer_pipeline(config: DevConfig) -> EsbuildWatchPipeline:
    """Renderer bundle, served by esbuild from `out_dir` on the bundler port."""
    args = [
        *config.renderer_entry_points,
        "--bundle",
        f"--outdir={config.out_dir}",
        "--entry-names=assets/[name]",
        "--asset-names=assets/[name]",
        "--public-path=/",
        "--log-override:equals-negative-zero=silent",
        *(f"--loader:{ext}={loader}" for ext, loader in config.loaders.items()),
        f"--servedir={config.out_dir}",
        f"--serve=127.0.0.1:{config.bundler_port}",
    ]
    return EsbuildWatchPipeline(
        PipelineName.RENDERER,
        args,
        cwd=config.project_dir,
        esbuild_command=config.esbuild_command,
        metafile_path=config.renderer_metafile_path,
        max_retries=config.max_retries,
    )


def _host_pipeline(
    config: DevConfig, name: PipelineName, entry_point: str
) -> EsbuildWatchPipeline:
    args = [
        entry_point,
        "--bundle",
        "--platform=node",
        "--external:electron",
        f"--outfile={_host_outfile(config, entry_point)}",
    ]
    return EsbuildWatchPipeline(
        name,
        args,
        cwd=config.project_dir,
        esbuild_command=config.esbuild_command,
        max_retries=config.max_retries,
    )


def preload_pipeline(config: DevConfig) -> EsbuildWatchPipeline | None:
    if config.preload_entry_point is None:
        return None
    return _host_pipeline(config, PipelineName.PRELOAD, config.preload_entry_point)


def main_pipeline(config: DevConfig) -> EsbuildWatchPipeline:
    return _host_pipeline(config, PipelineName.MAIN, config.main_entry_point)
