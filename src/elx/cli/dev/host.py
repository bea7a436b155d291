"""Lifecycle of the desktop host process (e.g. `electron .`).

`HostProcessManager` owns at most one current host process. Every successful
main-bundle rebuild calls `replace()`, which supersedes the current instance
before spawning the next one:

1. detach the old exit listener (so its exit no longer stops `elx dev`)
2. send the old process group a terminate signal; a background reaper
   escalates to a tree kill if it ignores the signal
3. spawn the new process with inherited stdio
4. attach an exit listener that reports the exit of the *current* instance
"""

from __future__ import annotations

import asyncio
import os
import subprocess
import time
from collections.abc import Callable

from elx.cli.dev.logging import DevLogComponent, get_logger
from elx.cli.dev.process_control import (
    kill_tracked_process,
    send_terminate,
    track_process,
)
from elx.constants import HOST_TERMINATE_GRACE
from elx.errors import HostProcessSpawnFailure
from elx.models import SpawnSpec, TrackedProcess
from elx.utils import format_elapsed_ms

logger = get_logger(DevLogComponent.HOST)

ExitCallback = Callable[[int], None]


class HostProcessHandle:
    """One spawned host process instance."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        tracked: TrackedProcess,
        generation: int,
    ) -> None:
        self.process: asyncio.subprocess.Process = process
        self.tracked: TrackedProcess = tracked
        self.generation: int = generation
        self._exit_listener: asyncio.Task[None] | None = None
        self._detached: bool = False

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def detached(self) -> bool:
        """True once the exit listener was detached (instance superseded)."""
        return self._detached

    def attach_exit_listener(
        self, on_exit: Callable[[HostProcessHandle, int], None]
    ) -> None:
        self._exit_listener = asyncio.create_task(self._watch_exit(on_exit))

    async def _watch_exit(self, on_exit: Callable[[HostProcessHandle, int], None]) -> None:
        returncode = await self.process.wait()
        if not self._detached:
            on_exit(self, returncode)

    def detach_exit_listener(self) -> None:
        """Stop reporting this instance's exit. Synchronous and idempotent."""
        self._detached = True
        if self._exit_listener is not None and not self._exit_listener.done():
            self._exit_listener.cancel()
        self._exit_listener = None

    async def wait(self) -> int:
        return await self.process.wait()

    def __repr__(self) -> str:
        return f"HostProcessHandle(pid={self.pid}, generation={self.generation})"


class HostProcessManager:
    """Single-slot owner of the running host process.

    Attributes:
        on_exit: Called with the return code when the current instance exits
            on its own (never for superseded instances)
        terminate_grace: Seconds a superseded instance gets before a tree kill
    """

    def __init__(
        self,
        on_exit: ExitCallback | None = None,
        terminate_grace: float = HOST_TERMINATE_GRACE,
    ) -> None:
        self.on_exit: ExitCallback | None = on_exit
        self.terminate_grace: float = terminate_grace
        self._current: HostProcessHandle | None = None
        self._generation: int = 0
        self._lock: asyncio.Lock = asyncio.Lock()
        self._reapers: set[asyncio.Task[None]] = set()

    @property
    def current(self) -> HostProcessHandle | None:
        return self._current

    async def replace(self, spec: SpawnSpec) -> HostProcessHandle:
        """Supersede the current instance (if any) and spawn a new one.

        Calls are serialized: a second call waits until the first one's
        process is spawned and then supersedes it.

        Raises:
            HostProcessSpawnFailure: If the new process cannot be started
        """
        async with self._lock:
            previous = self._current
            self._current = None
            if previous is not None:
                self._supersede(previous)

            start = time.perf_counter()
            handle = await self._spawn(spec)
            handle.attach_exit_listener(self._handle_exit)
            self._current = handle
            logger.info(
                f"Started host process pid={handle.pid} in {format_elapsed_ms(start)}"
            )
            return handle

    def _supersede(self, handle: HostProcessHandle) -> None:
        # Detach before signalling so the exit can't be mistaken for a crash.
        handle.detach_exit_listener()
        logger.info(f"Stopping host process pid={handle.pid}")
        send_terminate(handle.tracked)
        reaper = asyncio.create_task(self._reap(handle))
        self._reapers.add(reaper)
        reaper.add_done_callback(self._reapers.discard)

    async def _reap(self, handle: HostProcessHandle) -> None:
        try:
            await asyncio.wait_for(handle.wait(), timeout=self.terminate_grace)
        except asyncio.TimeoutError:
            logger.warning(
                f"Host process pid={handle.pid} ignored SIGTERM, killing process tree"
            )
            await asyncio.to_thread(kill_tracked_process, handle.tracked, name="host")
            await handle.wait()
        logger.debug(f"Host process pid={handle.pid} exited with {handle.returncode}")

    async def _spawn(self, spec: SpawnSpec) -> HostProcessHandle:
        # Own process group/session so the whole host tree can be signalled.
        creationflags = 0
        start_new_session = False
        if os.name == "nt":
            creationflags = subprocess.CREATE_NEW_PROCESS_GROUP  # type: ignore[attr-defined]
        else:
            start_new_session = True

        try:
            process = await asyncio.create_subprocess_exec(
                *spec.command,
                cwd=spec.cwd,
                env={**os.environ, **spec.env},
                start_new_session=start_new_session,
                creationflags=creationflags,
            )
        except (OSError, ValueError) as e:
            raise HostProcessSpawnFailure(
                f"Failed to start host process {' '.join(spec.command)}: {e}"
            ) from e

        tracked = track_process(process.pid) or TrackedProcess(
            pid=process.pid, pgid=process.pid if start_new_session else None
        )
        self._generation += 1
        return HostProcessHandle(process, tracked, self._generation)

    def _handle_exit(self, handle: HostProcessHandle, returncode: int) -> None:
        if handle is not self._current:
            return
        self._current = None
        logger.warning(f"Host process pid={handle.pid} exited with code {returncode}")
        if self.on_exit is not None:
            self.on_exit(returncode)

    async def wait_reaped(self) -> None:
        """Wait until every superseded instance has exited."""
        while self._reapers:
            await asyncio.gather(*list(self._reapers), return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop the current instance and wait for every superseded one."""
        async with self._lock:
            current = self._current
            self._current = None
            if current is not None:
                self._supersede(current)
        await self.wait_reaped()
