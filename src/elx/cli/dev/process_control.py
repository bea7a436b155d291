"""Signal helpers for the host process tree started by `elx dev`.

The host is started in its own session, so on POSIX its process group id is
its pid and one `killpg` reaches electron's helper processes too. psutil is
used to confirm a pid still belongs to the process we started before
signalling it, and to walk the tree where there is no process group
(Windows, or a child that left the group).
"""

from __future__ import annotations

import os
import signal
import time

import psutil

from elx.cli.dev.logging import DevLogComponent, get_logger
from elx.models import TrackedProcess

logger = get_logger(DevLogComponent.PROCESS_CONTROL)

# psutil reports create_time as a float; allow for rounding between calls.
_CREATE_TIME_TOLERANCE = 0.001


def track_process(pid: int) -> TrackedProcess | None:
    """Snapshot identity (create_time) and process group of a freshly started pid."""
    try:
        create_time = psutil.Process(pid).create_time()
    except psutil.Error:
        return None
    pgid: int | None = None
    if os.name != "nt":
        try:
            pgid = os.getpgid(pid)
        except OSError:
            pgid = None
    return TrackedProcess(pid=pid, create_time=create_time, pgid=pgid)


def validate_tracked(tp: TrackedProcess) -> psutil.Process | None:
    """The live psutil.Process for `tp`, or None if it is gone or the pid was reused."""
    if tp.pid is None or tp.create_time is None:
        return None
    try:
        proc = psutil.Process(tp.pid)
        same = abs(proc.create_time() - tp.create_time) <= _CREATE_TIME_TOLERANCE
    except psutil.Error:
        return None
    return proc if same else None


def _signal_group(pgid: int, sig: signal.Signals) -> bool:
    """Signal a process group; False once the group has no members left."""
    try:
        os.killpg(pgid, sig)
    except ProcessLookupError:
        return False
    except PermissionError as e:
        logger.debug(f"{sig.name} to pgid={pgid} not permitted: {e}")
    return True


def _group_exists(pgid: int) -> bool:
    # Signal 0 only checks for existence (zombies still count until reaped).
    return _signal_group(pgid, signal.Signals(0))


def send_terminate(tp: TrackedProcess) -> None:
    """Ask a tracked process (and its group on POSIX) to exit."""
    if os.name != "nt" and tp.pgid is not None:
        _signal_group(tp.pgid, signal.SIGTERM)
        return

    proc = validate_tracked(tp)
    if proc is None:
        return
    try:
        proc.terminate()
    except psutil.NoSuchProcess:
        pass
    except psutil.Error as e:
        logger.debug(f"terminate pid={tp.pid} failed: {e}")


def _kill_tree(root: psutil.Process, timeout: float) -> None:
    try:
        procs = [*root.children(recursive=True), root]
    except psutil.Error:
        procs = [root]
    for proc in procs:
        try:
            proc.kill()
        except psutil.Error:
            continue
    _, survivors = psutil.wait_procs(procs, timeout=timeout)
    for proc in survivors:
        logger.warning(f"pid={proc.pid} survived SIGKILL")


def kill_tracked_process(
    tp: TrackedProcess,
    *,
    name: str,
    sigkill_timeout: float = 1.0,
) -> None:
    """Force-stop a tracked process and everything it spawned.

    Used after the graceful terminate signal was ignored for the grace
    period. Blocking; run it in a worker thread from async code.
    """
    logger.debug(f"Force-stopping {name} pid={tp.pid}")

    if os.name != "nt" and tp.pgid is not None:
        if _signal_group(tp.pgid, signal.SIGKILL):
            deadline = time.monotonic() + sigkill_timeout
            while _group_exists(tp.pgid) and time.monotonic() < deadline:
                time.sleep(0.05)

    # Children that changed group (or Windows, which has no groups).
    proc = validate_tracked(tp)
    if proc is not None:
        _kill_tree(proc, timeout=sigkill_timeout)


def is_alive(tp: TrackedProcess) -> bool:
    """True while the tracked process runs (zombies count as exited)."""
    proc = validate_tracked(tp)
    if proc is None:
        return False
    try:
        return proc.status() != psutil.STATUS_ZOMBIE
    except psutil.Error:
        return False
