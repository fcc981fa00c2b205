"""Process-tree termination for canceled and timed out actions."""

from __future__ import annotations

import asyncio
import os
import signal
import subprocess
import sys
from contextlib import suppress

from jobtemplate.config.schema import Cancelation, CancelationMode

_REAP_GRACE_SEC = 5.0


def spawn_options() -> dict[str, object]:
    """Keyword arguments that put a child in its own process group."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def _kill_tree(proc: asyncio.subprocess.Process) -> None:
    if sys.platform == "win32":
        subprocess.run(
            ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
            capture_output=True,
            check=False,
        )
        with suppress(ProcessLookupError):
            proc.kill()
        return
    with suppress(ProcessLookupError, PermissionError):
        os.killpg(proc.pid, signal.SIGKILL)


def _notify_tree(proc: asyncio.subprocess.Process) -> None:
    if sys.platform == "win32":
        with suppress(ProcessLookupError, OSError):
            proc.send_signal(signal.CTRL_BREAK_EVENT)  # type: ignore[attr-defined]
        return
    with suppress(ProcessLookupError, PermissionError):
        os.killpg(proc.pid, signal.SIGTERM)


async def _wait(proc: asyncio.subprocess.Process, timeout_sec: float) -> bool:
    try:
        await asyncio.wait_for(proc.wait(), timeout=timeout_sec)
        return True
    except TimeoutError:
        return False


async def terminate_tree(
    proc: asyncio.subprocess.Process,
    cancelation: Cancelation,
    *,
    notify_period_sec: float | None = None,
) -> int | None:
    """Stop ``proc`` and its descendants according to ``cancelation``.

    ``notify_period_sec`` overrides the template's notify period.
    """
    if proc.returncode is not None:
        # The leader exited; descendants may still hold the group alive.
        _kill_tree(proc)
        return proc.returncode
    if cancelation.mode is CancelationMode.NOTIFY_THEN_TERMINATE:
        period = notify_period_sec
        if period is None:
            period = float(cancelation.notify_period_sec or 0)
        _notify_tree(proc)
        if await _wait(proc, period):
            _kill_tree(proc)
            return proc.returncode
    _kill_tree(proc)
    await _wait(proc, _REAP_GRACE_SEC)
    return proc.returncode
