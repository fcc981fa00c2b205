from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from jobtemplate.config.schema import Cancelation
from jobtemplate.exec.cancel import CancelSignal
from jobtemplate.exec.capture import stream_lines
from jobtemplate.exec.timeout import spawn_options, terminate_tree
from jobtemplate.util.errors import ActionFailureError, ActionTimeoutError
from jobtemplate.util.time import elapsed_sec, now_iso

logger = logging.getLogger(__name__)

ActionStatus = Literal["SUCCESS", "FAILED", "CANCELED", "TIMEOUT"]

POLL_INTERVAL_SEC = 0.05
_DRAIN_GRACE_SEC = 2.0
START_FAILED_EXIT_CODE = 127


@dataclass(slots=True)
class ActionResult:
    status: ActionStatus
    exit_code: int | None
    started_at: str
    ended_at: str
    duration_sec: float
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "SUCCESS"


async def run_action(
    name: str,
    argv: Sequence[str],
    *,
    cwd: Path,
    env: Mapping[str, str],
    timeout_sec: float | None,
    cancelation: Cancelation,
    cancel: CancelSignal | None,
    on_output: Callable[[str], None],
    notify_period_sec: float | None = None,
) -> ActionResult:
    """Run one external command to completion, timeout or cancellation.

    ``name`` identifies the action in errors (``onRun``, ``onEnter`` ...). The
    child runs in its own process group so that cancellation reaches every
    descendant. stderr is merged into stdout and delivered line by line.
    """
    started = time.monotonic()
    started_iso = now_iso()
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            env=dict(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            **spawn_options(),  # type: ignore[arg-type]
        )
    except (OSError, ValueError) as exc:
        error = ActionFailureError(name, START_FAILED_EXIT_CODE, f"failed to start process: {exc}")
        return ActionResult(
            status="FAILED",
            exit_code=START_FAILED_EXIT_CODE,
            started_at=started_iso,
            ended_at=now_iso(),
            duration_sec=elapsed_sec(started),
            error=str(error),
        )

    logger.debug("action %s started pid=%s argv=%s", name, proc.pid, list(argv))
    reader = asyncio.create_task(stream_lines(proc.stdout, on_output))
    waiter = asyncio.create_task(proc.wait())
    status: ActionStatus | None = None
    error: str | None = None

    try:
        while True:
            if waiter.done():
                break
            if cancel is not None and cancel.requested():
                status = "CANCELED"
                error = f"action '{name}' canceled"
                await terminate_tree(proc, cancelation, notify_period_sec=notify_period_sec)
                break
            if timeout_sec is not None and time.monotonic() - started >= timeout_sec:
                status = "TIMEOUT"
                error = str(ActionTimeoutError(name, timeout_sec))
                await terminate_tree(proc, cancelation, notify_period_sec=notify_period_sec)
                break
            await asyncio.wait({waiter}, timeout=POLL_INTERVAL_SEC)

        try:
            await asyncio.wait_for(asyncio.shield(reader), timeout=_DRAIN_GRACE_SEC)
        except TimeoutError:
            # Descendants still hold the output pipe open.
            await terminate_tree(proc, cancelation, notify_period_sec=0)
            with suppress(TimeoutError):
                await asyncio.wait_for(reader, timeout=_DRAIN_GRACE_SEC)
    except BaseException:
        logger.info("action %s: interrupted, stopping pid=%s", name, proc.pid)
        await terminate_tree(proc, cancelation, notify_period_sec=notify_period_sec)
        raise
    finally:
        for pending in (reader, waiter):
            if not pending.done():
                pending.cancel()
                with suppress(asyncio.CancelledError):
                    await pending

    exit_code = proc.returncode
    if status is None:
        if exit_code == 0:
            status = "SUCCESS"
        else:
            status = "FAILED"
            error = str(ActionFailureError(name, exit_code))
    logger.debug("action %s finished status=%s exit_code=%s", name, status, exit_code)
    return ActionResult(
        status=status,
        exit_code=exit_code,
        started_at=started_iso,
        ended_at=now_iso(),
        duration_sec=elapsed_sec(started),
        error=error,
    )
