from __future__ import annotations

import asyncio
import os
import sys
import time
from pathlib import Path

import pytest

from jobtemplate.config.schema import Cancelation, CancelationMode
from jobtemplate.exec.cancel import CancelSignal
from jobtemplate.exec.runner import START_FAILED_EXIT_CODE, ActionResult, run_action


async def _run(
    tmp_path: Path,
    code: str,
    *,
    timeout_sec: float | None = None,
    cancel: CancelSignal | None = None,
    cancelation: Cancelation | None = None,
    notify_period_sec: float | None = None,
) -> tuple[ActionResult, list[str]]:
    lines: list[str] = []
    result = await run_action(
        "onRun",
        [sys.executable, "-c", code],
        cwd=tmp_path,
        env=dict(os.environ),
        timeout_sec=timeout_sec,
        cancelation=cancelation or Cancelation(),
        cancel=cancel,
        on_output=lines.append,
        notify_period_sec=notify_period_sec,
    )
    return result, lines


@pytest.mark.asyncio
async def test_successful_action_streams_stdout_and_stderr(tmp_path: Path) -> None:
    result, lines = await _run(
        tmp_path,
        "import sys; print('out', flush=True); print('err', file=sys.stderr, flush=True)",
    )
    assert result.status == "SUCCESS"
    assert result.exit_code == 0
    assert result.error is None
    assert sorted(lines) == ["err", "out"]


@pytest.mark.asyncio
async def test_non_zero_exit_is_failed(tmp_path: Path) -> None:
    result, _ = await _run(tmp_path, "import sys; sys.exit(3)")
    assert result.status == "FAILED"
    assert result.exit_code == 3
    assert result.error == "action 'onRun' failed: exit code 3"


@pytest.mark.asyncio
async def test_timeout_terminates_within_bounded_time(tmp_path: Path) -> None:
    started = time.monotonic()
    result, _ = await _run(tmp_path, "import time; time.sleep(10)", timeout_sec=1)
    elapsed = time.monotonic() - started
    assert result.status == "TIMEOUT"
    assert "exceeded timeout of 1s" in (result.error or "")
    assert elapsed < 6


@pytest.mark.asyncio
async def test_cancel_signal_stops_running_action(tmp_path: Path) -> None:
    cancel = CancelSignal()

    async def _cancel_soon() -> None:
        await asyncio.sleep(0.3)
        cancel.request()

    started = time.monotonic()
    canceller = asyncio.create_task(_cancel_soon())
    result, _ = await _run(tmp_path, "import time; time.sleep(10)", cancel=cancel)
    await canceller
    assert result.status == "CANCELED"
    assert time.monotonic() - started < 6


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
@pytest.mark.asyncio
async def test_notify_then_terminate_lets_process_handle_sigterm(tmp_path: Path) -> None:
    code = (
        "import signal, sys, time\n"
        "def handler(signum, frame):\n"
        "    print('got term', flush=True)\n"
        "    sys.exit(0)\n"
        "signal.signal(signal.SIGTERM, handler)\n"
        "print('ready', flush=True)\n"
        "time.sleep(10)\n"
    )
    result, lines = await _run(
        tmp_path,
        code,
        timeout_sec=3,
        cancelation=Cancelation(CancelationMode.NOTIFY_THEN_TERMINATE, 5),
    )
    assert result.status == "TIMEOUT"
    assert lines == ["ready", "got term"]


@pytest.mark.asyncio
async def test_missing_command_fails_to_start(tmp_path: Path) -> None:
    lines: list[str] = []
    result = await run_action(
        "onEnter",
        [str(tmp_path / "does-not-exist")],
        cwd=tmp_path,
        env=dict(os.environ),
        timeout_sec=None,
        cancelation=Cancelation(),
        cancel=None,
        on_output=lines.append,
    )
    assert result.status == "FAILED"
    assert result.exit_code == START_FAILED_EXIT_CODE
    assert "failed to start process" in (result.error or "")


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX process check")
@pytest.mark.asyncio
async def test_cancelling_the_awaiting_task_kills_the_child(tmp_path: Path) -> None:
    pid_file = tmp_path / "child.pid"
    code = (
        "import os, time; "
        f"open({str(pid_file)!r}, 'w').write(str(os.getpid())); "
        "time.sleep(30)"
    )
    task = asyncio.create_task(_run(tmp_path, code))
    for _ in range(200):
        if pid_file.exists() and pid_file.read_text():
            break
        await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    with pytest.raises(ProcessLookupError):
        os.kill(int(pid_file.read_text()), 0)
