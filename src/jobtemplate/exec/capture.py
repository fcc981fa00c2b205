from __future__ import annotations

import asyncio
from collections.abc import Callable

_LINE_LIMIT = 64 * 1024


async def stream_lines(
    stream: asyncio.StreamReader | None, on_line: Callable[[str], None]
) -> None:
    """Forward each decoded output line (without its newline) to ``on_line``.

    Lines longer than the reader limit are delivered in pieces.
    """
    if stream is None:
        return
    pending = b""
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        pending += chunk
        while True:
            newline = pending.find(b"\n")
            if newline == -1:
                break
            line, pending = pending[:newline], pending[newline + 1 :]
            on_line(line.rstrip(b"\r").decode("utf-8", errors="replace"))
        if len(pending) > _LINE_LIMIT:
            on_line(pending.decode("utf-8", errors="replace"))
            pending = b""
    if pending:
        on_line(pending.rstrip(b"\r").decode("utf-8", errors="replace"))
