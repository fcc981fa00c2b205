from __future__ import annotations

from pathlib import Path

from jobtemplate.util.path_guard import has_symlink_ancestor, is_symlink_path

CANCEL_REQUEST_FILENAME = "cancel.request"


class CancelSignal:
    """Cancellation flag shared by a job, its sessions and their actions.

    A signal is set in-process with :meth:`request`, or from another process by
    creating ``request_file``. Child signals observe their parent.
    """

    __slots__ = ("_requested", "_parent", "request_file")

    def __init__(
        self, parent: CancelSignal | None = None, *, request_file: Path | None = None
    ) -> None:
        self._requested = False
        self._parent = parent
        self.request_file = request_file

    def request(self) -> None:
        self._requested = True

    def child(self) -> CancelSignal:
        return CancelSignal(self)

    def requested(self) -> bool:
        if self._requested:
            return True
        if self.request_file is not None and _request_file_present(self.request_file):
            self._requested = True
            return True
        return self._parent is not None and self._parent.requested()


def _request_file_present(path: Path) -> bool:
    if has_symlink_ancestor(path):
        return False
    try:
        return path.is_file() and not is_symlink_path(path)
    except OSError:
        return False


def write_cancel_request(directory: Path) -> Path:
    """Create the cancel request file watched by a running job."""
    path = directory / CANCEL_REQUEST_FILENAME
    if has_symlink_ancestor(path) or is_symlink_path(path):
        raise OSError("cancel request path must not be symlink")
    path.write_text("cancel requested\n", encoding="utf-8")
    return path
