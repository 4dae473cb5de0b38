"""Mount points: where a rendered graph or an error block is placed."""

from __future__ import annotations

from typing import Optional

__all__ = ["MountPoint"]


class MountPoint:
    """A DOM-like container owned by the host document.

    The host creates one mount point per embedded block and detaches it when
    the block disappears (edited away, document closed). Writes to a detached
    mount point are ignored.

    Parameters
    ----------
    block_id : str
        Host identifier of the block, used in log messages.
    """

    def __init__(self, block_id: str = "") -> None:
        self.block_id = block_id
        self._content: Optional[str] = None
        self._is_error = False
        self._attached = True

    @property
    def content(self) -> Optional[str]:
        """Mounted artifact or error markup, ``None`` while empty."""
        return self._content

    @property
    def is_error(self) -> bool:
        return self._is_error

    @property
    def attached(self) -> bool:
        return self._attached

    def detach(self) -> None:
        self._attached = False

    def show_artifact(self, artifact: str) -> bool:
        """Replace the content with ``artifact``. Returns False if detached."""
        return self._replace(artifact, is_error=False)

    def show_error(self, markup: str) -> bool:
        """Replace the content with error ``markup``. Returns False if detached."""
        return self._replace(markup, is_error=True)

    def _replace(self, content: str, *, is_error: bool) -> bool:
        if not self._attached:
            return False
        self._content = content
        self._is_error = is_error
        return True

    def __repr__(self) -> str:
        state = "error" if self._is_error else ("empty" if self._content is None else "artifact")
        return f"MountPoint(block_id={self.block_id!r}, state={state}, attached={self._attached})"
