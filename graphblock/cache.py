"""Content-addressed storage for rendered graph artifacts.

Purpose
-------
Rendering a graph goes through the external engine, which is slow. Artifacts
are therefore cached under a digest of the block's source text so that
re-rendering the same block (scrolling, reopening a document, transcluding
identical source) is served without touching the engine.

Concepts and structure
----------------------
- :func:`digest_source` computes the cache key.
- :class:`RenderCache` is the interface shared by every backend: async ``get``
  and ``set``.
- :class:`MemoryCache` keeps artifacts in a dict for the process lifetime.
- :class:`FilesystemCache` keeps one file per artifact under a directory,
  named ``<prefix>-<hex digest>.<extension>``. The presence of a correctly
  named file is the only source of truth; there is no index.
- :func:`create_cache` selects a backend from configuration.

Important gotchas
-----------------
- Keys are computed over the source *text* (after line-ending normalisation),
  not over the parsed model. Differently formatted but equivalent sources are
  different keys, and changing the configured graph defaults does not
  invalidate existing entries.
- ``get`` never raises: an unreadable entry is logged and reported as a miss.
- ``set`` raises :class:`~graphblock.errors.CacheError`; callers treat that as
  non-fatal.
- Identical keys always carry identical artifacts, so concurrent writers need
  no locking. The filesystem backend writes to a temporary file and renames
  it into place so readers never observe a partial file.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional, Union

from .errors import CacheError

if TYPE_CHECKING:
    from .settings import CacheSettings

__all__ = [
    "digest_source",
    "RenderCache",
    "MemoryCache",
    "FilesystemCache",
    "create_cache",
    "DEFAULT_FILE_PREFIX",
]

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


DEFAULT_FILE_PREFIX = "graph"

_DIGEST = re.compile(r"^[0-9a-f]{64}$")


def digest_source(source: str) -> str:
    """Return the cache key for ``source``.

    The key is the lowercase hex SHA-256 digest of the UTF-8 encoded text after
    ``\\r\\n`` and ``\\r`` line endings are normalised to ``\\n``.

    Examples
    --------
    >>> digest_source("y=x") == digest_source("y=x")
    True
    >>> len(digest_source("y=x"))
    64
    """
    normalized = source.replace("\r\n", "\n").replace("\r", "\n")
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class RenderCache(ABC):
    """Key-value store from a source digest to a rendered artifact."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the artifact stored under ``key``, or ``None`` on a miss."""

    @abstractmethod
    async def set(self, key: str, artifact: str) -> None:
        """Store ``artifact`` under ``key``, replacing any previous value.

        Raises
        ------
        CacheError
            If the backend cannot store the artifact.
        """


class MemoryCache(RenderCache):
    """Volatile backend; entries live as long as the process.

    The map is unbounded. Keys are content digests, so the working set is the
    number of distinct graphs actually rendered in a session.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._entries.get(key)

    async def set(self, key: str, artifact: str) -> None:
        self._entries[key] = artifact

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __repr__(self) -> str:
        return f"MemoryCache(entries={len(self._entries)})"


class FilesystemCache(RenderCache):
    """Persistent backend storing one file per artifact.

    Parameters
    ----------
    directory : str or Path
        Directory holding the cache files. Created on first write.
    prefix : str
        File name prefix.
    extension : str
        File name extension, without the dot. Should match the artifact
        format produced by the engine.
    """

    def __init__(
        self,
        directory: Union[str, Path],
        *,
        prefix: str = DEFAULT_FILE_PREFIX,
        extension: str = "html",
    ) -> None:
        self.directory = Path(directory)
        self.prefix = prefix
        self.extension = extension.lstrip(".")

    def path_for(self, key: str) -> Path:
        """Return the file path for ``key``.

        Raises
        ------
        ValueError
            If ``key`` is not a lowercase hex SHA-256 digest.
        """
        if _DIGEST.match(key) is None:
            raise ValueError(f"Cache key must be a lowercase hex SHA-256 digest, got {key!r}")
        return self.directory / f"{self.prefix}-{key}.{self.extension}"

    def _read(self, path: Path) -> Optional[str]:
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    def _write(self, path: Path, artifact: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(artifact)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    async def get(self, key: str) -> Optional[str]:
        try:
            path = self.path_for(key)
            return await asyncio.to_thread(self._read, path)
        except (OSError, ValueError) as exc:
            logger.warning("Cache read failed for %s, treating as miss: %s", key, exc)
            return None

    async def set(self, key: str, artifact: str) -> None:
        try:
            path = self.path_for(key)
            await asyncio.to_thread(self._write, path, artifact)
        except (OSError, ValueError) as exc:
            raise CacheError(f"Could not write cache entry {key}: {exc}") from exc

    def __repr__(self) -> str:
        return f"FilesystemCache(directory={str(self.directory)!r}, prefix={self.prefix!r})"


def create_cache(
    settings: "CacheSettings",
    *,
    base_dir: Union[str, Path, None] = None,
    extension: str = "html",
) -> Optional[RenderCache]:
    """Select the cache backend described by ``settings``.

    Parameters
    ----------
    settings : CacheSettings
        The ``cache`` block of the plugin settings.
    base_dir : str or Path, optional
        Root that relative filesystem directories are resolved against.
    extension : str
        Artifact file extension for the filesystem backend.

    Returns
    -------
    RenderCache or None
        ``None`` when caching is disabled.
    """
    from .settings import CacheLocation

    if not settings.enabled:
        return None
    if settings.location is CacheLocation.FILESYSTEM:
        if not settings.directory:
            logger.warning(
                "Filesystem cache selected without a directory; falling back to memory cache"
            )
            return MemoryCache()
        directory = Path(settings.directory).expanduser()
        if base_dir is not None and not directory.is_absolute():
            directory = Path(base_dir) / directory
        return FilesystemCache(directory, extension=extension)
    return MemoryCache()
