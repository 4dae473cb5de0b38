"""Host-facing plugin object: lifecycle hooks and the block entry point.

Purpose
-------
``GraphPlugin`` is what a document host talks to. It mirrors the usual
extension lifecycle:

- :meth:`GraphPlugin.activate` loads (and migrates) the settings record,
  selects the cache backend and activates the renderer, which creates the
  shared engine;
- :meth:`GraphPlugin.process_block` is called once per embedded block with
  the block text and its mount point;
- :meth:`GraphPlugin.deactivate` drains in-flight renders and releases the
  engine.

Examples
--------
>>> import asyncio
>>> from graphblock import GraphPlugin, JsonDataStore, MountPoint
>>> async def main():
...     plugin = GraphPlugin(JsonDataStore("data.json"))
...     await plugin.activate()
...     mount = MountPoint("block-1")
...     await plugin.process_block("y=x^2", mount)
...     await plugin.deactivate()
...     return mount.content
>>> html = asyncio.run(main())  # doctest: +SKIP
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional, Union

from ._version import __version__
from .cache import create_cache
from .engine import PlotlyEngine
from .error_view import present_error
from .mount import MountPoint
from .renderer import EngineFactory, Renderer, RenderOutcome
from .settings import JsonDataStore, Settings, load_settings, save_settings

__all__ = ["GraphPlugin", "BLOCK_LANGUAGES"]

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


#: Code block language tags handled by the plugin.
BLOCK_LANGUAGES = ("graph", "desmos-graph")


class GraphPlugin:
    """Lifecycle owner for settings, cache and renderer.

    Parameters
    ----------
    store : JsonDataStore
        Settings persistence.
    version : str
        Running program version, compared against the stored record.
    base_dir : str or Path, optional
        Root for relative cache directories. Defaults to the directory of the
        settings file.
    engine_factory : callable, optional
        Builds the graphing engine. Defaults to a :class:`PlotlyEngine`
        honouring ``use_legacy_external_api`` and ``artifact_format``.
    artifact_format : str
        Artifact format of the default engine, also used as the cache file
        extension.
    engine_timeout : float or None
        Per-call engine timeout in seconds.
    """

    def __init__(
        self,
        store: JsonDataStore,
        *,
        version: str = __version__,
        base_dir: Union[str, Path, None] = None,
        engine_factory: Optional[EngineFactory] = None,
        artifact_format: str = "html",
        engine_timeout: Optional[float] = 30.0,
    ) -> None:
        self.store = store
        self.version = version
        self.base_dir = Path(base_dir) if base_dir is not None else store.path.parent
        self.artifact_format = artifact_format
        self.engine_timeout = engine_timeout
        self._engine_factory = engine_factory
        self.settings: Optional[Settings] = None
        self.renderer: Optional[Renderer] = None

    def _default_engine(self) -> PlotlyEngine:
        if self.settings is None:
            raise RuntimeError("Settings have not been loaded")
        return PlotlyEngine(
            artifact_format=self.artifact_format,
            offline=self.settings.use_legacy_external_api,
        )

    async def activate(self) -> None:
        """Load settings and bring up cache, renderer and engine."""
        self.settings = load_settings(self.store, self.version)
        cache = create_cache(
            self.settings.cache, base_dir=self.base_dir, extension=self.artifact_format
        )
        self.renderer = Renderer(
            self._engine_factory or self._default_engine,
            cache,
            self.settings.graph_settings,
            engine_timeout=self.engine_timeout,
        )
        self.renderer.activate()
        logger.info("Graph plugin %s activated (cache: %r)", self.version, cache)

    async def deactivate(self, grace_period: float = 5.0) -> None:
        """Release the renderer, waiting at most ``grace_period`` for renders."""
        renderer, self.renderer = self.renderer, None
        if renderer is not None:
            await renderer.deactivate(grace_period)

    def process_block(
        self, source: str, mount: MountPoint
    ) -> "Optional[asyncio.Task[RenderOutcome]]":
        """Schedule rendering of one block into ``mount``.

        Returns the render task, or ``None`` when the plugin is not active, in
        which case the error is shown at ``mount`` immediately.
        """
        if self.renderer is None or not self.renderer.active:
            present_error("Graph plugin is not active", mount)
            return None
        return self.renderer.schedule(source, mount)

    def save_settings(self) -> None:
        if self.settings is None:
            raise RuntimeError("Settings have not been loaded")
        save_settings(self.store, self.settings)
