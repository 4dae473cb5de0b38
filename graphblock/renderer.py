"""Render orchestration: parse, look up, invoke the engine, cache, mount.

Purpose
-------
:class:`Renderer` ties the parser, the render cache, the shared graphing
engine and the error presenter together. Each call to :meth:`Renderer.render`
walks one request through a small state machine::

    Parsing -> CacheLookup -> CacheHit -> Mounted
                           -> CacheMiss -> Invoking -> Success -> Caching -> Mounted
                                                    -> Failure -> Reported

Parse failures go straight to ``Reported``. A request whose mount point was
detached while it was suspended ends in ``Detached`` instead of writing into
a stale target.

Architecture notes
------------------
- Producing an artifact (:meth:`Renderer.produce`) is a pure async operation
  with no knowledge of mount points; mounting is a separate synchronous step.
- The engine instance is created by :meth:`Renderer.activate` and closed by
  :meth:`Renderer.deactivate`. It is passed to nothing else.
- The engine is a single mutable resource, so ``Invoking`` stages are
  serialised through one ``asyncio.Lock``. A request that waited on the lock
  checks the cache again before invoking, which collapses concurrent renders
  of identical source into one engine call.
- Cache reads and writes are never fatal. A failed read is a miss; a failed
  write is logged and the fresh artifact is still mounted.
- Every other failure is converted into exactly one error presenter call.
  ``asyncio.CancelledError`` is not caught: a cancelled render leaves its mount
  point untouched.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Set

from .cache import RenderCache, digest_source
from .engine import GraphEngine
from .error_view import present_error
from .errors import EngineError, GraphError, RenderFailure
from .graph import Graph, GraphOptions
from .graph_parser import parse_graph
from .mount import MountPoint

__all__ = ["RenderState", "RenderOutcome", "Renderer", "EngineFactory"]

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


EngineFactory = Callable[[], GraphEngine]


class RenderState(str, Enum):
    PARSING = "Parsing"
    CACHE_LOOKUP = "CacheLookup"
    CACHE_HIT = "CacheHit"
    CACHE_MISS = "CacheMiss"
    INVOKING = "Invoking"
    SUCCESS = "Success"
    FAILURE = "Failure"
    CACHING = "Caching"
    MOUNTED = "Mounted"
    REPORTED = "Reported"
    DETACHED = "Detached"


TERMINAL_STATES = frozenset({RenderState.MOUNTED, RenderState.REPORTED, RenderState.DETACHED})


@dataclass
class RenderOutcome:
    """Record of one render request.

    Parameters
    ----------
    source : str
        Raw block text.
    states : list[RenderState]
        States visited, in order. The last one is terminal once ``render``
        returns.
    key : str or None
        Cache key, once computed.
    graph : Graph or None
        Parsed model, once parsed.
    artifact : str or None
        Artifact that was produced or served from cache.
    failure : RenderFailure or None
        Failure that was reported, if any.
    """

    source: str
    states: List[RenderState] = field(default_factory=list)
    key: Optional[str] = None
    graph: Optional[Graph] = None
    artifact: Optional[str] = None
    failure: Optional[RenderFailure] = None

    @property
    def state(self) -> Optional[RenderState]:
        return self.states[-1] if self.states else None

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def enter(self, state: RenderState) -> None:
        logger.debug("render %s: %s", (self.key or "?")[:12], state.value)
        self.states.append(state)


class Renderer:
    """Render graph blocks through a shared engine and a render cache.

    Parameters
    ----------
    engine_factory : callable
        Zero-argument callable building the engine; called once per
        activation.
    cache : RenderCache or None
        Active cache backend, or ``None`` when caching is disabled.
    defaults : GraphOptions
        Options used for everything a block does not override.
    engine_timeout : float or None
        Seconds to wait for one engine call before reporting an
        ``EngineError``. ``None`` waits indefinitely.
    """

    def __init__(
        self,
        engine_factory: EngineFactory,
        cache: Optional[RenderCache],
        defaults: GraphOptions,
        *,
        engine_timeout: Optional[float] = 30.0,
    ) -> None:
        self._engine_factory = engine_factory
        self.cache = cache
        self.defaults = defaults
        self.engine_timeout = engine_timeout
        self._engine: Optional[GraphEngine] = None
        self._engine_lock = asyncio.Lock()
        self._inflight: Set[asyncio.Task] = set()
        self._deactivating = False
        self.invocations = 0

    # --- Lifecycle ---

    @property
    def engine(self) -> Optional[GraphEngine]:
        return self._engine

    @property
    def active(self) -> bool:
        return self._engine is not None and not self._deactivating

    @property
    def inflight(self) -> int:
        return sum(1 for task in self._inflight if not task.done())

    def activate(self) -> None:
        """Create the shared engine instance.

        Raises
        ------
        RuntimeError
            If the renderer is already active.
        """
        if self._engine is not None:
            raise RuntimeError("Renderer is already active")
        self._engine = self._engine_factory()
        self._deactivating = False
        logger.info("Renderer activated with %s", type(self._engine).__name__)

    async def deactivate(self, grace_period: float = 5.0) -> None:
        """Stop accepting renders, drain or cancel in-flight ones, close the engine.

        In-flight renders get up to ``grace_period`` seconds to finish; the
        remainder are cancelled before the engine is released.
        """
        if self._engine is None:
            return
        self._deactivating = True
        pending = {task for task in self._inflight if not task.done()}
        pending.discard(asyncio.current_task())
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=grace_period)
            if still_running:
                logger.warning(
                    "Cancelling %d in-flight render(s) after %.1fs grace period",
                    len(still_running),
                    grace_period,
                )
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)
        engine, self._engine = self._engine, None
        engine.close()
        logger.info("Renderer deactivated")

    # --- Rendering ---

    def schedule(self, source: str, mount: MountPoint) -> "asyncio.Task[RenderOutcome]":
        """Start rendering in a new task on the running loop and return it.

        The task is tracked from creation, so :meth:`deactivate` sees it even
        if it has not started running yet.
        """
        task = asyncio.get_running_loop().create_task(self.render(source, mount))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def render(self, source: str, mount: MountPoint) -> RenderOutcome:
        """Render one block into ``mount``.

        Never raises for render failures: they are shown at ``mount`` through
        the error presenter and recorded on the returned outcome.
        """
        outcome = RenderOutcome(source=source)
        task = asyncio.current_task()
        if task is not None:
            self._inflight.add(task)
        try:
            if not self.active:
                raise EngineError("Graph renderer is not active")
            outcome.enter(RenderState.PARSING)
            outcome.graph = parse_graph(source, self.defaults)
            outcome.key = digest_source(source)
            outcome.artifact = await self.produce(outcome.graph, outcome.key, outcome=outcome)
        except Exception as exc:
            outcome.failure = RenderFailure.from_exception(exc)
            present_error(outcome.failure, mount)
            outcome.enter(RenderState.REPORTED if mount.attached else RenderState.DETACHED)
            return outcome
        finally:
            if task is not None:
                self._inflight.discard(task)

        if mount.show_artifact(outcome.artifact):
            outcome.enter(RenderState.MOUNTED)
        else:
            logger.debug("Mount point %r detached before render finished", mount.block_id)
            outcome.enter(RenderState.DETACHED)
        return outcome

    async def produce(
        self,
        graph: Graph,
        key: str,
        *,
        outcome: Optional[RenderOutcome] = None,
    ) -> str:
        """Return the artifact for ``graph``, from cache or from the engine.

        Parameters
        ----------
        graph : Graph
            Parsed model to render.
        key : str
            Cache key of the source text ``graph`` was parsed from.
        outcome : RenderOutcome, optional
            Receives the visited states.

        Raises
        ------
        EngineError
            If the engine fails, times out, or the renderer is inactive.
        """
        track = outcome.enter if outcome is not None else (lambda state: None)

        track(RenderState.CACHE_LOOKUP)
        cached = await self._lookup(key)
        if cached is not None:
            track(RenderState.CACHE_HIT)
            return cached
        track(RenderState.CACHE_MISS)

        async with self._engine_lock:
            # The entry may have been filled while this request waited.
            cached = await self._lookup(key)
            if cached is not None:
                track(RenderState.CACHE_HIT)
                return cached
            engine = self._engine
            if engine is None:
                raise EngineError("Graph renderer is not active")
            track(RenderState.INVOKING)
            self.invocations += 1
            try:
                artifact = await asyncio.wait_for(
                    engine.render(graph.expressions, graph.options),
                    timeout=self.engine_timeout,
                )
            except asyncio.TimeoutError:
                track(RenderState.FAILURE)
                raise EngineError(
                    f"Graphing engine did not respond within {self.engine_timeout} seconds"
                ) from None
            except GraphError:
                track(RenderState.FAILURE)
                raise
            except Exception as exc:
                track(RenderState.FAILURE)
                raise EngineError(f"Graphing engine failed: {exc}") from exc
            track(RenderState.SUCCESS)

            # Written under the lock so that waiters see the entry on re-check.
            if self.cache is not None:
                track(RenderState.CACHING)
                try:
                    await self.cache.set(key, artifact)
                except Exception as exc:
                    logger.warning("Could not cache rendered graph %s: %s", key, exc)
        return artifact

    async def _lookup(self, key: str) -> Optional[str]:
        if self.cache is None:
            return None
        try:
            return await self.cache.get(key)
        except Exception as exc:
            logger.warning("Cache lookup failed for %s, treating as miss: %s", key, exc)
            return None
