from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional
from unittest.mock import patch

import pytest
from conftest import FakeEngine

from graphblock.cache import FilesystemCache, MemoryCache, RenderCache, digest_source
from graphblock.error_view import UNEXPECTED_MESSAGE
from graphblock.errors import EngineError, ErrorKind
from graphblock.graph import GraphOptions
from graphblock.graph_parser import parse_graph
from graphblock.mount import MountPoint
from graphblock.renderer import Renderer, RenderState

S = RenderState


def _renderer(engine: FakeEngine, cache: Optional[RenderCache] = None, **kwargs) -> Renderer:
    renderer = Renderer(lambda: engine, cache, GraphOptions(width=600, height=400), **kwargs)
    renderer.activate()
    return renderer


@pytest.fixture(params=["memory", "filesystem"])
def cache(request, tmp_path: Path) -> RenderCache:
    if request.param == "memory":
        return MemoryCache()
    return FilesystemCache(tmp_path / "cache", extension="svg")


def test_second_render_is_served_from_cache(fake_engine: FakeEngine, cache: RenderCache) -> None:
    async def scenario():
        renderer = _renderer(fake_engine, cache)
        first_mount, second_mount = MountPoint("a"), MountPoint("b")
        first = await renderer.render("y=x^2\nwidth=800", first_mount)
        second = await renderer.render("y=x^2\nwidth=800", second_mount)
        return renderer, first, second, first_mount, second_mount

    renderer, first, second, first_mount, second_mount = asyncio.run(scenario())

    assert len(fake_engine.calls) == 1
    assert renderer.invocations == 1
    assert first.states == [
        S.PARSING, S.CACHE_LOOKUP, S.CACHE_MISS, S.INVOKING, S.SUCCESS, S.CACHING, S.MOUNTED,
    ]
    assert second.states == [S.PARSING, S.CACHE_LOOKUP, S.CACHE_HIT, S.MOUNTED]
    assert first.done and second.done
    assert first.key == second.key == digest_source("y=x^2\nwidth=800")
    assert first_mount.content == second_mount.content
    assert first_mount.content is not None and not first_mount.is_error


def test_scenario_a_end_to_end(fake_engine: FakeEngine) -> None:
    async def scenario():
        renderer = _renderer(fake_engine, MemoryCache())
        first = await renderer.render("y=x^2\nwidth=800", MountPoint())
        second = await renderer.render("y=x^2\nwidth=800", MountPoint())
        return first, second

    first, second = asyncio.run(scenario())

    assert first.graph is not None
    assert first.graph.expressions == ("y=x^2",)
    assert first.graph.options.width == 800
    assert first.graph.options.height == 400
    assert S.INVOKING in first.states
    assert S.INVOKING not in second.states
    (expressions, options), = fake_engine.calls
    assert expressions == ("y=x^2",)
    assert options.width == 800


def test_scenario_b_reports_bound_violation_without_engine(fake_engine: FakeEngine) -> None:
    mount = MountPoint()
    outcome = asyncio.run(_renderer(fake_engine, MemoryCache()).render("left=10\nright=2\ny=x", mount))

    assert outcome.states == [S.PARSING, S.REPORTED]
    assert outcome.failure is not None and outcome.failure.kind is ErrorKind.PARSE
    assert mount.is_error
    assert "left bound" in (mount.content or "")
    assert fake_engine.calls == []


def test_cache_write_failure_still_mounts(fake_engine: FakeEngine, tmp_path: Path, caplog) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not directory", encoding="utf-8")
    mount = MountPoint()

    with caplog.at_level(logging.WARNING, logger="graphblock.renderer"):
        outcome = asyncio.run(
            _renderer(fake_engine, FilesystemCache(blocker / "cache")).render("y=x", mount)
        )

    assert outcome.state is S.MOUNTED
    assert outcome.failure is None
    assert S.CACHING in outcome.states
    assert mount.content == outcome.artifact
    assert not mount.is_error
    assert "Could not cache rendered graph" in caplog.text


class _BrokenCache(RenderCache):
    async def get(self, key):
        raise OSError("disk on fire")

    async def set(self, key, artifact):
        raise OSError("disk on fire")


def test_cache_that_violates_get_contract_degrades_to_miss(fake_engine: FakeEngine) -> None:
    mount = MountPoint()
    outcome = asyncio.run(_renderer(fake_engine, _BrokenCache()).render("y=x", mount))

    assert outcome.state is S.MOUNTED
    assert len(fake_engine.calls) == 1


def test_disabled_cache_invokes_engine_every_time(fake_engine: FakeEngine) -> None:
    async def scenario():
        renderer = _renderer(fake_engine, None)
        return [await renderer.render("y=x", MountPoint()) for _ in range(2)]

    outcomes = asyncio.run(scenario())

    assert len(fake_engine.calls) == 2
    assert all(S.CACHING not in o.states for o in outcomes)
    assert all(o.state is S.MOUNTED for o in outcomes)


def test_engine_error_is_reported_with_diagnostic_text() -> None:
    engine = FakeEngine(fail_with=EngineError("Expression 'y=?' could not be parsed"))
    mount = MountPoint()
    outcome = asyncio.run(_renderer(engine, MemoryCache()).render("y=?", mount))

    assert outcome.states[-3:] == [S.INVOKING, S.FAILURE, S.REPORTED]
    assert outcome.failure is not None and outcome.failure.kind is ErrorKind.ENGINE
    assert "could not be parsed" in (mount.content or "")


def test_engine_internal_exception_becomes_engine_error() -> None:
    engine = FakeEngine(fail_with=ZeroDivisionError("division by zero"))
    mount = MountPoint()
    outcome = asyncio.run(_renderer(engine, MemoryCache()).render("y=1/0", mount))

    assert outcome.failure is not None and outcome.failure.kind is ErrorKind.ENGINE
    assert "Graphing engine failed: division by zero" in (mount.content or "")


def test_failed_render_is_not_cached() -> None:
    engine = FakeEngine(fail_with=EngineError("nope"))
    cache = MemoryCache()
    asyncio.run(_renderer(engine, cache).render("y=x", MountPoint()))
    assert len(cache) == 0


def test_engine_timeout_is_reported() -> None:
    engine = FakeEngine(delay=1.0)
    mount = MountPoint()
    outcome = asyncio.run(
        _renderer(engine, MemoryCache(), engine_timeout=0.01).render("y=x", mount)
    )

    assert outcome.state is S.REPORTED
    assert outcome.failure is not None and outcome.failure.kind is ErrorKind.ENGINE
    assert "did not respond" in (mount.content or "")


def test_unexpected_error_is_genericized_and_logged(fake_engine: FakeEngine, caplog) -> None:
    mount = MountPoint("block-7")
    with patch("graphblock.renderer.parse_graph", side_effect=KeyError("internal detail")):
        with caplog.at_level(logging.ERROR, logger="graphblock.error_view"):
            outcome = asyncio.run(_renderer(fake_engine, MemoryCache()).render("y=x", mount))

    assert outcome.failure is not None and outcome.failure.kind is ErrorKind.UNEXPECTED
    assert UNEXPECTED_MESSAGE in (mount.content or "")
    assert "internal detail" not in (mount.content or "")
    assert "internal detail" in caplog.text
    assert "block-7" in caplog.text


def test_engine_invocations_are_serialized() -> None:
    engine = FakeEngine(delay=0.01)

    async def scenario():
        renderer = _renderer(engine, MemoryCache())
        mounts = [MountPoint(str(i)) for i in range(5)]
        outcomes = await asyncio.gather(
            *(renderer.render(f"y={i}x", mount) for i, mount in enumerate(mounts))
        )
        return outcomes, mounts

    outcomes, mounts = asyncio.run(scenario())

    assert engine.max_active_calls == 1
    assert len(engine.calls) == 5
    assert all(o.state is S.MOUNTED for o in outcomes)
    assert len({m.content for m in mounts}) == 5


def test_concurrent_identical_renders_invoke_engine_once() -> None:
    engine = FakeEngine(delay=0.01)

    async def scenario():
        renderer = _renderer(engine, MemoryCache())
        return await asyncio.gather(*(renderer.render("y=x^3", MountPoint()) for _ in range(4)))

    outcomes = asyncio.run(scenario())

    assert len(engine.calls) == 1
    assert sum(S.INVOKING in o.states for o in outcomes) == 1
    assert len({o.artifact for o in outcomes}) == 1


def test_one_failing_request_does_not_affect_another() -> None:
    engine = FakeEngine()

    async def scenario():
        renderer = _renderer(engine, MemoryCache())
        good, bad = MountPoint("good"), MountPoint("bad")
        await asyncio.gather(
            renderer.render("y=x", good),
            renderer.render("width=0\ny=x", bad),
        )
        return good, bad

    good, bad = asyncio.run(scenario())
    assert not good.is_error and good.content
    assert bad.is_error


def test_render_before_activation_is_reported(fake_engine: FakeEngine) -> None:
    built = []
    renderer = Renderer(lambda: built.append(1) or fake_engine, MemoryCache(), GraphOptions())
    mount = MountPoint()

    outcome = asyncio.run(renderer.render("y=x", mount))

    assert outcome.states == [S.REPORTED]
    assert "not active" in (mount.content or "")
    assert built == []


def test_engine_is_created_once_per_activation(fake_engine: FakeEngine) -> None:
    built = []

    def factory():
        built.append(1)
        return fake_engine

    renderer = Renderer(factory, MemoryCache(), GraphOptions())
    renderer.activate()
    with pytest.raises(RuntimeError):
        renderer.activate()

    async def scenario():
        await renderer.render("y=x", MountPoint())
        await renderer.render("y=2x", MountPoint())

    asyncio.run(scenario())
    assert built == [1]


def test_detached_mount_is_not_written() -> None:
    async def scenario():
        gate = asyncio.Event()
        engine = FakeEngine(gate=gate)
        cache = MemoryCache()
        renderer = _renderer(engine, cache)
        mount = MountPoint()
        task = renderer.schedule("y=x", mount)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        mount.detach()
        gate.set()
        return await task, mount, cache

    outcome, mount, cache = asyncio.run(scenario())

    assert outcome.state is S.DETACHED
    assert mount.content is None
    assert outcome.key in cache


def test_cancelled_render_leaves_mount_untouched() -> None:
    async def scenario():
        engine = FakeEngine(gate=asyncio.Event())
        renderer = _renderer(engine, MemoryCache())
        mount = MountPoint()
        task = renderer.schedule("y=x", mount)
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return renderer, mount

    renderer, mount = asyncio.run(scenario())
    assert mount.content is None
    assert renderer.inflight == 0


def test_deactivate_cancels_stuck_renders_after_grace_period() -> None:
    async def scenario():
        engine = FakeEngine(gate=asyncio.Event())
        renderer = _renderer(engine, MemoryCache())
        mount = MountPoint()
        task = renderer.schedule("y=x", mount)
        await asyncio.sleep(0.01)
        await asyncio.wait_for(renderer.deactivate(grace_period=0.05), timeout=2.0)
        return engine, renderer, task, mount

    engine, renderer, task, mount = asyncio.run(scenario())

    assert task.cancelled()
    assert engine.closed
    assert renderer.engine is None
    assert mount.content is None


def test_deactivate_lets_quick_renders_finish() -> None:
    async def scenario():
        engine = FakeEngine(delay=0.01)
        renderer = _renderer(engine, MemoryCache())
        mount = MountPoint()
        task = renderer.schedule("y=x", mount)
        await asyncio.sleep(0)
        await renderer.deactivate(grace_period=5.0)
        return engine, task, mount

    engine, task, mount = asyncio.run(scenario())

    assert task.result().state is S.MOUNTED
    assert mount.content is not None
    assert engine.closed


def test_render_after_deactivation_is_reported(fake_engine: FakeEngine) -> None:
    async def scenario():
        renderer = _renderer(fake_engine, MemoryCache())
        await renderer.deactivate()
        mount = MountPoint()
        return await renderer.render("y=x", mount), mount

    outcome, mount = asyncio.run(scenario())
    assert outcome.state is S.REPORTED
    assert "not active" in (mount.content or "")
    assert fake_engine.calls == []


def test_produce_returns_artifact_without_mounting(fake_engine: FakeEngine) -> None:
    async def scenario():
        renderer = _renderer(fake_engine, MemoryCache())
        graph = parse_graph("y=x", renderer.defaults)
        key = digest_source("y=x")
        return await renderer.produce(graph, key), await renderer.produce(graph, key)

    first, second = asyncio.run(scenario())
    assert first == second
    assert len(fake_engine.calls) == 1
