"""Conformance suite shared by every render cache backend."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest

from graphblock.cache import (
    FilesystemCache,
    MemoryCache,
    RenderCache,
    create_cache,
    digest_source,
)
from graphblock.errors import CacheError
from graphblock.settings import CacheLocation, CacheSettings


@pytest.fixture(params=["memory", "filesystem"])
def backend(request, tmp_path: Path) -> RenderCache:
    if request.param == "memory":
        return MemoryCache()
    return FilesystemCache(tmp_path / "cache", extension="svg")


KEY = digest_source("y=x^2\nwidth=800")
OTHER_KEY = digest_source("y=x")


def test_get_on_empty_backend_is_absent(backend: RenderCache) -> None:
    assert asyncio.run(backend.get(KEY)) is None


def test_value_is_present_after_set(backend: RenderCache) -> None:
    async def scenario():
        await backend.set(KEY, "<svg>a</svg>")
        return await backend.get(KEY), await backend.get(OTHER_KEY)

    hit, miss = asyncio.run(scenario())
    assert hit == "<svg>a</svg>"
    assert miss is None


def test_overwrite_is_idempotent(backend: RenderCache) -> None:
    async def scenario():
        await backend.set(KEY, "<svg>a</svg>")
        await backend.set(KEY, "<svg>a</svg>")
        return await backend.get(KEY)

    assert asyncio.run(scenario()) == "<svg>a</svg>"


def test_concurrent_identical_writes_converge(backend: RenderCache) -> None:
    async def scenario():
        await asyncio.gather(*(backend.set(KEY, "<svg>same</svg>") for _ in range(8)))
        return await backend.get(KEY)

    assert asyncio.run(scenario()) == "<svg>same</svg>"


def test_non_ascii_artifacts_round_trip(backend: RenderCache) -> None:
    async def scenario():
        await backend.set(KEY, "<svg>θ ≤ π</svg>")
        return await backend.get(KEY)

    assert asyncio.run(scenario()) == "<svg>θ ≤ π</svg>"


def test_digest_is_lowercase_sha256_hex() -> None:
    key = digest_source("y=x")
    assert len(key) == 64
    assert key == key.lower()
    assert digest_source("y=x") == key


def test_digest_normalises_line_endings_but_not_formatting() -> None:
    assert digest_source("y=x\r\nwidth=800") == digest_source("y=x\nwidth=800")
    assert digest_source("y=x\nwidth=800") != digest_source("y = x\nwidth=800")


def test_filesystem_layout_uses_prefix_digest_and_extension(tmp_path: Path) -> None:
    cache = FilesystemCache(tmp_path / "graphs", prefix="desmos-graph", extension=".svg")
    asyncio.run(cache.set(KEY, "<svg/>"))

    files = sorted(p.name for p in (tmp_path / "graphs").iterdir())
    assert files == [f"desmos-graph-{KEY}.svg"]


def test_filesystem_presence_of_file_is_a_hit(tmp_path: Path) -> None:
    directory = tmp_path / "graphs"
    directory.mkdir()
    (directory / f"graph-{KEY}.html").write_text("<div>prewritten</div>", encoding="utf-8")

    cache = FilesystemCache(directory)
    assert asyncio.run(cache.get(KEY)) == "<div>prewritten</div>"


def test_filesystem_leaves_no_temporary_files(tmp_path: Path) -> None:
    cache = FilesystemCache(tmp_path)
    asyncio.run(cache.set(KEY, "<svg/>"))
    assert [p.name for p in tmp_path.iterdir()] == [f"graph-{KEY}.html"]


def test_filesystem_rejects_malformed_keys(tmp_path: Path) -> None:
    cache = FilesystemCache(tmp_path)
    with pytest.raises(ValueError):
        cache.path_for("../escape")
    assert asyncio.run(cache.get("../escape")) is None
    with pytest.raises(CacheError):
        asyncio.run(cache.set("NOT-A-DIGEST", "x"))


def test_filesystem_write_failure_raises_cache_error(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    cache = FilesystemCache(blocker / "cache")

    with pytest.raises(CacheError):
        asyncio.run(cache.set(KEY, "<svg/>"))


def test_filesystem_directory_in_place_of_entry_is_a_miss(tmp_path: Path) -> None:
    cache = FilesystemCache(tmp_path)
    cache.path_for(KEY).mkdir()
    assert asyncio.run(cache.get(KEY)) is None


def test_filesystem_read_failure_is_logged_miss(tmp_path: Path, caplog) -> None:
    cache = FilesystemCache(tmp_path)
    cache.path_for(KEY).write_bytes(b"\xff\xfe\xfd")

    with caplog.at_level(logging.WARNING, logger="graphblock.cache"):
        assert asyncio.run(cache.get(KEY)) is None
    assert "treating as miss" in caplog.text


def test_create_cache_selects_backend_from_settings(tmp_path: Path) -> None:
    assert create_cache(CacheSettings(enabled=False)) is None
    assert isinstance(create_cache(CacheSettings()), MemoryCache)

    fs = create_cache(
        CacheSettings(location=CacheLocation.FILESYSTEM, directory="graph-cache"),
        base_dir=tmp_path,
        extension="svg",
    )
    assert isinstance(fs, FilesystemCache)
    assert fs.directory == tmp_path / "graph-cache"
    assert fs.extension == "svg"


def test_create_cache_without_directory_falls_back_to_memory(caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="graphblock.cache"):
        cache = create_cache(CacheSettings(location=CacheLocation.FILESYSTEM))
    assert isinstance(cache, MemoryCache)
    assert "falling back to memory" in caplog.text
