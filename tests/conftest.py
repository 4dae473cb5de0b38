from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import pytest

_START = Path(__file__).resolve().parent
_repo_root = _START
while _repo_root != _repo_root.parent and not (_repo_root / "graphblock" / "__init__.py").exists():
    _repo_root = _repo_root.parent

sys.path.insert(0, str(_repo_root))

from graphblock.engine import GraphEngine  # noqa: E402
from graphblock.errors import EngineError  # noqa: E402
from graphblock.graph import GraphOptions  # noqa: E402


class FakeEngine(GraphEngine):
    """Engine double that records calls and returns deterministic artifacts."""

    artifact_extension = "svg"

    def __init__(
        self,
        *,
        delay: float = 0.0,
        fail_with: Optional[BaseException] = None,
        gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.calls: List[Tuple[Tuple[str, ...], GraphOptions]] = []
        self.delay = delay
        self.fail_with = fail_with
        self.gate = gate
        self.active_calls = 0
        self.max_active_calls = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    async def render(self, expressions: Sequence[str], options: GraphOptions) -> str:
        if self._closed:
            raise EngineError("engine closed")
        self.calls.append((tuple(expressions), options))
        self.active_calls += 1
        self.max_active_calls = max(self.max_active_calls, self.active_calls)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_with is not None:
                raise self.fail_with
            return f"<svg data-w='{options.width}'>{'|'.join(expressions)}</svg>"
        finally:
            self.active_calls -= 1


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()
