"""Markdown glue: find graph blocks in a document and render them in place."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator, List, Sequence

from .mount import MountPoint

if TYPE_CHECKING:
    from .plugin import GraphPlugin

__all__ = ["GraphBlock", "find_graph_blocks", "render_document"]


_FENCED_BLOCK = re.compile(
    r"^(?P<fence>`{3,}|~{3,})[ \t]*(?P<lang>[\w-]+)[^\n]*\n"
    r"(?P<body>.*?)"
    r"^(?P=fence)[ \t]*$",
    re.MULTILINE | re.DOTALL,
)


@dataclass(frozen=True)
class GraphBlock:
    """A fenced graph block located in a document.

    ``start`` and ``end`` delimit the whole fence, including the fence lines.
    """

    language: str
    source: str
    start: int
    end: int


def find_graph_blocks(text: str, languages: Sequence[str] = ("graph", "desmos-graph")) -> Iterator[GraphBlock]:
    """Yield the fenced blocks of ``text`` whose language tag is in ``languages``."""
    wanted = {lang.lower() for lang in languages}
    for m in _FENCED_BLOCK.finditer(text):
        lang = m.group("lang")
        if lang.lower() not in wanted:
            continue
        body = m.group("body")
        if body.endswith("\n"):
            body = body[:-1]
        yield GraphBlock(language=lang, source=body, start=m.start(), end=m.end())


async def render_document(text: str, plugin: "GraphPlugin") -> str:
    """Render every graph block of ``text`` concurrently and substitute the results.

    Each block is replaced by the content mounted for it: the rendered
    artifact or an error block.
    """
    from .plugin import BLOCK_LANGUAGES

    blocks = list(find_graph_blocks(text, BLOCK_LANGUAGES))
    mounts: List[MountPoint] = [MountPoint(f"block-{i}") for i in range(len(blocks))]
    tasks = [plugin.process_block(block.source, mount) for block, mount in zip(blocks, mounts)]
    await asyncio.gather(*(task for task in tasks if task is not None))

    pieces: List[str] = []
    cursor = 0
    for block, mount in zip(blocks, mounts):
        pieces.append(text[cursor:block.start])
        pieces.append(mount.content or "")
        cursor = block.end
    pieces.append(text[cursor:])
    return "".join(pieces)
