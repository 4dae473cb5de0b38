"""Error taxonomy shared by every rendering stage.

Purpose
-------
Every stage of the render pipeline (parsing, cache access, engine invocation)
reports failures through the small closed set of error kinds defined here. The
render orchestrator converts whatever it catches into a :class:`RenderFailure`
and hands that single value to the error presenter, so the presenter never has
to inspect arbitrary exception types.

Kinds
-----
- ``Parse``: malformed or invalid graph text. Always shown to the author.
- ``Cache``: backend I/O failure. Logged and recovered locally, never shown.
- ``Engine``: the graphing engine failed or could not complete. Shown.
- ``Unexpected``: anything else. Shown generically, logged in full.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

__all__ = [
    "ErrorKind",
    "GraphError",
    "ParseError",
    "CacheError",
    "EngineError",
    "RenderFailure",
]


class ErrorKind(str, Enum):
    """Closed enumeration of render failure kinds."""

    PARSE = "Parse"
    CACHE = "Cache"
    ENGINE = "Engine"
    UNEXPECTED = "Unexpected"


class GraphError(Exception):
    """Base class for failures raised by graphblock stages."""

    kind: ErrorKind = ErrorKind.UNEXPECTED

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ParseError(GraphError, ValueError):
    """Raised when graph text is malformed or violates an option invariant."""

    kind = ErrorKind.PARSE


class CacheError(GraphError, OSError):
    """Raised when a cache backend cannot store an artifact."""

    kind = ErrorKind.CACHE


class EngineError(GraphError, RuntimeError):
    """Raised when the graphing engine fails or cannot be reached."""

    kind = ErrorKind.ENGINE


@dataclass(frozen=True)
class RenderFailure:
    """Uniform failure value consumed by the error presenter.

    Parameters
    ----------
    kind : ErrorKind
        Which stage family produced the failure.
    message : str
        Human-readable description. For ``Unexpected`` failures this is the
        raw exception text and is not shown to the author.
    exc : BaseException or None
        Original exception, kept for operator logs.
    """

    kind: ErrorKind
    message: str
    exc: Optional[BaseException] = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> "RenderFailure":
        """Classify ``exc`` into one of the closed error kinds."""
        if isinstance(exc, GraphError):
            return cls(kind=exc.kind, message=exc.message, exc=exc)
        return cls(kind=ErrorKind.UNEXPECTED, message=f"{type(exc).__name__}: {exc}", exc=exc)

    @property
    def user_facing(self) -> bool:
        """Return True when the message may be shown inside the document."""
        return self.kind in (ErrorKind.PARSE, ErrorKind.ENGINE)
