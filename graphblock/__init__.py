"""Top-level public API for the ``graphblock`` package.

``graphblock`` renders graphs described inside fenced ``graph`` code blocks of
a document. The block text is parsed into an immutable specification,
rendered once per distinct source text through a shared graphing engine, and
the artifact is cached in memory or on disk:

>>> from graphblock import GraphOptions, parse_graph
>>> parse_graph("y=x^2\\nwidth=800", GraphOptions()).options.width
800
"""

from ._version import __version__
from .cache import FilesystemCache, MemoryCache, RenderCache, create_cache, digest_source
from .document import GraphBlock, find_graph_blocks, render_document
from .engine import GraphEngine, PlotlyEngine
from .error_view import present_error
from .errors import CacheError, EngineError, ErrorKind, GraphError, ParseError, RenderFailure
from .graph import DegreeMode, Graph, GraphOptions
from .graph_parser import parse_graph
from .mount import MountPoint
from .plugin import GraphPlugin
from .renderer import Renderer, RenderOutcome, RenderState
from .settings import (
    CacheLocation,
    CacheSettings,
    JsonDataStore,
    Settings,
    default_settings,
    load_settings,
    migrate_settings,
)

__all__ = [
    "__version__",
    "CacheError",
    "CacheLocation",
    "CacheSettings",
    "DegreeMode",
    "EngineError",
    "ErrorKind",
    "FilesystemCache",
    "Graph",
    "GraphBlock",
    "GraphEngine",
    "GraphError",
    "GraphOptions",
    "GraphPlugin",
    "JsonDataStore",
    "MemoryCache",
    "MountPoint",
    "ParseError",
    "PlotlyEngine",
    "RenderCache",
    "RenderFailure",
    "RenderOutcome",
    "RenderState",
    "Renderer",
    "Settings",
    "create_cache",
    "default_settings",
    "digest_source",
    "find_graph_blocks",
    "load_settings",
    "migrate_settings",
    "parse_graph",
    "present_error",
    "render_document",
]
