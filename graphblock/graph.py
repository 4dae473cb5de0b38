"""Immutable specification model for one embedded graph.

Purpose
-------
A ``Graph`` is the parsed, validated description of one graph: the ordered
expressions to plot plus a fixed-shape record of view/display options. The
model is pure data; the only behaviour it carries is validation.

Concepts and structure
----------------------
- ``DegreeMode`` selects how trigonometric functions interpret angles.
- ``GraphOptions`` is the options record. The same record doubles as the
  persisted ``graph_settings`` defaults, so its field names follow the
  persisted (camelCase) key names.
- ``OPTION_FIELDS`` lists every option name the parser recognises, mapped to
  its declared value type.
- ``Graph`` pairs an expression tuple with an options record.

Important gotchas
-----------------
- Both records are frozen. Use :func:`dataclasses.replace` to derive an edited
  copy; the copy has a new cache key because the cache is keyed on the source
  text that produced it.
- ``GraphOptions`` does not validate on construction so that persisted
  settings can be loaded and repaired; call :meth:`GraphOptions.validate`.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Tuple, Type

from .errors import ParseError

__all__ = ["DegreeMode", "GraphOptions", "Graph", "OPTION_FIELDS"]


class DegreeMode(str, Enum):
    """Angle unit used by trigonometric functions."""

    RADIANS = "Radians"
    DEGREES = "Degrees"


@dataclass(frozen=True)
class GraphOptions:
    """View window and display options of a graph.

    Parameters
    ----------
    width, height : int
        Rendered size in pixels. Must be positive.
    left, right : float
        Horizontal view bounds, ``left < right``.
    bottom, top : float
        Vertical view bounds, ``bottom < top``.
    grid : bool
        Whether grid lines are drawn.
    degreeMode : DegreeMode
        Angle unit for trigonometric functions.
    showXAxis, showYAxis : bool
        Whether the axis lines through the origin are drawn.
    invertedColors : bool
        Whether to render light-on-dark.
    hideAxisNumbers : bool
        Whether tick labels are hidden.
    """

    width: int = 600
    height: int = 400
    left: float = -7.0
    right: float = 7.0
    bottom: float = -7.0
    top: float = 7.0
    grid: bool = True
    degreeMode: DegreeMode = DegreeMode.RADIANS
    showXAxis: bool = True
    showYAxis: bool = True
    invertedColors: bool = False
    hideAxisNumbers: bool = False

    def validate(self) -> "GraphOptions":
        """Check structural invariants and return ``self``.

        Raises
        ------
        ParseError
            If a size is not positive, a bound is not finite, or a bound pair
            is empty or inverted.
        """
        for name in ("width", "height"):
            value = getattr(self, name)
            if value <= 0:
                raise ParseError(f"Option '{name}' must be a positive integer, got {value}")
        for name in ("left", "right", "bottom", "top"):
            value = getattr(self, name)
            if not math.isfinite(value):
                raise ParseError(f"Option '{name}' must be a finite number, got {value}")
        if self.left >= self.right:
            raise ParseError(
                f"Right bound ({self.right}) must be greater than left bound ({self.left})"
            )
        if self.bottom >= self.top:
            raise ParseError(
                f"Top bound ({self.top}) must be greater than bottom bound ({self.bottom})"
            )
        return self

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GraphOptions":
        """Build options from a persisted ``graph_settings`` mapping.

        Unknown keys are ignored and missing keys take the class defaults.
        Values are coerced to the declared field types. String values are
        read the way block text is, so ``"false"`` is ``False``.

        Raises
        ------
        ValueError
            If a value cannot be converted.
        """
        from .graph_parser import convert_option

        kwargs: Dict[str, Any] = {}
        for name, kind in OPTION_FIELDS.items():
            if name not in data:
                continue
            value = data[name]
            if isinstance(value, str):
                kwargs[name] = convert_option(name, value)
            elif kind is DegreeMode:
                kwargs[name] = DegreeMode(value)
            elif kind is bool:
                kwargs[name] = bool(value)
            else:
                kwargs[name] = kind(value)
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Return the persisted ``graph_settings`` mapping."""
        data = asdict(self)
        data["degreeMode"] = self.degreeMode.value
        return data


OPTION_FIELDS: Dict[str, Type[Any]] = {
    "width": int,
    "height": int,
    "left": float,
    "right": float,
    "bottom": float,
    "top": float,
    "grid": bool,
    "degreeMode": DegreeMode,
    "showXAxis": bool,
    "showYAxis": bool,
    "invertedColors": bool,
    "hideAxisNumbers": bool,
}


@dataclass(frozen=True)
class Graph:
    """One parsed graph: expressions in plot order plus display options."""

    expressions: Tuple[str, ...]
    options: GraphOptions

    @classmethod
    def parse(cls, source: str, defaults: GraphOptions) -> "Graph":
        """Parse embedded graph text. See :func:`graphblock.graph_parser.parse_graph`."""
        from .graph_parser import parse_graph

        return parse_graph(source, defaults)
