"""Parser for the line-oriented graph block syntax.

Purpose
-------
Turn the body of one embedded ``graph`` code block into a validated
:class:`~graphblock.graph.Graph`. Parsing is pure and deterministic: the same
text and defaults always produce a field-for-field identical model.

Syntax
------
Two layouts are accepted.

Sectioned, with a ``---`` separator line::

    width=800
    left=-2*pi
    ---
    y=\\sin(x)
    y=x^2

Every non-blank line above the separator must be an option assignment with a
recognised name; every non-blank line below it is an expression.

Mixed, without a separator::

    y=x^2
    width=800

A ``name=value`` line whose name is a recognised option is an override; every
other non-blank line is an expression, in document order. An assignment of a
plain number or flag word to any other name except ``x`` and ``y``
(``widht=800``) is reported as an unrecognised option.

Option values
-------------
- Sizes (``width``, ``height``) are integers. Plain numbers and SymPy-evaluable
  expressions (``2*400``) are accepted when they are exact integers.
- Bounds (``left``, ``right``, ``bottom``, ``top``) are finite reals, with the
  same SymPy fallback (``-2*pi``, ``sqrt(2)``).
- Flags accept ``true/false``, ``yes/no``, ``on/off`` and ``1/0``.
- ``degreeMode`` accepts ``radians``/``rad`` and ``degrees``/``deg``.

Option names and keyword values are case-insensitive.

Examples
--------
>>> from graphblock.graph import GraphOptions
>>> graph = parse_graph("y=x^2\\nwidth=800", GraphOptions())
>>> graph.expressions
('y=x^2',)
>>> graph.options.width
800
"""

from __future__ import annotations

import math
import re
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple, Type

from .errors import ParseError
from .graph import OPTION_FIELDS, DegreeMode, Graph, GraphOptions
from .symbolic import evaluate_real, parse_restricted

__all__ = ["parse_graph", "convert_option", "SECTION_SEPARATOR"]


SECTION_SEPARATOR = "---"

_ASSIGNMENT = re.compile(r"^\s*([A-Za-z][A-Za-z0-9_]*)\s*=(.*)$")

# Characters allowed in a symbolic numeric value such as ``-2*pi`` or ``sqrt(2)``.
_SYMBOLIC_NUMBER = re.compile(r"^[\w\s.+\-*/^()]+$")
_ATTRIBUTE = re.compile(r"\.\s*[A-Za-z_]")

_OPTION_NAMES: Dict[str, str] = {name.lower(): name for name in OPTION_FIELDS}

_TRUE_WORDS = frozenset({"true", "yes", "on", "1"})
_FALSE_WORDS = frozenset({"false", "no", "off", "0"})

_PLOT_VARIABLES = frozenset({"x", "y"})

_DEGREE_WORDS: Dict[str, DegreeMode] = {
    "radians": DegreeMode.RADIANS,
    "radian": DegreeMode.RADIANS,
    "rad": DegreeMode.RADIANS,
    "degrees": DegreeMode.DEGREES,
    "degree": DegreeMode.DEGREES,
    "deg": DegreeMode.DEGREES,
}


def _to_real(text: str) -> float:
    """Convert numeric text to a finite float.

    Plain float syntax is tried first; otherwise the text is parsed, without
    evaluation, against the restricted SymPy namespace and evaluated in float
    arithmetic. Results outside the reals are rejected.
    """
    try:
        value = float(text)
    except ValueError:
        if _SYMBOLIC_NUMBER.match(text) is None or "__" in text or _ATTRIBUTE.search(text):
            raise ValueError(f"{text!r} is not a number") from None
        try:
            value = evaluate_real(parse_restricted(text, evaluate=False))
        except ValueError as e:
            raise ValueError(f"{text!r} is not a number ({e})") from e
    if not math.isfinite(value):
        raise ValueError(f"{text!r} is not a finite number")
    return value


def _to_int(text: str) -> int:
    value = _to_real(text)
    if not value.is_integer():
        raise ValueError(f"{text!r} is not an integer")
    return int(value)


def _to_bool(text: str) -> bool:
    word = text.lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    raise ValueError(f"{text!r} is not a boolean (use true or false)")


def _to_degree_mode(text: str) -> DegreeMode:
    try:
        return _DEGREE_WORDS[text.lower()]
    except KeyError:
        raise ValueError(f"{text!r} is not a degree mode (use radians or degrees)") from None


def convert_option(name: str, raw: str) -> Any:
    """Convert the raw text of one option assignment to its declared type.

    Parameters
    ----------
    name : str
        Canonical option name (a key of ``OPTION_FIELDS``).
    raw : str
        Text to the right of ``=``.

    Raises
    ------
    ParseError
        If the value is empty or cannot be converted.
    """
    kind: Type[Any] = OPTION_FIELDS[name]
    text = raw.strip()
    if not text:
        raise ParseError(f"Option '{name}' has no value")
    try:
        if kind is int:
            return _to_int(text)
        if kind is float:
            return _to_real(text)
        if kind is bool:
            return _to_bool(text)
        return _to_degree_mode(text)
    except ValueError as e:
        raise ParseError(f"Invalid value for option '{name}': {e}") from e


def _match_option(line: str) -> Optional[Tuple[str, str]]:
    """Return ``(canonical_name, raw_value)`` when ``line`` assigns a known option."""
    m = _ASSIGNMENT.match(line)
    if m is None:
        return None
    name = _OPTION_NAMES.get(m.group(1).lower())
    if name is None:
        return None
    return name, m.group(2)


def _misspelled_option(line: str) -> Optional[str]:
    """Return the name of an unknown ``name=literal`` assignment, else ``None``.

    Lines assigning to ``x`` or ``y``, or with a right-hand side that is not a
    plain number or flag word, are left alone as expressions.
    """
    m = _ASSIGNMENT.match(line)
    if m is None or m.group(1).lower() in _PLOT_VARIABLES:
        return None
    value = m.group(2).strip()
    if value.lower() in _TRUE_WORDS or value.lower() in _FALSE_WORDS:
        return m.group(1)
    try:
        float(value)
    except ValueError:
        return None
    return m.group(1)


_OptionLine = Tuple[int, str, str]


def _split_sections(lines: List[str]) -> Tuple[List[_OptionLine], List[str]]:
    """Split lines into ``(number, name, raw)`` option lines and expression lines."""
    separators = [i for i, line in enumerate(lines) if line.strip() == SECTION_SEPARATOR]
    if len(separators) > 1:
        raise ParseError(f"Only one '{SECTION_SEPARATOR}' separator line is allowed")

    option_lines: List[_OptionLine] = []
    expressions: List[str] = []

    if separators:
        cut = separators[0]
        for number, line in enumerate(lines[:cut], start=1):
            if not line.strip():
                continue
            matched = _match_option(line)
            if matched is None:
                m = _ASSIGNMENT.match(line)
                if m is None:
                    raise ParseError(
                        f"Line {number}: expected an option assignment 'name=value', got {line.strip()!r}"
                    )
                raise ParseError(f"Line {number}: unrecognised option '{m.group(1)}'")
            option_lines.append((number, *matched))
        expressions = [line.strip() for line in lines[cut + 1:] if line.strip()]
        return option_lines, expressions

    for number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        matched = _match_option(line)
        if matched is not None:
            option_lines.append((number, *matched))
            continue
        name = _misspelled_option(line)
        if name is not None:
            raise ParseError(f"Line {number}: unrecognised option '{name}'")
        expressions.append(line.strip())
    return option_lines, expressions


def parse_graph(source: str, defaults: GraphOptions) -> Graph:
    """Parse embedded graph text into a validated :class:`Graph`.

    Parameters
    ----------
    source : str
        Raw body of the code block.
    defaults : GraphOptions
        Values for every option the text does not override.

    Returns
    -------
    Graph
        Immutable model; ``options`` equals ``defaults`` when the text has no
        option lines.

    Raises
    ------
    ParseError
        On malformed or unrecognised option lines, unconvertible or duplicate
        values, violated bound/size invariants, or when no expression remains.
    """
    lines = source.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    option_lines, expressions = _split_sections(lines)

    overrides: Dict[str, Any] = {}
    for number, name, raw in option_lines:
        if name in overrides:
            raise ParseError(f"Line {number}: option '{name}' is set more than once")
        overrides[name] = convert_option(name, raw)

    if not expressions:
        raise ParseError("A graph must contain at least one expression")

    options = replace(defaults, **overrides).validate()
    return Graph(expressions=tuple(expressions), options=options)
