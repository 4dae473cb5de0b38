"""Restricted SymPy parsing and bounded numeric evaluation.

Purpose
-------
Block text is written by document authors, so it is never handed to
``sympy.sympify`` or to ``parse_expr`` with its default namespace: both expose
the Python builtins to the generated code. Everything here parses against an
explicit whitelist of SymPy names, with ``__builtins__`` emptied.

Concepts and structure
----------------------
- :func:`parse_restricted` parses text with the whitelist and returns a SymPy
  object, or raises ``ValueError``. Unknown names become symbols and unknown
  calls become undefined functions; neither runs any code.
- :func:`evaluate_real` evaluates a constant expression with float
  arithmetic. Its cost is bounded by the size of the tree, so towers such as
  ``9^9^9`` overflow immediately instead of being computed exactly.
- :func:`bound_powers` inspects an *unevaluated* tree and rejects powers whose
  exact evaluation would blow up, before SymPy is asked to evaluate it.

Important gotchas
-----------------
- Pass ``evaluate=False`` when the result will be checked by
  :func:`evaluate_real` or :func:`bound_powers`. With automatic evaluation the
  expensive work happens inside the parser.
- ``evaluate_real`` raises ``ValueError`` for anything that is not a finite
  real number, including domain errors such as ``sqrt(-1)``.

Examples
--------
>>> evaluate_real(parse_restricted("-2*pi", evaluate=False))  # doctest: +ELLIPSIS
-6.28318...
"""

from __future__ import annotations

import math
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import sympy as sp
from sympy.parsing.sympy_parser import convert_xor, parse_expr, standard_transformations

__all__ = [
    "NUMERIC_TRANSFORMATIONS",
    "MAX_SYMBOLIC_EXPONENT",
    "restricted_namespace",
    "parse_restricted",
    "evaluate_real",
    "bound_powers",
]


NUMERIC_TRANSFORMATIONS: Tuple[Any, ...] = standard_transformations + (convert_xor,)

#: Largest constant exponent allowed on a non-constant base, e.g. ``x^1000``.
MAX_SYMBOLIC_EXPONENT = 1000

_NAMES: Dict[str, Any] = {
    # Constructors emitted by the parser's own code generation.
    "Integer": sp.Integer,
    "Float": sp.Float,
    "Rational": sp.Rational,
    "Symbol": sp.Symbol,
    "Function": sp.Function,
    "Add": sp.Add,
    "Mul": sp.Mul,
    "Pow": sp.Pow,
    "pi": sp.pi,
    "E": sp.E,
    "e": sp.E,
    "sqrt": sp.sqrt,
    "sin": sp.sin,
    "cos": sp.cos,
    "tan": sp.tan,
    "sec": sp.sec,
    "csc": sp.csc,
    "cot": sp.cot,
    "asin": sp.asin,
    "acos": sp.acos,
    "atan": sp.atan,
    "asec": sp.asec,
    "acsc": sp.acsc,
    "acot": sp.acot,
    "sinh": sp.sinh,
    "cosh": sp.cosh,
    "tanh": sp.tanh,
    "exp": sp.exp,
    "log": sp.log,
    "ln": sp.log,
    "Abs": sp.Abs,
    "abs": sp.Abs,
    "floor": sp.floor,
    "ceiling": sp.ceiling,
    "sign": sp.sign,
}


def _reciprocal(fn: Callable[[float], float]) -> Callable[[float], float]:
    return lambda value: 1.0 / fn(value)


_REAL_FUNCTIONS: Dict[Any, Callable[[float], float]] = {
    sp.sin: math.sin,
    sp.cos: math.cos,
    sp.tan: math.tan,
    sp.sec: _reciprocal(math.cos),
    sp.csc: _reciprocal(math.sin),
    sp.cot: _reciprocal(math.tan),
    sp.asin: math.asin,
    sp.acos: math.acos,
    sp.atan: math.atan,
    sp.asec: lambda value: math.acos(1.0 / value),
    sp.acsc: lambda value: math.asin(1.0 / value),
    sp.acot: lambda value: math.atan(1.0 / value),
    sp.sinh: math.sinh,
    sp.cosh: math.cosh,
    sp.tanh: math.tanh,
    sp.exp: math.exp,
    sp.log: math.log,
    sp.Abs: abs,
    sp.floor: lambda value: float(math.floor(value)),
    sp.ceiling: lambda value: float(math.ceil(value)),
    sp.sign: lambda value: math.copysign(1.0, value) if value else 0.0,
}


def restricted_namespace() -> Dict[str, Any]:
    """Return a fresh ``global_dict`` for ``parse_expr`` without builtins."""
    names = dict(_NAMES)
    names["__builtins__"] = {}
    return names


def parse_restricted(
    text: str,
    *,
    evaluate: bool = True,
    local_dict: Optional[Mapping[str, Any]] = None,
    transformations: Tuple[Any, ...] = NUMERIC_TRANSFORMATIONS,
) -> sp.Basic:
    """Parse ``text`` against the whitelisted namespace.

    Raises
    ------
    ValueError
        If the text does not parse, or parses to something that is not a
        SymPy object (``None``, a tuple, a class).
    """
    try:
        parsed = parse_expr(
            text,
            local_dict=dict(local_dict or {}),
            global_dict=restricted_namespace(),
            transformations=transformations,
            evaluate=evaluate,
        )
    except Exception as e:
        raise ValueError(f"could not parse {text!r}: {type(e).__name__}: {e}") from e
    if not isinstance(parsed, sp.Basic):
        raise ValueError(f"{text!r} is not a mathematical expression")
    return parsed


def _evaluate(node: sp.Basic) -> float:
    if node.is_Number or isinstance(node, sp.NumberSymbol):
        return float(node)
    if isinstance(node, sp.Add):
        return math.fsum(_evaluate(arg) for arg in node.args)
    if isinstance(node, sp.Mul):
        result = 1.0
        for arg in node.args:
            result *= _evaluate(arg)
        return result
    if isinstance(node, sp.Pow):
        return math.pow(_evaluate(node.base), _evaluate(node.exp))
    fn = _REAL_FUNCTIONS.get(node.func)
    if fn is not None and len(node.args) == 1:
        return fn(_evaluate(node.args[0]))
    raise ValueError(f"{node} is not a number")


def evaluate_real(expr: sp.Basic) -> float:
    """Evaluate a constant expression to a finite float.

    Raises
    ------
    ValueError
        If the expression has free symbols or unknown functions, leaves the
        real domain, or overflows.
    """
    try:
        value = _evaluate(expr)
    except OverflowError:
        raise ValueError(f"{expr} is too large") from None
    except ZeroDivisionError:
        raise ValueError(f"{expr} divides by zero") from None
    except TypeError:
        raise ValueError(f"{expr} is not a real number") from None
    if not math.isfinite(value):
        raise ValueError(f"{expr} is not a finite number")
    return value


def bound_powers(expr: sp.Basic, max_exponent: float = MAX_SYMBOLIC_EXPONENT) -> None:
    """Reject powers in an unevaluated tree that are too large to evaluate exactly.

    A constant power must fit in a float. A power with a non-constant base
    may have a constant exponent of at most ``max_exponent`` in magnitude.
    Powers whose size cannot be estimated (domain errors, undefined
    functions) are left for later stages to report.

    Raises
    ------
    ValueError
        If a power is too large.
    """
    for node in sp.preorder_traversal(expr):
        if not isinstance(node, sp.Pow) or node.exp.free_symbols:
            continue
        try:
            if node.base.free_symbols:
                too_large = not abs(_evaluate(node.exp)) <= max_exponent
            else:
                too_large = not math.isfinite(_evaluate(node))
        except OverflowError:
            too_large = True
        except (ValueError, ZeroDivisionError, TypeError):
            continue
        if too_large:
            raise ValueError(f"power {node} is too large")
