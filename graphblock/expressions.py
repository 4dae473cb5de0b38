"""Expression parsing for the Plotly engine adapter.

The graph text keeps each expression as an opaque string; only the engine
needs to understand it. This module turns one expression line into a
:class:`Curve` the engine can sample.

Supported forms
---------------
- ``y=f(x)`` or a bare ``f(x)``: a function of ``x``.
- ``x=g(y)``: a function of ``y`` (``x=2`` is a vertical line).

Each side is parsed as LaTeX when it contains a backslash (``\\sin(x)``,
``\\frac{1}{x}``) and as plain SymPy syntax otherwise, with ``^`` accepted as
power and implicit multiplication enabled (``2x``).

LaTeX parsing prefers SymPy's ``lark`` backend and falls back to ``antlr``.
Plain syntax is parsed against a whitelist of SymPy names (see
:mod:`graphblock.symbolic`); constant powers are size-checked on the
unevaluated tree before SymPy is allowed to evaluate them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, List

import numpy as np
import sympy as sp
from sympy.core.expr import Expr
from sympy.core.function import AppliedUndef
from sympy.core.symbol import Symbol
from sympy.parsing.latex import parse_latex as _sympy_parse_latex
from sympy.parsing.sympy_parser import implicit_multiplication_application

from .errors import EngineError
from .graph import DegreeMode
from .symbolic import NUMERIC_TRANSFORMATIONS, bound_powers, parse_restricted

__all__ = ["Curve", "LatexParseError", "parse_latex", "parse_expression", "X", "Y"]


X = sp.Symbol("x", real=True)
Y = sp.Symbol("y", real=True)

_TRANSFORMATIONS = NUMERIC_TRANSFORMATIONS + (implicit_multiplication_application,)

_LOCALS = {"x": X, "y": Y}

_LATEX_BACKENDS = ("lark", "antlr")

_FORWARD_TRIG = (sp.sin, sp.cos, sp.tan, sp.sec, sp.csc, sp.cot)
_INVERSE_TRIG = (sp.asin, sp.acos, sp.atan, sp.asec, sp.acsc, sp.acot)


class LatexParseError(RuntimeError):
    """Raised when no configured SymPy LaTeX backend can parse the input."""


def parse_latex(tex: str) -> sp.Basic:
    """Parse LaTeX into a SymPy expression, trying each backend in turn.

    A backend that raises, or that returns something other than a SymPy
    object (``lark`` can hand back a raw parse tree for ambiguous input), is
    skipped in favour of the next one.

    Raises
    ------
    LatexParseError
        If every backend fails. The message lists each backend's reason.
    """
    reasons: List[str] = []
    for backend in _LATEX_BACKENDS:
        try:
            result = _sympy_parse_latex(tex, backend=backend)
        except Exception as e:
            reasons.append(f"{backend}: {type(e).__name__}: {e}")
            continue
        if isinstance(result, sp.Basic):
            return result
        reasons.append(f"{backend}: returned {type(result).__name__}, not a SymPy expression")
    raise LatexParseError(f"Could not parse LaTeX {tex!r} ({'; '.join(reasons)})")


@dataclass(frozen=True)
class Curve:
    """One plottable curve.

    Parameters
    ----------
    source : str
        The expression line as written.
    var : sympy.Symbol
        Independent variable, ``X`` or ``Y``.
    expr : sympy.Expr
        Dependent value as a function of ``var``.
    """

    source: str
    var: Symbol
    expr: Expr

    @property
    def is_function_of_x(self) -> bool:
        return self.var == X

    def compile(self) -> Callable[[np.ndarray], np.ndarray]:
        """Return a vectorised NumPy callable for ``expr``."""
        fn = sp.lambdify(self.var, self.expr, modules="numpy")

        def evaluate(values: np.ndarray) -> np.ndarray:
            with np.errstate(all="ignore"):
                result = np.asarray(fn(values))
            if result.shape != values.shape:
                result = np.broadcast_to(result, values.shape)
            if np.iscomplexobj(result):
                result = np.where(np.abs(result.imag) < 1e-12, result.real, np.nan)
            return result.astype(float)

        return evaluate


def _parse_side(text: str) -> Any:
    text = text.strip()
    if not text:
        raise EngineError("Empty expression side")
    if "\\" in text:
        try:
            parsed = parse_latex(text)
        except LatexParseError as e:
            raise EngineError(f"Could not parse expression {text!r}") from e
    else:
        try:
            bound_powers(
                parse_restricted(
                    text, evaluate=False, local_dict=_LOCALS, transformations=_TRANSFORMATIONS
                )
            )
            parsed = parse_restricted(text, local_dict=_LOCALS, transformations=_TRANSFORMATIONS)
        except ValueError as e:
            raise EngineError(f"Could not parse expression {text!r}: {e}") from e
    # LaTeX parsing creates plain symbols; rebind them to the real-valued ones.
    return parsed.subs({sp.Symbol("x"): X, sp.Symbol("y"): Y})


def _apply_degree_mode(expr: Expr, mode: DegreeMode) -> Expr:
    """Rewrite trigonometric functions to take and return degrees."""
    if mode is not DegreeMode.DEGREES:
        return expr
    factor = sp.pi / 180
    for fn in _FORWARD_TRIG:
        expr = expr.replace(fn, lambda arg, fn=fn: fn(arg * factor))
    for fn in _INVERSE_TRIG:
        expr = expr.replace(fn, lambda arg, fn=fn: fn(arg) / factor)
    return expr


def parse_expression(text: str, degree_mode: DegreeMode = DegreeMode.RADIANS) -> Curve:
    """Parse one expression line into a :class:`Curve`.

    Raises
    ------
    EngineError
        If the line cannot be parsed or is not an explicit function of ``x``
        or ``y``.
    """
    parts = text.split("=")
    if len(parts) == 1:
        lhs, rhs = Y, _parse_side(parts[0])
    elif len(parts) == 2:
        lhs, rhs = _parse_side(parts[0]), _parse_side(parts[1])
    else:
        raise EngineError(f"Expression {text!r} has more than one '='")

    if lhs == Y:
        var = X
    elif lhs == X:
        var = Y
    else:
        raise EngineError(f"Expression {text!r} must be of the form y=f(x) or x=g(y)")

    if not isinstance(rhs, Expr):
        raise EngineError(f"Expression {text!r} does not describe a value")
    unknown = rhs.free_symbols - {var}
    if unknown:
        names = ", ".join(sorted(str(s) for s in unknown))
        raise EngineError(f"Expression {text!r} uses undefined symbols: {names}")
    undefined = rhs.atoms(AppliedUndef)
    if undefined:
        names = ", ".join(sorted(str(f.func) for f in undefined))
        raise EngineError(f"Expression {text!r} uses unknown functions: {names}")

    return Curve(source=text, var=var, expr=_apply_degree_mode(rhs, degree_mode))
