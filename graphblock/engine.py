"""Graphing engine interface and the Plotly-backed adapter.

Purpose
-------
The render orchestrator never evaluates or draws anything itself. It hands an
expression list and view options to a :class:`GraphEngine` and awaits the
rendered artifact. One engine instance is shared by every render of an active
plugin and is closed when the plugin deactivates.

Concepts and structure
----------------------
- :class:`GraphEngine` is the interface: ``render``, ``close``, ``closed``.
- :class:`PlotlyEngine` is the concrete adapter. It owns a single Plotly
  figure that is reset and reused for every render, so it is a single mutable
  resource and must not be driven by overlapping renders. The orchestrator
  serialises calls, and the engine also holds a thread lock around the
  figure work: a render abandoned on timeout keeps running in its worker
  thread and the next render waits for it (at most ``busy_timeout``
  seconds) instead of sharing the figure.

Artifacts
---------
``"html"`` (default) produces an embeddable HTML fragment. In offline mode the
Plotly JavaScript bundle is inlined; otherwise it is loaded from the CDN.
``"svg"`` produces a static SVG image through Plotly's image export, which
requires the optional ``kaleido`` package.

Examples
--------
>>> import asyncio
>>> from graphblock.graph import GraphOptions
>>> engine = PlotlyEngine()
>>> html = asyncio.run(engine.render(("y=x^2",), GraphOptions()))  # doctest: +SKIP
"""

from __future__ import annotations

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Sequence

import numpy as np
import plotly.graph_objects as go

from .errors import EngineError, GraphError
from .expressions import Curve, parse_expression
from .graph import GraphOptions

__all__ = ["GraphEngine", "PlotlyEngine", "ARTIFACT_FORMATS"]

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


ARTIFACT_FORMATS = ("html", "svg")

_LINE_COLORS = [
    "#c74440",
    "#2d70b3",
    "#388c46",
    "#6042a6",
    "#fa7e19",
    "#000000",
]

# Samples further than this many view spans outside the window are dropped so
# asymptotes do not draw as near-vertical connecting lines.
_CLIP_SPANS = 4.0


class GraphEngine(ABC):
    """Interface of the external graphing engine."""

    #: File extension matching the artifacts this engine produces.
    artifact_extension: str = "html"

    @abstractmethod
    async def render(self, expressions: Sequence[str], options: GraphOptions) -> str:
        """Render ``expressions`` in the view described by ``options``.

        Raises
        ------
        EngineError
            If the engine cannot produce an artifact.
        """

    @abstractmethod
    def close(self) -> None:
        """Release engine resources. Rendering afterwards raises ``EngineError``."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        """Whether :meth:`close` has been called."""


class PlotlyEngine(GraphEngine):
    """Render graphs with SymPy, NumPy and Plotly.

    Parameters
    ----------
    artifact_format : {"html", "svg"}
        Output format.
    offline : bool
        Inline the Plotly JavaScript bundle into HTML artifacts.
    samples : int
        Number of sample points per curve.
    busy_timeout : float
        Seconds a render waits for a previous, possibly abandoned, render to
        release the figure before failing with ``EngineError``.
    """

    def __init__(
        self,
        *,
        artifact_format: str = "html",
        offline: bool = False,
        samples: int = 500,
        busy_timeout: float = 30.0,
    ) -> None:
        if artifact_format not in ARTIFACT_FORMATS:
            raise ValueError(
                f"artifact_format must be one of {ARTIFACT_FORMATS}, got {artifact_format!r}"
            )
        if samples < 2:
            raise ValueError("samples must be >= 2")
        self.artifact_format = artifact_format
        self.artifact_extension = artifact_format
        self.offline = bool(offline)
        self.samples = int(samples)
        self.busy_timeout = float(busy_timeout)
        self._render_lock = threading.Lock()
        self._figure: Optional[go.Figure] = go.Figure()

    @property
    def closed(self) -> bool:
        return self._figure is None

    def close(self) -> None:
        self._figure = None

    async def render(self, expressions: Sequence[str], options: GraphOptions) -> str:
        if self._figure is None:
            raise EngineError("Graphing engine has been closed")
        try:
            return await asyncio.to_thread(self._render_sync, tuple(expressions), options)
        except GraphError:
            raise
        except Exception as exc:
            raise EngineError(f"Graphing engine failed: {exc}") from exc

    # --- Figure construction ---

    def _render_sync(self, expressions: Sequence[str], options: GraphOptions) -> str:
        if not self._render_lock.acquire(timeout=self.busy_timeout):
            raise EngineError("Graphing engine is still busy with a previous render")
        try:
            fig = self._figure
            if fig is None:
                raise EngineError("Graphing engine has been closed")
            curves = [parse_expression(text, options.degreeMode) for text in expressions]
            self.build_figure(curves, options, figure=fig)
            return self._export(fig, options)
        finally:
            self._render_lock.release()

    def build_figure(
        self,
        curves: Sequence[Curve],
        options: GraphOptions,
        *,
        figure: Optional[go.Figure] = None,
    ) -> go.Figure:
        """Populate ``figure`` (or a new figure) with ``curves`` and return it."""
        fig = figure if figure is not None else go.Figure()
        fig.data = ()
        fig.layout = go.Layout()
        fig.update_layout(**self._layout(options))
        for index, curve in enumerate(curves):
            fig.add_trace(self._trace(curve, options, index))
        return fig

    def _trace(self, curve: Curve, options: GraphOptions, index: int) -> go.Scatter:
        if curve.is_function_of_x:
            lo, hi, out_lo, out_hi = options.left, options.right, options.bottom, options.top
        else:
            lo, hi, out_lo, out_hi = options.bottom, options.top, options.left, options.right
        domain = np.linspace(lo, hi, num=self.samples)
        values = curve.compile()(domain)
        margin = (out_hi - out_lo) * _CLIP_SPANS
        values = np.where(
            np.isfinite(values) & (values > out_lo - margin) & (values < out_hi + margin),
            values,
            np.nan,
        )
        xs, ys = (domain, values) if curve.is_function_of_x else (values, domain)
        return go.Scatter(
            x=xs,
            y=ys,
            mode="lines",
            name=curve.source,
            line=dict(color=_LINE_COLORS[index % len(_LINE_COLORS)], width=2.5),
            connectgaps=False,
        )

    def _layout(self, options: GraphOptions) -> Dict[str, Any]:
        if options.invertedColors:
            template, paper, plot, font, axis = "plotly_dark", "#000000", "#000000", "#f5f5f5", "#e2e8f0"
        else:
            template, paper, plot, font, axis = "plotly_white", "#ffffff", "#ffffff", "#1f2933", "#334155"
        grid_color = "rgba(148,163,184,0.35)"

        def axis_layout(bounds: tuple[float, float], show_zero: bool) -> Dict[str, Any]:
            return dict(
                range=list(bounds),
                autorange=False,
                showgrid=options.grid,
                gridcolor=grid_color,
                gridwidth=1,
                zeroline=show_zero,
                zerolinewidth=1.5,
                zerolinecolor=axis,
                showticklabels=not options.hideAxisNumbers,
                showline=False,
                fixedrange=True,
            )

        return dict(
            template=template,
            width=options.width,
            height=options.height,
            autosize=False,
            showlegend=False,
            margin=dict(l=24, r=12, t=12, b=24),
            paper_bgcolor=paper,
            plot_bgcolor=plot,
            font=dict(color=font, size=12),
            # A Plotly axis "zero line" is drawn across the other axis: the
            # x-axis zero line is the vertical line x=0, i.e. the y-axis.
            xaxis=axis_layout((options.left, options.right), options.showYAxis),
            yaxis=axis_layout((options.bottom, options.top), options.showXAxis),
        )

    def _export(self, fig: go.Figure, options: GraphOptions) -> str:
        if self.artifact_format == "svg":
            data = fig.to_image(format="svg", width=options.width, height=options.height)
            return data.decode("utf-8") if isinstance(data, bytes) else str(data)
        return fig.to_html(
            full_html=False,
            include_plotlyjs=True if self.offline else "cdn",
            config={"staticPlot": True, "displayModeBar": False},
        )
