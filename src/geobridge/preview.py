"""Flat PNG preview of overlay heights and region boundaries."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping, Sequence

from .config import PreviewConfig
from .models import Coordinate, LayeredFeature
from .overlay import GlobeOverlay


# Longitude jump that marks a ring crossing the antimeridian.
_SEGMENT_JUMP_DEG = 180.0

_LOGGER = logging.getLogger("geobridge.preview")


class PreviewRenderer:
    """Equirectangular plot: countries filled by height, boundaries on top."""

    def __init__(self, cfg: PreviewConfig) -> None:
        self.cfg = cfg

    def render(self, overlay: GlobeOverlay, output_path: Path, *, title: str | None = None) -> Path:
        plt, colormaps, colors = _require_matplotlib()
        width_px = self.cfg.width_px
        height_px = self.cfg.height_px
        dpi = self.cfg.dpi

        views = [view for view in overlay.layered_views() if not view.is_surface]
        heights = {view.feature.feature_id: overlay.height(view) for view in views}
        low = min(heights.values(), default=0.0)
        high = max(heights.values(), default=0.0)
        norm = colors.Normalize(vmin=low, vmax=high if high > low else low + 1.0)
        cmap = colormaps[self.cfg.colormap]

        fig, ax = plt.subplots(figsize=(width_px / dpi, height_px / dpi), dpi=dpi)
        fig.subplots_adjust(left=0.0, right=1.0, bottom=0.0, top=1.0)
        try:
            _apply_background(fig=fig, ax=ax, background=self.cfg.background)
            for view in views:
                self._draw_country(
                    ax=ax,
                    view=view,
                    fill=cmap(norm(heights[view.feature.feature_id])),
                    stroke=overlay.stroke_color(view),
                )
            for segment in overlay.boundaries():
                _draw_polyline(
                    ax=ax,
                    points=segment.coordinates,
                    color=self.cfg.boundary_color,
                    line_width=1.4,
                    zorder=3,
                )
            ax.set_xlim(-180.0, 180.0)
            ax.set_ylim(-90.0, 90.0)
            ax.set_aspect("equal")
            ax.set_axis_off()
            if title:
                ax.text(
                    -175.0,
                    -85.0,
                    title,
                    color=self.cfg.boundary_color,
                    fontsize=9,
                    zorder=4,
                )

            output_path.parent.mkdir(parents=True, exist_ok=True)
            fig.savefig(
                output_path,
                dpi=dpi,
                format="png",
                transparent=self.cfg.background.casefold() == "transparent",
            )
            _LOGGER.info("Preview written to %s", output_path)
            return output_path
        finally:
            plt.close(fig)

    def _draw_country(self, *, ax: Any, view: LayeredFeature, fill: Any, stroke: str) -> None:
        for ring in _iter_outer_rings(view.feature.geometry):
            if len(ring) < 3:
                continue
            for segment in _split_ring_segments(ring):
                if len(segment) < 3:
                    continue
                ax.fill(
                    [point[0] for point in segment],
                    [point[1] for point in segment],
                    facecolor=fill,
                    edgecolor=stroke,
                    linewidth=0.3,
                    zorder=1,
                )


def _draw_polyline(
    *,
    ax: Any,
    points: Sequence[Coordinate],
    color: str,
    line_width: float,
    zorder: int = 2,
) -> None:
    for segment in _split_ring_segments(points):
        if len(segment) < 2:
            continue
        ax.plot(
            [point[0] for point in segment],
            [point[1] for point in segment],
            color=color,
            linewidth=line_width,
            zorder=zorder,
            solid_joinstyle="round",
            solid_capstyle="round",
        )


def _iter_outer_rings(geometry: Mapping[str, Any]) -> list[Sequence[Coordinate]]:
    coords = geometry.get("coordinates", ())
    geom_type = geometry.get("type", "")
    if geom_type == "Polygon":
        return [coords[0]] if coords else []
    if geom_type == "MultiPolygon":
        return [polygon[0] for polygon in coords if polygon]
    return []


def _split_ring_segments(ring: Sequence[Coordinate]) -> tuple[tuple[Coordinate, ...], ...]:
    if len(ring) < 2:
        return ()
    segments: list[list[Coordinate]] = []
    current: list[Coordinate] = [ring[0]]
    for point in ring[1:]:
        if abs(float(point[0]) - float(current[-1][0])) > _SEGMENT_JUMP_DEG:
            if len(current) >= 2:
                segments.append(current)
            current = [point]
            continue
        current.append(point)
    if len(current) >= 2:
        segments.append(current)
    return tuple(tuple(segment) for segment in segments)


def _apply_background(*, fig: Any, ax: Any, background: str) -> None:
    if background.casefold() == "transparent":
        fig.patch.set_facecolor("white")
        fig.patch.set_alpha(0.0)
        ax.set_facecolor((1.0, 1.0, 1.0, 0.0))
    else:
        fig.patch.set_facecolor(background)
        ax.set_facecolor(background)


def _require_matplotlib() -> tuple[Any, Any, Any]:
    try:
        import matplotlib

        matplotlib.use("Agg", force=False)
        import matplotlib.colors as colors
        import matplotlib.pyplot as plt
        from matplotlib import colormaps
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("matplotlib is required for preview rendering") from exc
    return (plt, colormaps, colors)
