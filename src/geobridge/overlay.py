"""Renderer-facing overlay state: regions, boundaries, heights, colors and labels.

`GlobeOverlay` owns the mutable inputs (feature set, classification mode,
metric selection, hovered feature) and recomputes derived structures when
one of them changes. Every callback is a pure read of the current state, so
the renderer may call them as often as it likes.
"""

from __future__ import annotations

import html
import logging
from typing import Any, Sequence

from .boundaries import BoundaryExtractor
from .fetch import FetchCache
from .heights import HeightNormalizer
from .metrics import MetricRegistry, MetricSelection
from .models import (
    BoundarySegment,
    CountryFeature,
    HeightStatistics,
    HoverContext,
    LayeredFeature,
    MetricSource,
    RegionGroup,
    layered_views,
)
from .regions import UNKNOWN_REGION, ClassificationMode, RegionClassifier, group_by_region, region_label


TRANSPARENT = "transparent"
CLEAR = "rgba(0, 0, 0, 0)"
SURFACE_STROKE = "#000000"
ELEVATED_STROKE = "#666666"

CAP_HOVERED = "rgba(255, 255, 255, 0.5)"
CAP_REGION = "rgba(80, 80, 80, 0.5)"
CAP_IDLE_WITH_METRIC = "rgba(255, 255, 255, 0.05)"

SIDE_HOVERED_WITH_METRIC = "rgba(255, 255, 255, 0.7)"
SIDE_REGION_WITH_METRIC = "rgba(255, 255, 255, 0.5)"
SIDE_IDLE_WITH_METRIC = "rgba(255, 255, 255, 0.05)"
SIDE_HIGHLIGHT = "rgba(255, 255, 255, 1)"

_LOGGER = logging.getLogger("geobridge.overlay")


class GlobeOverlay:
    def __init__(
        self,
        classifier: RegionClassifier,
        registry: MetricRegistry,
        *,
        extractor: BoundaryExtractor | None = None,
        normalizer: HeightNormalizer | None = None,
        selection: MetricSelection | None = None,
        fetch_cache: FetchCache | None = None,
        mode: ClassificationMode = ClassificationMode.STATIC,
    ) -> None:
        self.classifier = classifier
        self.registry = registry
        self.extractor = extractor or BoundaryExtractor(classifier)
        self.normalizer = normalizer or HeightNormalizer()
        self.selection = selection or MetricSelection(registry)
        self.fetch_cache = fetch_cache
        self._mode = mode
        self._features: tuple[CountryFeature, ...] = ()
        self._hovered: CountryFeature | None = None

        self._region_by_id: dict[int, str] = {}
        self._groups: list[RegionGroup] = []
        self._boundaries: list[BoundarySegment] | None = None
        self._stats: HeightStatistics | None = None

    @property
    def features(self) -> tuple[CountryFeature, ...]:
        return self._features

    @property
    def mode(self) -> ClassificationMode:
        return self._mode

    @property
    def hovered(self) -> CountryFeature | None:
        return self._hovered

    @property
    def height_source(self) -> MetricSource | None:
        return self.selection.height_source

    def set_features(self, features: Sequence[CountryFeature]) -> None:
        self._features = tuple(features)
        self._hovered = None
        self._regroup()
        self._recompute_statistics()

    def set_mode(self, mode: ClassificationMode | str) -> None:
        parsed = ClassificationMode.parse(mode)
        if parsed is self._mode:
            return
        self._mode = parsed
        self._regroup()

    def toggle_mode(self) -> ClassificationMode:
        self.set_mode(self._mode.toggled())
        return self._mode

    def select_height_source(self, metric_id: str | None) -> bool:
        """Toggle the height source: selecting the active id again clears it."""
        if metric_id is None:
            changed = self.selection.set_height(None)
        else:
            changed = self.selection.toggle_height(metric_id)
        if changed:
            self._recompute_statistics()
        return changed

    def set_label_sources(self, metric_ids: Sequence[str]) -> None:
        self.selection.set_labels(metric_ids)

    def refresh_statistics(self) -> None:
        """Recompute statistics after external datasets changed."""
        self._recompute_statistics()

    def hover(self, view: LayeredFeature | None) -> bool:
        """Update the hovered feature; surface-layer views are ignored."""
        if view is not None and view.is_surface:
            return False
        self._hovered = view.feature if view is not None else None
        return True

    def region_of(self, feature: CountryFeature) -> str:
        region = self._region_by_id.get(feature.feature_id)
        if region is None:
            return self.classifier.classify(feature, self._mode)
        return region

    def groups(self) -> list[RegionGroup]:
        return list(self._groups)

    def boundaries(self) -> list[BoundarySegment]:
        if self._boundaries is None:
            self._boundaries = self.extractor.extract(self._features, self._mode)
            _LOGGER.info(
                "Computed %d boundary segments (mode=%s)", len(self._boundaries), self._mode.value
            )
        return list(self._boundaries)

    def statistics(self) -> HeightStatistics | None:
        return self._stats

    def layered_views(self) -> tuple[LayeredFeature, ...]:
        return layered_views(self._features)

    def hover_context(self) -> HoverContext:
        return HoverContext(hovered=self._hovered, region_of=self.region_of)

    def height(self, view: LayeredFeature) -> float:
        if view.is_surface:
            return 0.0
        return self.normalizer.compute_height(
            view.feature,
            self.height_source,
            self._stats,
            self.hover_context(),
        )

    def cap_color(self, view: LayeredFeature) -> str:
        if view.is_surface:
            return TRANSPARENT
        is_hovered, in_region = self._hover_state(view.feature)
        if is_hovered:
            return CAP_HOVERED
        if in_region:
            return CAP_REGION
        return CAP_IDLE_WITH_METRIC if self.height_source is not None else CLEAR

    def side_color(self, view: LayeredFeature) -> str:
        if view.is_surface:
            return TRANSPARENT
        is_hovered, in_region = self._hover_state(view.feature)
        if self.height_source is not None:
            if is_hovered:
                return SIDE_HOVERED_WITH_METRIC
            if in_region:
                return SIDE_REGION_WITH_METRIC
            return SIDE_IDLE_WITH_METRIC
        if is_hovered or in_region:
            return SIDE_HIGHLIGHT
        return CLEAR

    def stroke_color(self, view: LayeredFeature) -> str:
        return SURFACE_STROKE if view.is_surface else ELEVATED_STROKE

    def label(self, view: LayeredFeature) -> str:
        if view.is_surface:
            return ""
        feature = view.feature
        code = self.classifier.code_for(feature)
        lines = [f"<div><b>{html.escape(feature.display_name)} ({html.escape(code)})</b></div>"]
        for source in self.selection.label_sources:
            value = self.normalizer.lookup(feature, source)
            shown = source.format(value) if value is not None else "n/a"
            lines.append(f"<div>{html.escape(source.name)}: {html.escape(shown)}</div>")
        region = self.region_of(feature)
        shown_region = "n/a" if region == UNKNOWN_REGION else region_label(region)
        lines.append(f'<div class="region">Region: {html.escape(shown_region)}</div>')
        return '<div class="country-label">' + "".join(lines) + "</div>"

    def summary(self) -> dict[str, Any]:
        source = self.height_source
        return {
            "features": len(self._features),
            "mode": self._mode.value,
            "regions": len([group for group in self._groups if group.key != UNKNOWN_REGION]),
            "unclassified": sum(
                len(group.members) for group in self._groups if group.key == UNKNOWN_REGION
            ),
            "boundary_segments": len(self.boundaries()),
            "height_source": source.id if source is not None else None,
            "label_sources": [item.id for item in self.selection.label_sources],
            "fetch_status": self.fetch_cache.status_text() if self.fetch_cache else "disabled",
        }

    def _hover_state(self, feature: CountryFeature) -> tuple[bool, bool]:
        hovered = self._hovered
        if hovered is None:
            return (False, False)
        is_hovered = hovered.feature_id == feature.feature_id
        hovered_region = self.region_of(hovered)
        in_region = hovered_region != UNKNOWN_REGION and self.region_of(feature) == hovered_region
        return (is_hovered, in_region)

    def _regroup(self) -> None:
        self._groups = group_by_region(self._features, self.classifier, self._mode)
        self._region_by_id = {
            member.feature_id: group.key for group in self._groups for member in group.members
        }
        self._boundaries = None
        _LOGGER.debug("Grouped %d features into %d regions", len(self._features), len(self._groups))

    def _recompute_statistics(self) -> None:
        source = self.height_source
        if source is None:
            self._stats = None
            return
        self._stats = self.normalizer.compute_statistics(self._features, source)


def export_boundaries(overlay: GlobeOverlay) -> dict[str, Any]:
    segments = overlay.boundaries()
    return {
        "mode": overlay.mode.value,
        "regions": [group.key for group in overlay.groups() if group.key != UNKNOWN_REGION],
        "segment_count": len(segments),
        "segments": [segment.to_dict() for segment in segments],
    }


def export_heights(overlay: GlobeOverlay) -> dict[str, Any]:
    """Per-feature heights and labels for the active height source."""
    source = overlay.height_source
    stats = overlay.statistics()
    rows: list[dict[str, Any]] = []
    for view in overlay.layered_views():
        if view.is_surface:
            continue
        feature = view.feature
        rows.append(
            {
                "id": view.layer_id,
                "code": overlay.classifier.code_for(feature),
                "name": feature.display_name,
                "region": overlay.region_of(feature),
                "value": overlay.normalizer.lookup(feature, source) if source is not None else None,
                "height": overlay.height(view),
                "label": overlay.label(view),
            }
        )
    return {
        "mode": overlay.mode.value,
        "metric": (
            {
                "id": source.id,
                "name": source.name,
                "category": source.category,
                "unit": source.unit,
            }
            if source is not None
            else None
        ),
        "statistics": stats.to_dict() if stats is not None else None,
        "features": rows,
    }
