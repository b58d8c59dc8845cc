"""Inter-region boundary extraction by coordinate proximity.

The extraction is a tolerance-based heuristic: two country rings in different
regions "share" a border wherever their vertices lie within a small planar
distance of each other, and the shared vertices are ordered into a polyline by
greedy nearest-neighbour chaining. Distances are computed in raw lon/lat space,
so borders near the antimeridian can be missed and the resulting polyline is
not guaranteed to be simple.

Cost is quadratic in region pairs, country pairs and ring sizes. A bounding box
pre-filter skips ring pairs that cannot have any vertex within tolerance.
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass
from itertools import combinations
from typing import Protocol, Sequence

from .models import BoundarySegment, Coordinate, CountryFeature, Ring
from .regions import UNKNOWN_REGION, ClassificationMode, RegionClassifier, group_by_region


DEFAULT_TOLERANCE = 0.01
MIN_SHARED_POINTS = 2

_LOGGER = logging.getLogger("geobridge.boundaries")


class MatchMode(str, enum.Enum):
    """How target-ring vertices may be reused while matching.

    ``CONSUME`` lets each ring-B vertex match at most one ring-A vertex;
    ``ALLOW_DUPLICATES`` records every pair within tolerance, so one ring-A
    vertex can be emitted several times.
    """

    CONSUME = "consume"
    ALLOW_DUPLICATES = "allow_duplicates"

    @classmethod
    def parse(cls, value: str | MatchMode) -> MatchMode:
        if isinstance(value, MatchMode):
            return value
        try:
            return cls(value.strip().casefold())
        except ValueError as exc:
            allowed = ", ".join(mode.value for mode in cls)
            raise ValueError(f"Unknown match mode '{value}' (expected {allowed})") from exc


class SharedPointMatcher(Protocol):
    def shared_points(self, ring_a: Ring, ring_b: Ring) -> list[Coordinate]: ...


@dataclass(frozen=True, slots=True)
class _BBox:
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @classmethod
    def of(cls, ring: Ring) -> _BBox:
        xs = [point[0] for point in ring]
        ys = [point[1] for point in ring]
        return cls(min(xs), min(ys), max(xs), max(ys))

    def near(self, other: _BBox, tolerance: float) -> bool:
        return not (
            self.max_x + tolerance < other.min_x
            or other.max_x + tolerance < self.min_x
            or self.max_y + tolerance < other.min_y
            or other.max_y + tolerance < self.min_y
        )


class ProximityMatcher:
    """Brute-force vertex proximity search between two rings."""

    def __init__(
        self,
        tolerance: float = DEFAULT_TOLERANCE,
        mode: MatchMode = MatchMode.CONSUME,
    ) -> None:
        if tolerance <= 0:
            raise ValueError("tolerance must be > 0")
        self.tolerance = tolerance
        self.mode = mode

    def shared_points(self, ring_a: Ring, ring_b: Ring) -> list[Coordinate]:
        if not ring_a or not ring_b:
            return []
        if not _BBox.of(ring_a).near(_BBox.of(ring_b), self.tolerance):
            return []
        if self.mode is MatchMode.ALLOW_DUPLICATES:
            return [
                point_a
                for point_a in ring_a
                for point_b in ring_b
                if planar_distance(point_a, point_b) < self.tolerance
            ]

        consumed: set[int] = set()
        shared: list[Coordinate] = []
        for point_a in ring_a:
            for idx, point_b in enumerate(ring_b):
                if idx in consumed:
                    continue
                if planar_distance(point_a, point_b) < self.tolerance:
                    consumed.add(idx)
                    shared.append(point_a)
                    break
        return shared


def planar_distance(a: Coordinate, b: Coordinate) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


def chain_nearest_neighbor(points: Sequence[Coordinate]) -> list[Coordinate]:
    """Order points greedily, always appending the closest unvisited point."""
    if not points:
        return []
    remaining = list(points[1:])
    chain = [points[0]]
    while remaining:
        tail = chain[-1]
        best_idx = 0
        best_dist = planar_distance(tail, remaining[0])
        for idx in range(1, len(remaining)):
            dist = planar_distance(tail, remaining[idx])
            if dist < best_dist:
                best_idx = idx
                best_dist = dist
        chain.append(remaining.pop(best_idx))
    return chain


class BoundaryExtractor:
    """Emit one polyline per adjacent country pair straddling two regions."""

    def __init__(
        self,
        classifier: RegionClassifier,
        matcher: SharedPointMatcher | None = None,
    ) -> None:
        self.classifier = classifier
        self.matcher: SharedPointMatcher = matcher or ProximityMatcher()

    def extract(
        self,
        features: Sequence[CountryFeature],
        mode: ClassificationMode,
    ) -> list[BoundarySegment]:
        groups = [
            group
            for group in group_by_region(features, self.classifier, mode)
            if group.key != UNKNOWN_REGION
        ]
        rings: dict[int, Ring] = {}
        codes: dict[int, str] = {}
        for group in groups:
            for feature in group.members:
                rings[feature.feature_id] = feature.representative_ring()
                codes[feature.feature_id] = self.classifier.code_for(feature)

        segments: list[BoundarySegment] = []
        for group_a, group_b in combinations(groups, 2):
            pair_key = "-".join(sorted((group_a.key, group_b.key)))
            pair_count = 0
            for country_a in group_a.members:
                ring_a = rings[country_a.feature_id]
                if not ring_a:
                    continue
                for country_b in group_b.members:
                    ring_b = rings[country_b.feature_id]
                    if not ring_b:
                        continue
                    shared = self.matcher.shared_points(ring_a, ring_b)
                    if len(shared) < MIN_SHARED_POINTS:
                        continue
                    segments.append(
                        BoundarySegment(
                            segment_id=f"region_boundary_{pair_key}_{pair_count}",
                            coordinates=tuple(chain_nearest_neighbor(shared)),
                            regions=(group_a.key, group_b.key),
                            kind=mode.value,
                            countries=(
                                codes[country_a.feature_id],
                                codes[country_b.feature_id],
                            ),
                        )
                    )
                    pair_count += 1

        _LOGGER.debug(
            "Extracted %d boundary segments across %d regions (mode=%s)",
            len(segments),
            len(groups),
            mode.value,
        )
        return segments
