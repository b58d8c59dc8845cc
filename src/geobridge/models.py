"""Domain models shared across overlay modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Mapping, Sequence

Coordinate = tuple[float, float]
Ring = tuple[Coordinate, ...]

LAYER_SURFACE = "surface"
LAYER_ELEVATED = "elevated"


def _freeze_coordinates(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return tuple(_freeze_coordinates(item) for item in value)
    return value


def _as_ring(raw: Any) -> Ring:
    points: list[Coordinate] = []
    if not isinstance(raw, (list, tuple)):
        return ()
    for point in raw:
        if not isinstance(point, (list, tuple)) or len(point) < 2:
            continue
        try:
            points.append((float(point[0]), float(point[1])))
        except (TypeError, ValueError):
            continue
    if len(points) > 1 and points[0] == points[-1]:
        points.pop()
    return tuple(points)


@dataclass(frozen=True, slots=True)
class CountryFeature:
    """One country polygon with its Natural Earth property bag.

    Geometry is kept as a GeoJSON-like mapping (``type`` + ``coordinates``);
    properties are exposed read-only.
    """

    feature_id: int
    geometry: Mapping[str, Any]
    properties: Mapping[str, Any]

    @classmethod
    def from_mapping(cls, feature_id: int, data: Mapping[str, Any]) -> CountryFeature:
        geometry_raw = data.get("geometry")
        geometry: dict[str, Any] = {}
        if isinstance(geometry_raw, Mapping):
            geometry = {
                "type": str(geometry_raw.get("type", "")),
                "coordinates": _freeze_coordinates(geometry_raw.get("coordinates", ())),
            }
        props_raw = data.get("properties")
        props = dict(props_raw) if isinstance(props_raw, Mapping) else {}
        return cls(
            feature_id=feature_id,
            geometry=MappingProxyType(geometry),
            properties=MappingProxyType(props),
        )

    @property
    def geometry_type(self) -> str:
        return str(self.geometry.get("type", ""))

    @property
    def display_name(self) -> str:
        for key in ("NAME", "ADMIN"):
            value = self.properties.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return "Unknown"

    def representative_ring(self) -> Ring:
        """Outer ring used for boundary matching.

        For multi-part geometry this is the outer ring of the part with the most
        vertices, not the largest area. Unsupported geometry yields ``()``.
        """
        coords = self.geometry.get("coordinates", ())
        geom_type = self.geometry_type
        if geom_type == "Polygon":
            return _as_ring(coords[0]) if coords else ()
        if geom_type == "MultiPolygon":
            best: Ring = ()
            for polygon in coords:
                if not polygon:
                    continue
                ring = _as_ring(polygon[0])
                if len(ring) > len(best):
                    best = ring
            return best
        return ()


@dataclass(frozen=True, slots=True)
class LayeredFeature:
    """Read-only view of a feature on the flat outline or the elevated cap layer."""

    feature: CountryFeature
    layer: str

    @property
    def layer_id(self) -> str:
        return f"{self.layer}_{self.feature.feature_id}"

    @property
    def is_surface(self) -> bool:
        return self.layer == LAYER_SURFACE


def layered_views(features: Sequence[CountryFeature]) -> tuple[LayeredFeature, ...]:
    surface = [LayeredFeature(feature, LAYER_SURFACE) for feature in features]
    elevated = [LayeredFeature(feature, LAYER_ELEVATED) for feature in features]
    return (*surface, *elevated)


@dataclass(frozen=True, slots=True)
class RegionGroup:
    key: str
    members: tuple[CountryFeature, ...]

    @property
    def feature_ids(self) -> frozenset[int]:
        return frozenset(member.feature_id for member in self.members)


@dataclass(frozen=True, slots=True)
class BoundarySegment:
    """Polyline separating two distinct regions."""

    segment_id: str
    coordinates: tuple[Coordinate, ...]
    regions: tuple[str, str]
    kind: str
    countries: tuple[str, str] | None = None

    def __post_init__(self) -> None:
        if len(self.coordinates) < 2:
            raise ValueError(f"Boundary segment '{self.segment_id}' needs at least 2 points")
        if len(self.regions) != 2 or self.regions[0] == self.regions[1]:
            raise ValueError(
                f"Boundary segment '{self.segment_id}' must separate two distinct regions"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.segment_id,
            "type": "region_boundary",
            "kind": self.kind,
            "regions": list(self.regions),
            "countries": list(self.countries) if self.countries else None,
            "coordinates": [list(point) for point in self.coordinates],
        }


@dataclass(frozen=True, slots=True)
class MetricSource:
    """Catalog entry describing one selectable dataset."""

    id: str
    name: str
    category: str
    unit: str
    value: Callable[[CountryFeature], float | None]
    format: Callable[[float], str]
    enabled: bool = True
    disabled_reason: str | None = None

    @property
    def is_percentage(self) -> bool:
        return self.unit.strip() == "%"


@dataclass(frozen=True, slots=True)
class HeightStatistics:
    """Distribution summary over the positive values of one metric source."""

    source_id: str
    values: tuple[float, ...]
    max: float
    min: float
    mean: float
    median: float
    stdev: float
    q1: float
    q3: float
    iqr: float
    outlier_threshold: float
    p90: float
    p95: float
    p99: float
    is_crusher: bool
    adjusted_max: float
    outliers: frozenset[float] = field(default_factory=frozenset)

    @property
    def count(self) -> int:
        return len(self.values)

    @property
    def cv(self) -> float:
        return self.stdev / self.mean if self.mean > 0 else 0.0

    def is_outlier(self, value: float) -> bool:
        return value in self.outliers

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "count": self.count,
            "max": self.max,
            "min": self.min,
            "mean": self.mean,
            "median": self.median,
            "stdev": self.stdev,
            "q1": self.q1,
            "q3": self.q3,
            "iqr": self.iqr,
            "outlier_threshold": self.outlier_threshold,
            "p90": self.p90,
            "p95": self.p95,
            "p99": self.p99,
            "is_crusher": self.is_crusher,
            "adjusted_max": self.adjusted_max,
            "outliers": sorted(self.outliers),
        }


@dataclass(frozen=True, slots=True)
class HoverContext:
    hovered: CountryFeature | None
    region_of: Callable[[CountryFeature], str]

    @classmethod
    def none(cls) -> HoverContext:
        return cls(hovered=None, region_of=lambda _feature: "")


@dataclass(frozen=True, slots=True)
class BuildManifest:
    """Build metadata used for deterministic audit trails."""

    generated_at_utc: str
    config_hash_sha256: str
    git_commit: str | None
    steps: Mapping[str, str]
    artifacts: Mapping[str, str]

    @classmethod
    def create(
        cls,
        *,
        config_hash_sha256: str,
        git_commit: str | None,
        steps: Mapping[str, str],
        artifacts: Mapping[str, str],
    ) -> BuildManifest:
        now = datetime.now(timezone.utc).isoformat()
        return cls(
            generated_at_utc=now,
            config_hash_sha256=config_hash_sha256,
            git_commit=git_commit,
            steps=steps,
            artifacts=artifacts,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_at_utc": self.generated_at_utc,
            "config_hash_sha256": self.config_hash_sha256,
            "git_commit": self.git_commit,
            "steps": dict(self.steps),
            "artifacts": dict(self.artifacts),
        }
