"""Natural Earth admin-0 loading into CountryFeature collections."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from .codes import CountryCodeResolver
from .models import CountryFeature
from .util import read_json


_GEOJSON_SUFFIXES = {".geojson", ".json"}

_LOGGER = logging.getLogger("geobridge.io_ne")


def _first_existing_column(columns: Iterable[str], candidates: Sequence[str]) -> str | None:
    existing = {col.lower(): col for col in columns}
    for candidate in candidates:
        match = existing.get(candidate.lower())
        if match:
            return match
    return None


def normalize_properties(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Upper-case property keys; Natural Earth releases differ in column case."""
    out: dict[str, Any] = {}
    for key, value in raw.items():
        if _is_missing(value):
            value = None
        out[str(key).upper()] = value
    return out


def features_from_collection(
    collection: Mapping[str, Any],
    resolver: CountryCodeResolver | None = None,
) -> list[CountryFeature]:
    """Build features from a GeoJSON FeatureCollection mapping.

    Excluded codes (per the resolver's override table) are dropped; the
    surviving features are numbered consecutively from 0.
    """
    if collection.get("type") != "FeatureCollection":
        raise ValueError("Expected a GeoJSON FeatureCollection")
    raw_features = collection.get("features")
    if not isinstance(raw_features, list):
        raise ValueError("Expected list for 'features'")

    resolver = resolver or CountryCodeResolver()
    features: list[CountryFeature] = []
    dropped: list[str] = []
    for item in raw_features:
        if not isinstance(item, Mapping):
            continue
        props_raw = item.get("properties")
        props = normalize_properties(props_raw if isinstance(props_raw, Mapping) else {})
        if resolver.is_excluded(props):
            dropped.append(resolver.resolve(props) or "?")
            continue
        features.append(
            CountryFeature.from_mapping(
                len(features),
                {"geometry": item.get("geometry"), "properties": props},
            )
        )
    if dropped:
        _LOGGER.debug("Dropped %d excluded features: %s", len(dropped), ", ".join(sorted(dropped)))
    return features


class NaturalEarthRepository:
    """Access to the admin-0 countries dataset.

    Shapefiles and GeoPackages go through GeoPandas; GeoJSON files are read
    directly so small fixtures do not need the geospatial stack.
    """

    GEOMETRY_COLUMNS = ("geometry",)

    def __init__(self, admin0_path: Path) -> None:
        self.admin0_path = admin0_path

    def load_admin0(self) -> Any:
        """Load admin-0 country polygons via GeoPandas."""
        gpd = self._require_geopandas()
        return gpd.read_file(self.admin0_path)

    def load_collection(self) -> dict[str, Any]:
        if not self.admin0_path.exists():
            raise FileNotFoundError(f"Admin-0 dataset not found: {self.admin0_path}")
        if self.admin0_path.suffix.casefold() in _GEOJSON_SUFFIXES:
            raw = read_json(self.admin0_path)
            if not isinstance(raw, dict):
                raise ValueError(f"Expected GeoJSON object in {self.admin0_path}")
            return raw
        return self._collection_from_dataframe(self.load_admin0())

    def load_features(self, resolver: CountryCodeResolver | None = None) -> list[CountryFeature]:
        features = features_from_collection(self.load_collection(), resolver)
        _LOGGER.info("Loaded %d country features from %s", len(features), self.admin0_path)
        return features

    def _collection_from_dataframe(self, admin0_df: Any) -> dict[str, Any]:
        mapping = self._require_shapely_mapping()
        geom_col = _first_existing_column(admin0_df.columns, self.GEOMETRY_COLUMNS)
        if geom_col is None:
            raise ValueError("Admin-0 dataset has no geometry column")
        if admin0_df.crs is not None and admin0_df.crs.to_epsg() != 4326:
            admin0_df = admin0_df.to_crs(epsg=4326)

        features: list[dict[str, Any]] = []
        for row in admin0_df.to_dict("records"):
            geometry = row.pop(geom_col, None)
            features.append(
                {
                    "type": "Feature",
                    "geometry": mapping(geometry) if geometry is not None else None,
                    "properties": row,
                }
            )
        return {"type": "FeatureCollection", "features": features}

    @staticmethod
    def _require_geopandas() -> Any:
        try:
            import geopandas as gpd
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError("geopandas is required for Natural Earth data loading") from exc
        return gpd

    @staticmethod
    def _require_shapely_mapping() -> Any:
        try:
            from shapely.geometry import mapping
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError("shapely is required for geometry conversion") from exc
        return mapping


def _is_missing(value: Any) -> bool:
    # pandas hands back NaN floats for empty attribute cells.
    return isinstance(value, float) and value != value
