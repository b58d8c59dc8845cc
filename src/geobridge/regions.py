"""Region classification under the static table or continent/subregion tags."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import yaml

from .codes import CountryCodeResolver
from .models import CountryFeature, RegionGroup


UNKNOWN_REGION = "unknown"

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_SUBREGION_CONTINENTS = frozenset({"europe", "africa", "asia", "oceania"})


class ClassificationMode(str, enum.Enum):
    STATIC = "static"
    DERIVED = "derived"

    @classmethod
    def parse(cls, value: str | ClassificationMode) -> ClassificationMode:
        if isinstance(value, ClassificationMode):
            return value
        try:
            return cls(value.strip().casefold())
        except ValueError as exc:
            allowed = ", ".join(mode.value for mode in cls)
            raise ValueError(f"Unknown classification mode '{value}' (expected {allowed})") from exc

    def toggled(self) -> ClassificationMode:
        if self is ClassificationMode.STATIC:
            return ClassificationMode.DERIVED
        return ClassificationMode.STATIC


def slugify(value: str) -> str:
    return _NON_ALNUM_RE.sub("_", value.casefold()).strip("_")


def region_label(key: str) -> str:
    return key.replace("_", " ")


@dataclass(frozen=True, slots=True)
class RegionRegistry:
    """Hand-curated partition of country codes into named regions."""

    regions: Mapping[str, tuple[str, ...]]
    code_to_region: Mapping[str, str]

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> RegionRegistry:
        regions: dict[str, tuple[str, ...]] = {}
        code_to_region: dict[str, str] = {}
        for key_raw, codes_raw in data.items():
            if not isinstance(key_raw, str) or not key_raw.strip():
                raise ValueError("Region keys must be non-empty strings")
            key = key_raw.strip()
            if slugify(key) != key:
                raise ValueError(f"Region key '{key}' must be a lower-case slug")
            if key == UNKNOWN_REGION:
                raise ValueError(f"Region key '{UNKNOWN_REGION}' is reserved")
            if not isinstance(codes_raw, list) or not codes_raw:
                raise ValueError(f"Expected non-empty list of codes for region '{key}'")
            codes: list[str] = []
            for item in codes_raw:
                if not isinstance(item, str) or not item.strip():
                    raise ValueError(f"Invalid country code in region '{key}': {item!r}")
                code = item.strip().upper()
                previous = code_to_region.get(code)
                if previous is not None:
                    raise ValueError(
                        f"Country code '{code}' listed in both '{previous}' and '{key}'"
                    )
                code_to_region[code] = key
                codes.append(code)
            regions[key] = tuple(codes)
        return cls(regions=regions, code_to_region=code_to_region)

    def region_for(self, code: str) -> str | None:
        return self.code_to_region.get(code.strip().upper())


def load_region_registry(path: Path) -> RegionRegistry:
    """Load and validate the static region partition."""
    if not path.exists():
        raise FileNotFoundError(f"Region table not found: {path}")
    with path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)
    if not isinstance(raw, dict) or not raw:
        raise ValueError(f"Expected non-empty mapping in {path}")
    return RegionRegistry.from_mapping(raw)


def derived_region_key(continent: str, subregion: str) -> str:
    continent_slug = slugify(continent)
    if not continent_slug:
        return UNKNOWN_REGION
    if continent_slug in _SUBREGION_CONTINENTS:
        return slugify(f"{continent}_{subregion}") or continent_slug
    if continent_slug == "north_america":
        if subregion.strip().casefold() == "northern america":
            return "north_america"
        return "central_america_caribbean"
    if continent_slug == "south_america":
        return "south_america"
    return continent_slug


class RegionClassifier:
    """Map features to region keys; pure, total and deterministic."""

    CONTINENT_FIELD = "CONTINENT"
    SUBREGION_FIELD = "SUBREGION"

    def __init__(self, registry: RegionRegistry, resolver: CountryCodeResolver) -> None:
        self.registry = registry
        self.resolver = resolver

    def classify(self, feature: CountryFeature, mode: ClassificationMode) -> str:
        if mode is ClassificationMode.STATIC:
            code = self.resolver.resolve(feature.properties)
            return self.registry.region_for(code) or UNKNOWN_REGION
        continent = _text(feature.properties.get(self.CONTINENT_FIELD))
        subregion = _text(feature.properties.get(self.SUBREGION_FIELD))
        return derived_region_key(continent, subregion)

    def code_for(self, feature: CountryFeature) -> str:
        return self.resolver.resolve(feature.properties)


def group_by_region(
    features: Sequence[CountryFeature],
    classifier: RegionClassifier,
    mode: ClassificationMode,
) -> list[RegionGroup]:
    """Partition features by region key, ordered by first appearance."""
    buckets: dict[str, list[CountryFeature]] = {}
    for feature in features:
        buckets.setdefault(classifier.classify(feature, mode), []).append(feature)
    return [RegionGroup(key=key, members=tuple(members)) for key, members in buckets.items()]


def region_keys(groups: Iterable[RegionGroup]) -> tuple[str, ...]:
    return tuple(group.key for group in groups)


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""
