"""Metric source catalog loading, accessors, formatters and selection state."""

from __future__ import annotations

import logging
import math
import numbers
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence

import yaml

from .codes import CountryCodeResolver
from .models import CountryFeature, MetricSource


CATEGORY_BUILTIN = "builtin"
CATEGORY_ECONOMIC = "economic"
CATEGORY_DEMOGRAPHIC = "demographic"
CATEGORY_RESOURCE = "resource"
CATEGORY_SURVEY = "survey"
CATEGORIES = frozenset(
    {CATEGORY_BUILTIN, CATEGORY_ECONOMIC, CATEGORY_DEMOGRAPHIC, CATEGORY_RESOURCE, CATEGORY_SURVEY}
)

VALUE_KIND_PROPERTY = "property"
VALUE_KIND_EXTERNAL = "external"

_LOGGER = logging.getLogger("geobridge.metrics")


class ExternalLookup(Protocol):
    """Read side of the fetch cache as seen by metric accessors."""

    def get(self, dataset: str) -> Mapping[str, float]: ...


def _require_str(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Expected non-empty string for '{field_name}'")
    return value.strip()


def _coerce_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, numbers.Real):
        out = float(value)
    elif isinstance(value, str):
        try:
            out = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return out if math.isfinite(out) else None


@dataclass(frozen=True, slots=True)
class FormatSpec:
    divisor: float = 1.0
    decimals: int = 0
    prefix: str = ""
    suffix: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], field_name: str) -> FormatSpec:
        divisor_raw = data.get("divisor", 1)
        if isinstance(divisor_raw, bool) or not isinstance(divisor_raw, (int, float)) or divisor_raw == 0:
            raise ValueError(f"Expected non-zero number for '{field_name}.divisor'")
        decimals_raw = data.get("decimals", 0)
        if isinstance(decimals_raw, bool) or not isinstance(decimals_raw, int) or decimals_raw < 0:
            raise ValueError(f"Expected non-negative integer for '{field_name}.decimals'")
        prefix = data.get("prefix", "")
        suffix = data.get("suffix", "")
        if not isinstance(prefix, str) or not isinstance(suffix, str):
            raise ValueError(f"Expected strings for '{field_name}.prefix/suffix'")
        return cls(divisor=float(divisor_raw), decimals=decimals_raw, prefix=prefix, suffix=suffix)

    def __call__(self, value: float) -> str:
        if value is None or not math.isfinite(value):
            return "n/a"
        scaled = value / self.divisor
        return f"{self.prefix}{scaled:,.{self.decimals}f}{self.suffix}"


@dataclass(frozen=True, slots=True)
class MetricSpec:
    """Validated catalog entry from `data/metrics.yaml`."""

    id: str
    name: str
    category: str
    unit: str
    value_kind: str
    fields: tuple[str, ...]
    provider: str | None
    indicator: str | None
    format: FormatSpec
    enabled: bool
    disabled_reason: str | None

    @property
    def dataset_key(self) -> str | None:
        if self.value_kind != VALUE_KIND_EXTERNAL:
            return None
        return f"{self.provider}:{self.indicator}"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> MetricSpec:
        metric_id = _require_str(data.get("id"), "id")
        name = _require_str(data.get("name"), f"{metric_id}.name")
        category = _require_str(data.get("category"), f"{metric_id}.category").casefold()
        if category not in CATEGORIES:
            raise ValueError(
                f"Unknown category '{category}' for metric '{metric_id}' "
                f"(expected one of: {', '.join(sorted(CATEGORIES))})"
            )
        unit_raw = data.get("unit", "")
        if not isinstance(unit_raw, str):
            raise ValueError(f"Expected string for '{metric_id}.unit'")

        value_raw = data.get("value")
        if not isinstance(value_raw, Mapping):
            raise ValueError(f"Expected mapping for '{metric_id}.value'")
        value_kind = _require_str(value_raw.get("kind"), f"{metric_id}.value.kind").casefold()
        fields: tuple[str, ...] = ()
        provider: str | None = None
        indicator: str | None = None
        if value_kind == VALUE_KIND_PROPERTY:
            fields_raw = value_raw.get("fields")
            if not isinstance(fields_raw, list) or not fields_raw:
                raise ValueError(f"Expected non-empty list for '{metric_id}.value.fields'")
            fields = tuple(_require_str(item, f"{metric_id}.value.fields[]") for item in fields_raw)
        elif value_kind == VALUE_KIND_EXTERNAL:
            provider = _require_str(value_raw.get("provider"), f"{metric_id}.value.provider")
            indicator = _require_str(value_raw.get("indicator"), f"{metric_id}.value.indicator")
        else:
            raise ValueError(f"Unknown value kind '{value_kind}' for metric '{metric_id}'")

        format_raw = data.get("format", {})
        if format_raw is None:
            format_raw = {}
        if not isinstance(format_raw, Mapping):
            raise ValueError(f"Expected mapping for '{metric_id}.format'")

        enabled_raw = data.get("enabled", True)
        if not isinstance(enabled_raw, bool):
            raise ValueError(f"Expected bool for '{metric_id}.enabled'")
        reason_raw = data.get("disabled_reason")
        if reason_raw is not None and not isinstance(reason_raw, str):
            raise ValueError(f"Expected string for '{metric_id}.disabled_reason'")
        if not enabled_raw and not (reason_raw and reason_raw.strip()):
            raise ValueError(f"Disabled metric '{metric_id}' needs a 'disabled_reason'")

        return cls(
            id=metric_id,
            name=name,
            category=category,
            unit=unit_raw.strip(),
            value_kind=value_kind,
            fields=fields,
            provider=provider,
            indicator=indicator,
            format=FormatSpec.from_mapping(format_raw, f"{metric_id}.format"),
            enabled=enabled_raw,
            disabled_reason=reason_raw.strip() if reason_raw else None,
        )


def load_metric_catalog(path: Path) -> list[MetricSpec]:
    """Load and validate the metric catalog."""
    if not path.exists():
        raise FileNotFoundError(f"Metric catalog not found: {path}")
    with path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)
    if not isinstance(raw, list):
        raise ValueError(f"Expected list in {path}")

    specs: list[MetricSpec] = []
    seen: set[str] = set()
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValueError(f"Expected mapping at index {idx} in {path}")
        spec = MetricSpec.from_mapping(item)
        if spec.id in seen:
            raise ValueError(f"Duplicate metric id '{spec.id}' in {path}")
        seen.add(spec.id)
        specs.append(spec)
    return specs


def property_accessor(fields: Sequence[str]) -> Callable[[CountryFeature], float | None]:
    """First non-zero numeric property among `fields`, else 0."""

    def _value(feature: CountryFeature) -> float | None:
        for name in fields:
            number = _coerce_number(feature.properties.get(name))
            if number:
                return number
        return 0.0

    return _value


def external_accessor(
    dataset: str,
    lookup: ExternalLookup,
    resolver: CountryCodeResolver,
) -> Callable[[CountryFeature], float | None]:
    def _value(feature: CountryFeature) -> float | None:
        code = resolver.resolve(feature.properties).upper()
        return _coerce_number(lookup.get(dataset).get(code))

    return _value


class MetricRegistry:
    """Immutable catalog of metric sources keyed by id, in catalog order."""

    def __init__(self, sources: Iterable[MetricSource], specs: Iterable[MetricSpec] = ()) -> None:
        self._sources: dict[str, MetricSource] = {}
        for source in sources:
            if source.id in self._sources:
                raise ValueError(f"Duplicate metric id '{source.id}'")
            self._sources[source.id] = source
        self._specs = {spec.id: spec for spec in specs}

    @classmethod
    def from_specs(
        cls,
        specs: Sequence[MetricSpec],
        *,
        resolver: CountryCodeResolver,
        lookup: ExternalLookup | None = None,
    ) -> MetricRegistry:
        sources: list[MetricSource] = []
        for spec in specs:
            if spec.value_kind == VALUE_KIND_PROPERTY:
                accessor = property_accessor(spec.fields)
            elif lookup is None:
                accessor = _missing_lookup_accessor
            else:
                accessor = external_accessor(spec.dataset_key or spec.id, lookup, resolver)
            sources.append(
                MetricSource(
                    id=spec.id,
                    name=spec.name,
                    category=spec.category,
                    unit=spec.unit,
                    value=accessor,
                    format=spec.format,
                    enabled=spec.enabled,
                    disabled_reason=spec.disabled_reason,
                )
            )
        return cls(sources, specs)

    def __len__(self) -> int:
        return len(self._sources)

    def __contains__(self, metric_id: object) -> bool:
        return metric_id in self._sources

    def get(self, metric_id: str) -> MetricSource | None:
        return self._sources.get(metric_id)

    def selectable(self) -> tuple[MetricSource, ...]:
        return tuple(source for source in self._sources.values() if source.enabled)

    def disabled(self) -> tuple[MetricSource, ...]:
        return tuple(source for source in self._sources.values() if not source.enabled)

    def external_specs(self) -> tuple[MetricSpec, ...]:
        return tuple(
            spec
            for spec in self._specs.values()
            if spec.value_kind == VALUE_KIND_EXTERNAL and spec.enabled
        )


def _missing_lookup_accessor(_feature: CountryFeature) -> float | None:
    return None


class MetricSelection:
    """User-driven selection state over a registry.

    One source drives heights (or none); any number of enabled sources are shown
    in labels. Disabled and unknown ids are refused.
    """

    def __init__(self, registry: MetricRegistry, label_ids: Iterable[str] | None = None) -> None:
        self.registry = registry
        self._height_id: str | None = None
        if label_ids is None:
            label_ids = [source.id for source in registry.selectable()]
        self._label_ids: list[str] = [item for item in label_ids if self._selectable(item)]

    @property
    def height_id(self) -> str | None:
        return self._height_id

    @property
    def height_source(self) -> MetricSource | None:
        if self._height_id is None:
            return None
        return self.registry.get(self._height_id)

    @property
    def label_sources(self) -> tuple[MetricSource, ...]:
        out: list[MetricSource] = []
        for metric_id in self._label_ids:
            source = self.registry.get(metric_id)
            if source is not None:
                out.append(source)
        return tuple(out)

    def set_height(self, metric_id: str | None) -> bool:
        if metric_id is None:
            self._height_id = None
            return True
        if not self._selectable(metric_id):
            return False
        self._height_id = metric_id
        return True

    def toggle_height(self, metric_id: str) -> bool:
        """Select `metric_id`, or clear the selection if it is already active."""
        if self._height_id == metric_id:
            self._height_id = None
            return True
        return self.set_height(metric_id)

    def set_labels(self, metric_ids: Iterable[str]) -> None:
        self._label_ids = [item for item in metric_ids if self._selectable(item)]

    def _selectable(self, metric_id: str) -> bool:
        source = self.registry.get(metric_id)
        if source is None:
            _LOGGER.warning("Ignoring unknown metric source '%s'", metric_id)
            return False
        if not source.enabled:
            _LOGGER.warning(
                "Metric source '%s' is disabled: %s",
                metric_id,
                source.disabled_reason or "no reason given",
            )
            return False
        return True
