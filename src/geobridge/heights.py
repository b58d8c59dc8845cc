"""Outlier-aware height normalization for metric overlays.

Raw dataset values (GDP, population, resource output, survey scores...) are
mapped onto a bounded extrusion height. Distributions with a single dominant
value ("outlier crushers") get a dampened ceiling so the remaining countries
stay distinguishable, and datasets outside the built-in set get a
distribution-dependent exponent that expands tight distributions and
compresses long-tailed ones.
"""

from __future__ import annotations

import logging
import math
import statistics
from dataclasses import dataclass
from typing import Protocol, Sequence

from .config import HeightsConfig
from .metrics import CATEGORY_BUILTIN, CATEGORY_RESOURCE
from .models import CountryFeature, HeightStatistics, HoverContext, MetricSource
from .regions import UNKNOWN_REGION


# Fixed exponents for the built-in datasets; everything else is adaptive.
BUILTIN_EXPONENTS = {
    "gdp": 0.6,
    "population": 0.7,
    "area": 1.0,
    "neighbors": 1.0,
}

OUTLIER_IQR_MULTIPLIER = 2.5
OUTLIER_OVERFLOW_SPAN = 0.8

_LOGGER = logging.getLogger("geobridge.heights")


@dataclass(frozen=True, slots=True)
class HeightPolicy:
    base_height: float = 0.005
    builtin_multiplier: float = 0.5
    percentage_multiplier: float = 0.3
    resource_multiplier: float = 0.4
    default_multiplier: float = 0.35
    hover_direct_in_region: float = 0.05
    hover_region: float = 0.02
    hover_direct_no_region: float = 0.01

    @classmethod
    def from_config(cls, cfg: HeightsConfig) -> HeightPolicy:
        return cls(
            base_height=cfg.base_height,
            builtin_multiplier=cfg.builtin_multiplier,
            percentage_multiplier=cfg.percentage_multiplier,
            resource_multiplier=cfg.resource_multiplier,
            default_multiplier=cfg.default_multiplier,
            hover_direct_in_region=cfg.hover.direct_in_region,
            hover_region=cfg.hover.region,
            hover_direct_no_region=cfg.hover.direct_no_region,
        )

    def multiplier_for(self, source: MetricSource) -> float:
        if source.category == CATEGORY_BUILTIN:
            return self.builtin_multiplier
        if source.is_percentage:
            return self.percentage_multiplier
        if source.category == CATEGORY_RESOURCE:
            return self.resource_multiplier
        return self.default_multiplier


class ScalingStrategy(Protocol):
    exponent: float

    def apply(self, normalized: float) -> float: ...


@dataclass(frozen=True, slots=True)
class FixedExponentScaling:
    exponent: float

    def apply(self, normalized: float) -> float:
        return normalized**self.exponent


@dataclass(frozen=True, slots=True)
class AdaptiveScaling:
    """Power scaling followed by anti-clustering smoothing at the crowded end."""

    exponent: float

    @property
    def expansive(self) -> bool:
        return self.exponent > 1.0

    def apply(self, normalized: float) -> float:
        scaled = normalized**self.exponent
        if self.expansive:
            if scaled > 0.9:
                scaled -= (scaled - 0.9) * 0.15
        elif scaled < 0.1:
            scaled += (0.1 - scaled) * 0.15
        return scaled


def _percentile(values: Sequence[float], fraction: float) -> float:
    return values[int(math.floor((len(values) - 1) * fraction))]


def _empty_statistics(source_id: str) -> HeightStatistics:
    return HeightStatistics(
        source_id=source_id,
        values=(),
        max=0.0,
        min=0.0,
        mean=0.0,
        median=0.0,
        stdev=0.0,
        q1=0.0,
        q3=0.0,
        iqr=0.0,
        outlier_threshold=0.0,
        p90=0.0,
        p95=0.0,
        p99=0.0,
        is_crusher=False,
        adjusted_max=0.0,
    )


def build_statistics(source_id: str, raw_values: Sequence[float]) -> HeightStatistics:
    """Distribution statistics over the positive finite entries of `raw_values`."""
    values = tuple(sorted(v for v in raw_values if math.isfinite(v) and v > 0))
    if not values:
        return _empty_statistics(source_id)

    max_v = values[-1]
    min_v = values[0]
    mean = statistics.fmean(values)
    median = statistics.median(values)
    stdev = statistics.pstdev(values) if len(values) > 1 else 0.0
    q1 = _percentile(values, 0.25)
    q3 = _percentile(values, 0.75)
    iqr = q3 - q1
    threshold = q3 + OUTLIER_IQR_MULTIPLIER * iqr
    p90 = _percentile(values, 0.90)
    p95 = _percentile(values, 0.95)
    p99 = _percentile(values, 0.99)

    is_crusher = (
        max_v / p95 > 3.0
        or max_v / mean > 8.0
        or max_v / median > 10.0
        or max_v > threshold
    )
    if is_crusher:
        adjusted = max(p95 * 1.5, mean * 3.0, median * 4.0)
        adjusted = min(max(adjusted, 0.3 * max_v), 0.8 * max_v)
        outliers = frozenset(
            v for v in values if v > threshold or v > 2.5 * p95 or v > 6.0 * mean
        )
    else:
        adjusted = max_v
        outliers = frozenset()

    return HeightStatistics(
        source_id=source_id,
        values=values,
        max=max_v,
        min=min_v,
        mean=mean,
        median=median,
        stdev=stdev,
        q1=q1,
        q3=q3,
        iqr=iqr,
        outlier_threshold=threshold,
        p90=p90,
        p95=p95,
        p99=p99,
        is_crusher=is_crusher,
        adjusted_max=adjusted,
        outliers=outliers,
    )


def adaptive_exponent(stats: HeightStatistics) -> float:
    """Exponent derived from spread (CV) and dampened by outlier intensity."""
    if stats.count == 0 or stats.mean <= 0:
        return 1.0

    cv = stats.cv
    if cv < 0.4:
        exponent = 3.0 - (cv / 0.4)
    elif cv > 1.2:
        exponent = max(0.4, 1.0 - (cv - 1.2) * 0.5)
    else:
        exponent = 2.2 - (abs(cv - 0.8) / 0.4) * 1.2

    ratio_p95 = stats.max / stats.p95
    if ratio_p95 > 3.0:
        exponent *= 1.0 - min(0.6, (ratio_p95 - 3.0) * 0.1)

    value_range = stats.max - stats.min
    top_fraction = (stats.max - stats.p95) / value_range if value_range > 0 else 0.0
    if top_fraction > 0.3:
        exponent *= 1.0 - min(0.4, (top_fraction - 0.3) * 0.8)

    if stats.p99 / stats.p90 > 2.0:
        exponent *= 0.8
    if stats.max / stats.p90 > 5.0:
        exponent = min(exponent, 0.6)

    if exponent > 1.0:
        return min(max(exponent, 1.1), 3.5)
    return min(max(exponent, 0.3), 0.95)


class HeightNormalizer:
    """Compute statistics and per-feature heights for the active metric source."""

    def __init__(self, policy: HeightPolicy | None = None) -> None:
        self.policy = policy or HeightPolicy()
        self._warned_sources: set[str] = set()

    def lookup(self, feature: CountryFeature, source: MetricSource) -> float | None:
        """Accessor result, or None when missing or invalid.

        Accessor exceptions, non-numeric results, NaN and negatives are logged
        once per source and never propagate.
        """
        try:
            raw = source.value(feature)
        except Exception as exc:
            self._warn(source, f"accessor raised {type(exc).__name__}: {exc}")
            return None
        if raw is None:
            return None
        try:
            value = float(raw)
        except (TypeError, ValueError):
            self._warn(source, f"accessor returned non-numeric {raw!r}")
            return None
        if not math.isfinite(value) or value < 0:
            self._warn(source, f"accessor returned invalid value {value!r}")
            return None
        return value

    def safe_value(self, feature: CountryFeature, source: MetricSource) -> float:
        value = self.lookup(feature, source)
        return 0.0 if value is None else value

    def compute_statistics(
        self,
        features: Sequence[CountryFeature],
        source: MetricSource,
    ) -> HeightStatistics:
        if not source.enabled:
            _LOGGER.warning(
                "Metric source '%s' is disabled (%s); no statistics computed",
                source.id,
                source.disabled_reason or "no reason given",
            )
            return _empty_statistics(source.id)
        stats = build_statistics(source.id, [self.safe_value(f, source) for f in features])
        _LOGGER.debug(
            "Statistics for '%s': n=%d max=%g adjusted_max=%g crusher=%s outliers=%d",
            source.id,
            stats.count,
            stats.max,
            stats.adjusted_max,
            stats.is_crusher,
            len(stats.outliers),
        )
        return stats

    def scaling_for(self, source: MetricSource, stats: HeightStatistics) -> ScalingStrategy:
        fixed = BUILTIN_EXPONENTS.get(source.id)
        if fixed is not None:
            return FixedExponentScaling(fixed)
        return AdaptiveScaling(adaptive_exponent(stats))

    def normalized_value(self, value: float, stats: HeightStatistics) -> tuple[float, float]:
        """Split a value into its in-range fraction [0, 1] and outlier overflow [0, 0.8]."""
        if value <= 0 or stats.count == 0:
            return (0.0, 0.0)
        if stats.max <= stats.min:
            return (1.0, 0.0)
        adjusted = stats.adjusted_max
        if stats.is_outlier(value) and value > adjusted and stats.max > adjusted:
            overflow = (value - adjusted) / (stats.max - adjusted) * OUTLIER_OVERFLOW_SPAN
            return (1.0, min(overflow, OUTLIER_OVERFLOW_SPAN))
        span = adjusted - stats.min
        if span <= 0:
            return (1.0, 0.0)
        return (min(max((value - stats.min) / span, 0.0), 1.0), 0.0)

    def compute_height(
        self,
        feature: CountryFeature,
        source: MetricSource | None,
        stats: HeightStatistics | None,
        hover: HoverContext | None = None,
    ) -> float:
        height = self.policy.base_height
        if source is not None and stats is not None and source.enabled:
            value = self.safe_value(feature, source)
            in_range, overflow = self.normalized_value(value, stats)
            if in_range > 0 or overflow > 0:
                scaled = self.scaling_for(source, stats).apply(in_range)
                height += (scaled + overflow) * self.policy.multiplier_for(source)
        if hover is not None:
            height += self.hover_delta(feature, hover)
        return height

    def hover_delta(self, feature: CountryFeature, hover: HoverContext) -> float:
        hovered = hover.hovered
        if hovered is None:
            return 0.0
        is_self = hovered.feature_id == feature.feature_id
        hovered_region = hover.region_of(hovered)
        if hovered_region and hovered_region != UNKNOWN_REGION:
            if hover.region_of(feature) == hovered_region:
                return self.policy.hover_direct_in_region if is_self else self.policy.hover_region
            return 0.0
        return self.policy.hover_direct_no_region if is_self else 0.0

    def _warn(self, source: MetricSource, message: str) -> None:
        if source.id in self._warned_sources:
            return
        self._warned_sources.add(source.id)
        _LOGGER.warning("Metric source '%s': %s; substituting 0", source.id, message)
