import logging
import math

import pytest

from geobridge.heights import (
    AdaptiveScaling,
    FixedExponentScaling,
    HeightNormalizer,
    HeightPolicy,
    adaptive_exponent,
    build_statistics,
)
from geobridge.metrics import FormatSpec
from geobridge.models import HeightStatistics, HoverContext, MetricSource


def _source(metric_id="gdp", *, category="builtin", unit="", field="VALUE", enabled=True, value=None):
    def _read(feature):
        return feature.properties.get(field)

    return MetricSource(
        id=metric_id,
        name=metric_id.title(),
        category=category,
        unit=unit,
        value=value or _read,
        format=FormatSpec(),
        enabled=enabled,
        disabled_reason=None if enabled else "not available",
    )


def _features(make_feature, values):
    return [make_feature(idx, VALUE=value) for idx, value in enumerate(values)]


def test_single_dominant_value_is_flagged_and_overflows(make_feature):
    normalizer = HeightNormalizer()
    source = _source()
    small, big = _features(make_feature, [100, 100_000_000])

    stats = normalizer.compute_statistics([small, big], source)

    assert stats.is_crusher
    assert stats.is_outlier(100_000_000)
    assert not stats.is_outlier(100)
    assert stats.adjusted_max == pytest.approx(80_000_000)
    big_in_range, big_overflow = normalizer.normalized_value(100_000_000, stats)
    small_in_range, small_overflow = normalizer.normalized_value(100, stats)
    assert big_in_range + big_overflow > 1.0
    assert big_in_range + big_overflow <= 1.8
    assert small_in_range + small_overflow == pytest.approx(0.0, abs=1e-6)

    assert normalizer.compute_height(big, source, stats) == pytest.approx(0.005 + 1.8 * 0.5)
    assert normalizer.compute_height(small, source, stats) == pytest.approx(0.005)


def test_adjusted_max_stays_within_crusher_bounds():
    values = [float(v) for v in range(1, 21)] + [10_000.0]
    stats = build_statistics("x", values)
    assert stats.is_crusher
    assert 0.3 * stats.max <= stats.adjusted_max <= 0.8 * stats.max


def test_even_distribution_has_no_outliers():
    stats = build_statistics("x", [10.0 * n for n in range(1, 11)])
    assert not stats.is_crusher
    assert stats.adjusted_max == stats.max
    assert stats.outliers == frozenset()
    assert stats.q1 == 30.0
    assert stats.q3 == 70.0
    assert stats.outlier_threshold == pytest.approx(170.0)


def test_non_outlier_heights_stay_in_range(make_feature):
    normalizer = HeightNormalizer()
    source = _source("score", category="economic")
    features = _features(make_feature, [3, 7, 12, 18, 25, 31, 44, 52, 60, 75])
    stats = normalizer.compute_statistics(features, source)
    policy = normalizer.policy

    for feature in features:
        height = normalizer.compute_height(feature, source, stats)
        assert policy.base_height <= height <= policy.base_height + policy.default_multiplier


def test_statistics_ignore_non_positive_and_invalid_values(make_feature):
    normalizer = HeightNormalizer()
    features = _features(make_feature, [0, -5, None, "abc", float("nan"), 4, 2])
    stats = normalizer.compute_statistics(features, _source())
    assert stats.values == (2.0, 4.0)
    assert stats.min == 2.0
    assert stats.max == 4.0


def test_empty_statistics(make_feature):
    normalizer = HeightNormalizer()
    stats = normalizer.compute_statistics(_features(make_feature, [0, None]), _source())
    assert stats.count == 0
    assert stats.max == 0.0
    assert not stats.is_crusher
    assert normalizer.compute_height(make_feature(9, VALUE=5), _source(), stats) == 0.005


def test_identical_values_normalize_to_one(make_feature):
    normalizer = HeightNormalizer()
    source = _source("gdp")
    features = _features(make_feature, [7, 7, 7])
    stats = normalizer.compute_statistics(features, source)
    assert normalizer.normalized_value(7, stats) == (1.0, 0.0)
    assert normalizer.compute_height(features[0], source, stats) == pytest.approx(0.005 + 0.5)


def test_zero_value_gets_base_height_only(make_feature):
    normalizer = HeightNormalizer()
    source = _source("gdp")
    features = _features(make_feature, [0, 10, 20])
    stats = normalizer.compute_statistics(features, source)
    assert normalizer.compute_height(features[0], source, stats) == 0.005


def test_builtin_ids_use_fixed_exponents():
    normalizer = HeightNormalizer()
    stats = build_statistics("gdp", [1.0, 2.0, 3.0])
    assert normalizer.scaling_for(_source("gdp"), stats) == FixedExponentScaling(0.6)
    assert normalizer.scaling_for(_source("population"), stats) == FixedExponentScaling(0.7)
    assert normalizer.scaling_for(_source("area"), stats) == FixedExponentScaling(1.0)
    assert isinstance(normalizer.scaling_for(_source("oil", category="resource"), stats), AdaptiveScaling)


def test_tight_distribution_gets_expansive_exponent():
    stats = build_statistics("x", [100.0, 102.0, 104.0, 106.0, 108.0, 110.0])
    exponent = adaptive_exponent(stats)
    assert 1.1 <= exponent <= 3.5


def test_long_tailed_distribution_gets_compressive_exponent():
    values = [1.0] * 30 + [2.0, 3.0, 5.0, 40.0, 400.0]
    exponent = adaptive_exponent(build_statistics("x", values))
    assert 0.3 <= exponent <= 0.95


def _shape(cv, *, max_v=10.0, min_v=10.0, p90=10.0, p95=10.0, p99=10.0, values=(1.0,)):
    return HeightStatistics(
        source_id="x",
        values=values,
        max=max_v,
        min=min_v,
        mean=10.0,
        median=10.0,
        stdev=cv * 10.0,
        q1=0.0,
        q3=0.0,
        iqr=0.0,
        outlier_threshold=0.0,
        p90=p90,
        p95=p95,
        p99=p99,
        is_crusher=False,
        adjusted_max=max_v,
    )


@pytest.mark.parametrize(
    "stats, expected",
    [
        pytest.param(_shape(0.0), 3.0, id="cv_zero"),
        pytest.param(_shape(0.2), 2.5, id="cv_low"),
        pytest.param(_shape(0.3), 2.25, id="cv_low_upper"),
        pytest.param(_shape(0.5), 1.3, id="tent_rising"),
        pytest.param(_shape(0.8), 2.2, id="tent_peak"),
        pytest.param(_shape(1.0), 1.6, id="tent_falling"),
        pytest.param(_shape(2.0), 0.6, id="high_cv"),
        pytest.param(_shape(3.0), 0.4, id="high_cv_floor"),
        pytest.param(_shape(0.8, max_v=20.0, min_v=0.0), 1.848, id="top_fraction"),
        pytest.param(_shape(0.8, max_v=30.0, min_v=9.0), 1.32, id="top_fraction_capped"),
        pytest.param(_shape(0.8, max_v=25.0, p95=25.0, p99=25.0), 1.76, id="p99_over_p90"),
        pytest.param(_shape(0.8, max_v=60.0, p95=60.0, p99=60.0), 0.6, id="max_over_p90_cap"),
        pytest.param(_shape(0.8, max_v=40.0), 1.188, id="p95_ratio_and_top_fraction"),
        pytest.param(_shape(0.8, max_v=100.0), 0.528, id="p95_ratio_capped"),
        pytest.param(_shape(3.0, max_v=30.0, min_v=9.0), 0.3, id="compressive_floor"),
        pytest.param(_shape(2.0, max_v=25.0, p95=25.0, p99=25.0), 0.48, id="p99_compressive"),
    ],
)
def test_adaptive_exponent_values(stats, expected):
    assert adaptive_exponent(stats) == pytest.approx(expected)


def test_adaptive_exponent_without_values_is_linear():
    assert adaptive_exponent(_shape(0.8, values=())) == 1.0


def test_adaptive_smoothing_keeps_output_in_unit_range():
    expansive = AdaptiveScaling(2.0)
    compressive = AdaptiveScaling(0.5)
    samples = [i / 20 for i in range(21)]
    for scaling in (expansive, compressive):
        outputs = [scaling.apply(v) for v in samples]
        assert all(0.0 <= out <= 1.0 for out in outputs)
        assert outputs == sorted(outputs)
    assert expansive.apply(1.0) == pytest.approx(0.985)
    assert compressive.apply(0.0) == pytest.approx(0.015)


@pytest.mark.parametrize(
    ("category", "unit", "expected"),
    [
        ("builtin", "USD", 0.5),
        ("demographic", "%", 0.3),
        ("resource", "%", 0.3),
        ("resource", "tonnes", 0.4),
        ("economic", "USD", 0.35),
    ],
)
def test_multiplier_by_category(category, unit, expected):
    assert HeightPolicy().multiplier_for(_source("m", category=category, unit=unit)) == expected


def test_hover_deltas_are_ordered(make_feature):
    normalizer = HeightNormalizer()
    regions = {0: "west_europe", 1: "west_europe", 2: "central_europe", 3: "unknown"}
    features = [make_feature(idx) for idx in regions]

    def region_of(feature):
        return regions[feature.feature_id]

    hover_in_region = HoverContext(hovered=features[0], region_of=region_of)
    hover_no_region = HoverContext(hovered=features[3], region_of=region_of)

    direct = normalizer.hover_delta(features[0], hover_in_region)
    same_region = normalizer.hover_delta(features[1], hover_in_region)
    other_region = normalizer.hover_delta(features[2], hover_in_region)
    direct_no_region = normalizer.hover_delta(features[3], hover_no_region)

    assert direct > same_region > direct_no_region > other_region == 0.0
    assert normalizer.hover_delta(features[0], hover_no_region) == 0.0
    assert normalizer.hover_delta(features[0], HoverContext.none()) == 0.0


def test_hover_adds_to_metric_height(make_feature):
    normalizer = HeightNormalizer()
    source = _source()
    features = _features(make_feature, [10, 20])
    stats = normalizer.compute_statistics(features, source)
    hover = HoverContext(hovered=features[1], region_of=lambda _feature: "west_europe")

    plain = normalizer.compute_height(features[1], source, stats)
    hovered = normalizer.compute_height(features[1], source, stats, hover)

    assert hovered - plain == pytest.approx(0.05)


def test_accessor_failures_coerce_to_zero_and_warn_once(make_feature, caplog):
    def _boom(_feature):
        raise KeyError("VALUE")

    normalizer = HeightNormalizer()
    source = _source("broken", category="economic", value=_boom)
    features = _features(make_feature, [1, 2, 3])

    with caplog.at_level(logging.WARNING, logger="geobridge.heights"):
        stats = normalizer.compute_statistics(features, source)
        heights = [normalizer.compute_height(feature, source, stats) for feature in features]

    assert stats.count == 0
    assert heights == [0.005, 0.005, 0.005]
    warnings = [record for record in caplog.records if "broken" in record.getMessage()]
    assert len(warnings) == 1


def test_negative_and_nan_values_coerce_to_zero(make_feature):
    normalizer = HeightNormalizer()
    source = _source()
    assert normalizer.safe_value(make_feature(0, VALUE=-3), source) == 0.0
    assert normalizer.safe_value(make_feature(1, VALUE=math.nan), source) == 0.0
    assert normalizer.lookup(make_feature(2), source) is None


def test_disabled_source_never_contributes(make_feature):
    normalizer = HeightNormalizer()
    source = _source("survey", category="survey", enabled=False)
    features = _features(make_feature, [10, 20, 30])

    stats = normalizer.compute_statistics(features, source)

    assert stats.count == 0
    assert normalizer.compute_height(features[2], source, stats) == 0.005
