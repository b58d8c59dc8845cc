import logging
import math
from pathlib import Path

import pytest

from geobridge.codes import CountryCodeResolver
from geobridge.metrics import (
    FormatSpec,
    MetricRegistry,
    MetricSelection,
    MetricSpec,
    external_accessor,
    load_metric_catalog,
    property_accessor,
)


def _spec(**overrides):
    data = {
        "id": "gdp",
        "name": "GDP",
        "category": "builtin",
        "unit": "USD millions",
        "value": {"kind": "property", "fields": ["GDP_MD_EST", "GDP_MD"]},
        "format": {"divisor": 1000, "suffix": "B$"},
    }
    data.update(overrides)
    return MetricSpec.from_mapping(data)


class _Lookup:
    def __init__(self, datasets):
        self.datasets = datasets

    def get(self, dataset):
        return self.datasets.get(dataset, {})


def test_shipped_catalog(project_root: Path):
    specs = load_metric_catalog(project_root / "data" / "metrics.yaml")
    ids = [spec.id for spec in specs]
    assert ids[:4] == ["gdp", "area", "population", "neighbors"]
    disabled = [spec for spec in specs if not spec.enabled]
    assert disabled and all(spec.disabled_reason for spec in disabled)
    assert {spec.category for spec in specs} == {
        "builtin",
        "economic",
        "demographic",
        "resource",
        "survey",
    }


def test_property_accessor_takes_first_non_zero_field(make_feature):
    accessor = property_accessor(("GDP_MD_EST", "GDP_MD"))
    assert accessor(make_feature(0, GDP_MD_EST=0, GDP_MD=512)) == 512.0
    assert accessor(make_feature(1, GDP_MD_EST="1200")) == 1200.0
    assert accessor(make_feature(2, GDP_MD_EST=None, GDP_MD=True)) == 0.0
    assert accessor(make_feature(3)) == 0.0


def test_external_accessor_reads_resolved_code(make_feature, resolver):
    lookup = _Lookup({"worldbank:SP.POP.TOTL": {"NO": 5.4e6}})
    accessor = external_accessor("worldbank:SP.POP.TOTL", lookup, resolver)
    assert accessor(make_feature(0, "-99", ADMIN="Norway")) == 5.4e6
    assert accessor(make_feature(1, "SE")) is None


def test_format_spec():
    fmt = FormatSpec(divisor=1000, decimals=0, suffix="B$")
    assert fmt(2_512_000) == "2,512B$"
    assert FormatSpec(decimals=1, prefix="$")(1234.56) == "$1,234.6"
    assert fmt(math.nan) == "n/a"


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"category": "weather"}, "Unknown category"),
        ({"value": {"kind": "formula"}}, "Unknown value kind"),
        ({"value": {"kind": "property", "fields": []}}, "fields"),
        ({"value": {"kind": "external", "provider": "worldbank"}}, "indicator"),
        ({"enabled": False}, "disabled_reason"),
        ({"format": {"divisor": 0}}, "divisor"),
    ],
)
def test_spec_validation(overrides, message):
    with pytest.raises(ValueError, match=message):
        _spec(**overrides)


def test_catalog_rejects_duplicate_ids(tmp_path: Path):
    path = tmp_path / "metrics.yaml"
    entry = (
        "- id: gdp\n"
        "  name: GDP\n"
        "  category: builtin\n"
        "  value: {kind: property, fields: [GDP_MD]}\n"
    )
    path.write_text(entry + entry, encoding="utf-8")
    with pytest.raises(ValueError, match="Duplicate"):
        load_metric_catalog(path)


def test_external_spec_dataset_key():
    spec = _spec(
        id="urban",
        category="demographic",
        unit="%",
        value={"kind": "external", "provider": "worldbank", "indicator": "SP.URB.TOTL.IN.ZS"},
    )
    assert spec.dataset_key == "worldbank:SP.URB.TOTL.IN.ZS"
    assert _spec().dataset_key is None


def _registry(lookup=None):
    specs = [
        _spec(),
        _spec(
            id="urban",
            name="Urban",
            category="demographic",
            unit="%",
            value={"kind": "external", "provider": "worldbank", "indicator": "SP.URB.TOTL.IN.ZS"},
        ),
        _spec(id="happiness", name="Happiness", category="survey", enabled=False, disabled_reason="no API"),
    ]
    return MetricRegistry.from_specs(specs, resolver=CountryCodeResolver(), lookup=lookup)


def test_registry_partitions_sources():
    registry = _registry()
    assert len(registry) == 3
    assert "urban" in registry
    assert [source.id for source in registry.selectable()] == ["gdp", "urban"]
    assert [source.id for source in registry.disabled()] == ["happiness"]
    assert [spec.id for spec in registry.external_specs()] == ["urban"]
    assert registry.get("urban").is_percentage


def test_external_source_without_lookup_yields_none(make_feature):
    assert _registry().get("urban").value(make_feature(0, "FR")) is None


def test_selection_toggles_height_source():
    selection = MetricSelection(_registry())
    assert selection.height_id is None
    assert selection.toggle_height("gdp")
    assert selection.height_id == "gdp"
    assert selection.toggle_height("gdp")
    assert selection.height_source is None


def test_selection_refuses_disabled_and_unknown_sources(caplog):
    selection = MetricSelection(_registry())
    with caplog.at_level(logging.WARNING, logger="geobridge.metrics"):
        assert not selection.set_height("happiness")
        assert not selection.set_height("nope")
    assert selection.height_id is None
    assert "disabled" in caplog.text
    assert "nope" in caplog.text


def test_label_sources_default_to_selectable():
    selection = MetricSelection(_registry())
    assert [source.id for source in selection.label_sources] == ["gdp", "urban"]
    selection.set_labels(["urban", "happiness"])
    assert [source.id for source in selection.label_sources] == ["urban"]
