from pathlib import Path

import pytest

from geobridge.codes import CodeOverrides, CountryCodeResolver, is_valid_code, load_code_overrides


def test_valid_primary_code_is_upper_cased(resolver):
    assert resolver.resolve({"ISO_A2": "fr", "ADMIN": "Norway"}) == "FR"


@pytest.mark.parametrize("sentinel", ["-99", "n/a", "N/A", "  ", ""])
def test_invalid_primary_code_falls_back_to_admin_override(resolver, sentinel):
    assert resolver.resolve({"ISO_A2": sentinel, "ADMIN": "Norway"}) == "NO"


def test_name_override_used_when_admin_unmapped(resolver):
    props = {"ISO_A2": "-99", "ADMIN": "Republic of Kosovo", "NAME": "Kosovo"}
    assert resolver.resolve(props) == "XK"


def test_unmapped_invalid_code_is_returned_raw(resolver):
    assert resolver.resolve({"ISO_A2": "-99", "ADMIN": "Atlantis"}) == "-99"


def test_missing_code_resolves_to_empty_string(resolver):
    assert resolver.resolve({"NAME": "Nowhere"}) == ""
    assert resolver.resolve({}) == ""


def test_resolver_without_overrides_is_total():
    resolver = CountryCodeResolver()
    assert resolver.resolve({"ISO_A2": "-99", "ADMIN": "Norway"}) == "-99"
    assert resolver.resolve({"ISO_A2": None}) == ""


def test_excluded_codes(resolver):
    assert resolver.is_excluded({"ISO_A2": "GL"})
    assert resolver.is_excluded({"ISO_A2": "-99", "ADMIN": "Atlantis"})
    assert not resolver.is_excluded({"ISO_A2": "-99", "ADMIN": "France"})


def test_is_valid_code():
    assert is_valid_code("DE")
    assert not is_valid_code("-99")
    assert not is_valid_code(None)
    assert not is_valid_code(42)


def test_missing_override_file_means_no_overrides(tmp_path: Path):
    overrides = load_code_overrides(tmp_path / "absent.yaml")
    assert overrides == CodeOverrides()


def test_override_file_rejects_non_string_codes(tmp_path: Path):
    path = tmp_path / "overrides.yaml"
    path.write_text("names:\n  Norway: [1, 2]\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Norway"):
        load_code_overrides(path)


def test_shipped_override_table(project_root: Path):
    overrides = load_code_overrides(project_root / "data" / "code_overrides.yaml")
    assert overrides.by_name["Norway"] == "NO"
    assert overrides.by_name["Northern Cyprus"] == "XN"
    assert "-99" in overrides.excluded
    assert "GL" in overrides.excluded
