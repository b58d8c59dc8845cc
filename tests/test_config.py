from pathlib import Path
from typing import Any

import pytest
import yaml

from geobridge.boundaries import MatchMode
from geobridge.config import HeightsConfig, load_config
from geobridge.regions import ClassificationMode


def _shipped(project_root: Path) -> dict[str, Any]:
    with (project_root / "config.yaml").open("r", encoding="utf-8") as fh:
        return yaml.safe_load(fh)


def _write(tmp_path: Path, raw: dict[str, Any]) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(raw, sort_keys=False), encoding="utf-8")
    return path


def test_shipped_config_loads(project_root: Path):
    cfg = load_config(project_root / "config.yaml")
    assert cfg.paths.regions == project_root / "data" / "regions.yaml"
    assert cfg.paths.regions in cfg.paths.required_input_files
    assert cfg.classification.default_mode is ClassificationMode.STATIC
    assert cfg.boundaries.match_mode is MatchMode.CONSUME
    assert cfg.heights.base_height == pytest.approx(0.005)
    assert cfg.heights.hover.direct_in_region > cfg.heights.hover.region
    assert cfg.fetch.base_url.startswith("https://")


def test_relative_paths_resolve_against_config_dir(tmp_path: Path, project_root: Path):
    raw = _shipped(project_root)
    cfg = load_config(_write(tmp_path, raw))
    assert cfg.paths.overlay_dir == tmp_path.resolve() / "build" / "overlay"


def test_missing_config_file(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.yaml")


def test_top_level_must_be_mapping(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError, match="mapping"):
        load_config(path)


def test_hover_deltas_must_be_strictly_ordered(tmp_path: Path, project_root: Path):
    raw = _shipped(project_root)
    raw["heights"]["hover"] = {"direct_in_region": 0.02, "region": 0.02, "direct_no_region": 0.01}
    with pytest.raises(ValueError, match="direct_in_region > region"):
        load_config(_write(tmp_path, raw))


def test_invalid_match_mode(tmp_path: Path, project_root: Path):
    raw = _shipped(project_root)
    raw["boundaries"]["match_mode"] = "greedy"
    with pytest.raises(ValueError, match="boundaries.match_mode: Unknown match mode 'greedy'"):
        load_config(_write(tmp_path, raw))


def test_modes_parse_case_insensitively(tmp_path: Path, project_root: Path):
    raw = _shipped(project_root)
    raw["classification"]["default_mode"] = "Derived"
    raw["boundaries"]["match_mode"] = "ALLOW_DUPLICATES"
    cfg = load_config(_write(tmp_path, raw))
    assert cfg.classification.default_mode is ClassificationMode.DERIVED
    assert cfg.boundaries.match_mode is MatchMode.ALLOW_DUPLICATES


def test_invalid_classification_mode(tmp_path: Path, project_root: Path):
    raw = _shipped(project_root)
    raw["classification"]["default_mode"] = "continental"
    with pytest.raises(ValueError, match="classification.default_mode: Unknown classification mode"):
        load_config(_write(tmp_path, raw))


def test_fetch_requires_base_url(tmp_path: Path, project_root: Path):
    raw = _shipped(project_root)
    del raw["fetch"]["base_url"]
    with pytest.raises(ValueError, match="fetch.base_url"):
        load_config(_write(tmp_path, raw))


def test_optional_sections_fall_back_to_defaults(tmp_path: Path, project_root: Path):
    raw = _shipped(project_root)
    for key in ("classification", "boundaries", "heights"):
        raw.pop(key)
    cfg = load_config(_write(tmp_path, raw))
    assert cfg.boundaries.tolerance == pytest.approx(0.01)
    assert cfg.heights == HeightsConfig.from_mapping({})
    assert cfg.heights.hover.region == pytest.approx(0.02)
