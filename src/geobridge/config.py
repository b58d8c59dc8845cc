"""Typed configuration loader for `config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, TypeVar, cast

import yaml

from .boundaries import MatchMode
from .regions import ClassificationMode


_E = TypeVar("_E")


def _mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValueError(f"Expected mapping for '{field_name}'")
    return cast(Mapping[str, Any], value)


def _optional_mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    return _mapping(value, field_name)


def _str(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Expected non-empty string for '{field_name}'")
    return value.strip()


def _int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Expected integer for '{field_name}'")
    return value


def _float(value: Any, field_name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"Expected float for '{field_name}'")
    if isinstance(value, (int, float)):
        return float(value)
    raise ValueError(f"Expected float for '{field_name}'")


def _positive_float(value: Any, field_name: str) -> float:
    out = _float(value, field_name)
    if out <= 0:
        raise ValueError(f"'{field_name}' must be > 0")
    return out


def _bool(value: Any, field_name: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"Expected bool for '{field_name}'")
    return value


def _enum(value: Any, field_name: str, parse: Callable[[str], _E]) -> _E:
    raw = _str(value, field_name)
    try:
        return parse(raw)
    except ValueError as exc:
        raise ValueError(f"{field_name}: {exc}") from exc


def _path_from_cfg(value: Any, field_name: str, root_dir: Path) -> Path:
    raw = _str(value, field_name)
    p = Path(raw)
    return p if p.is_absolute() else root_dir / p


@dataclass(frozen=True, slots=True)
class PathsConfig:
    ne_admin0_countries: Path
    regions: Path
    metrics: Path
    code_overrides: Path
    build_root: Path
    overlay_dir: Path
    preview_dir: Path
    cache_dir: Path
    manifests_dir: Path
    logs_dir: Path

    @property
    def required_input_files(self) -> tuple[Path, ...]:
        return (self.regions, self.metrics, self.code_overrides)

    @property
    def build_directories(self) -> tuple[Path, ...]:
        return (
            self.build_root,
            self.overlay_dir,
            self.preview_dir,
            self.cache_dir,
            self.manifests_dir,
            self.logs_dir,
        )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], root_dir: Path) -> PathsConfig:
        return cls(
            ne_admin0_countries=_path_from_cfg(
                raw.get("ne_admin0_countries"), "paths.ne_admin0_countries", root_dir
            ),
            regions=_path_from_cfg(raw.get("regions"), "paths.regions", root_dir),
            metrics=_path_from_cfg(raw.get("metrics"), "paths.metrics", root_dir),
            code_overrides=_path_from_cfg(
                raw.get("code_overrides"), "paths.code_overrides", root_dir
            ),
            build_root=_path_from_cfg(raw.get("build_root"), "paths.build_root", root_dir),
            overlay_dir=_path_from_cfg(raw.get("overlay_dir"), "paths.overlay_dir", root_dir),
            preview_dir=_path_from_cfg(raw.get("preview_dir"), "paths.preview_dir", root_dir),
            cache_dir=_path_from_cfg(raw.get("cache_dir"), "paths.cache_dir", root_dir),
            manifests_dir=_path_from_cfg(raw.get("manifests_dir"), "paths.manifests_dir", root_dir),
            logs_dir=_path_from_cfg(raw.get("logs_dir"), "paths.logs_dir", root_dir),
        )


@dataclass(frozen=True, slots=True)
class ClassificationConfig:
    default_mode: ClassificationMode

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> ClassificationConfig:
        return cls(
            default_mode=_enum(
                raw.get("default_mode", "static"),
                "classification.default_mode",
                ClassificationMode.parse,
            )
        )


@dataclass(frozen=True, slots=True)
class BoundariesConfig:
    tolerance: float
    match_mode: MatchMode

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> BoundariesConfig:
        return cls(
            tolerance=_positive_float(raw.get("tolerance", 0.01), "boundaries.tolerance"),
            match_mode=_enum(
                raw.get("match_mode", "consume"), "boundaries.match_mode", MatchMode.parse
            ),
        )


@dataclass(frozen=True, slots=True)
class HoverDeltasConfig:
    direct_in_region: float
    region: float
    direct_no_region: float

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> HoverDeltasConfig:
        out = cls(
            direct_in_region=_positive_float(
                raw.get("direct_in_region", 0.05), "heights.hover.direct_in_region"
            ),
            region=_positive_float(raw.get("region", 0.02), "heights.hover.region"),
            direct_no_region=_positive_float(
                raw.get("direct_no_region", 0.01), "heights.hover.direct_no_region"
            ),
        )
        if not out.direct_in_region > out.region > out.direct_no_region:
            raise ValueError(
                "heights.hover deltas must satisfy direct_in_region > region > direct_no_region"
            )
        return out


@dataclass(frozen=True, slots=True)
class HeightsConfig:
    base_height: float
    builtin_multiplier: float
    percentage_multiplier: float
    resource_multiplier: float
    default_multiplier: float
    hover: HoverDeltasConfig

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> HeightsConfig:
        base_height = _float(raw.get("base_height", 0.005), "heights.base_height")
        if base_height < 0:
            raise ValueError("heights.base_height must be >= 0")
        return cls(
            base_height=base_height,
            builtin_multiplier=_positive_float(
                raw.get("builtin_multiplier", 0.5), "heights.builtin_multiplier"
            ),
            percentage_multiplier=_positive_float(
                raw.get("percentage_multiplier", 0.3), "heights.percentage_multiplier"
            ),
            resource_multiplier=_positive_float(
                raw.get("resource_multiplier", 0.4), "heights.resource_multiplier"
            ),
            default_multiplier=_positive_float(
                raw.get("default_multiplier", 0.35), "heights.default_multiplier"
            ),
            hover=HoverDeltasConfig.from_mapping(
                _optional_mapping(raw.get("hover"), "heights.hover")
            ),
        )


@dataclass(frozen=True, slots=True)
class FetchConfig:
    enabled: bool
    base_url: str
    ttl_s: float
    request_timeout_s: int
    user_agent: str
    min_request_interval_s: float
    max_retries: int
    retry_backoff_s: float

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> FetchConfig:
        min_request_interval_s = _float(
            raw.get("min_request_interval_s", 0.5),
            "fetch.min_request_interval_s",
        )
        max_retries = _int(raw.get("max_retries", 3), "fetch.max_retries")
        retry_backoff_s = _float(raw.get("retry_backoff_s", 1.0), "fetch.retry_backoff_s")
        if min_request_interval_s < 0:
            raise ValueError("fetch.min_request_interval_s must be >= 0")
        if max_retries < 0:
            raise ValueError("fetch.max_retries must be >= 0")
        if retry_backoff_s <= 0:
            raise ValueError("fetch.retry_backoff_s must be > 0")

        return cls(
            enabled=_bool(raw.get("enabled", True), "fetch.enabled"),
            base_url=_str(raw.get("base_url"), "fetch.base_url"),
            ttl_s=_positive_float(raw.get("ttl_s", 3600), "fetch.ttl_s"),
            request_timeout_s=_int(raw.get("request_timeout_s", 30), "fetch.request_timeout_s"),
            user_agent=_str(raw.get("user_agent"), "fetch.user_agent"),
            min_request_interval_s=min_request_interval_s,
            max_retries=max_retries,
            retry_backoff_s=retry_backoff_s,
        )


@dataclass(frozen=True, slots=True)
class PreviewConfig:
    width_px: int
    height_px: int
    dpi: int
    background: str
    colormap: str
    boundary_color: str

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> PreviewConfig:
        return cls(
            width_px=_int(raw.get("width_px"), "preview.width_px"),
            height_px=_int(raw.get("height_px"), "preview.height_px"),
            dpi=_int(raw.get("dpi"), "preview.dpi"),
            background=_str(raw.get("background"), "preview.background"),
            colormap=_str(raw.get("colormap", "YlOrRd"), "preview.colormap"),
            boundary_color=_str(raw.get("boundary_color", "#FFFFFF"), "preview.boundary_color"),
        )


@dataclass(frozen=True, slots=True)
class BuildConfig:
    write_manifest: bool

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> BuildConfig:
        return cls(write_manifest=_bool(raw.get("write_manifest"), "build.write_manifest"))


@dataclass(frozen=True, slots=True)
class AppConfig:
    source_path: Path
    paths: PathsConfig
    classification: ClassificationConfig
    boundaries: BoundariesConfig
    heights: HeightsConfig
    fetch: FetchConfig
    preview: PreviewConfig
    build: BuildConfig

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], source_path: Path) -> AppConfig:
        root_dir = source_path.parent.resolve()
        return cls(
            source_path=source_path.resolve(),
            paths=PathsConfig.from_mapping(_mapping(raw.get("paths"), "paths"), root_dir),
            classification=ClassificationConfig.from_mapping(
                _optional_mapping(raw.get("classification"), "classification")
            ),
            boundaries=BoundariesConfig.from_mapping(
                _optional_mapping(raw.get("boundaries"), "boundaries")
            ),
            heights=HeightsConfig.from_mapping(_optional_mapping(raw.get("heights"), "heights")),
            fetch=FetchConfig.from_mapping(_mapping(raw.get("fetch"), "fetch")),
            preview=PreviewConfig.from_mapping(_mapping(raw.get("preview"), "preview")),
            build=BuildConfig.from_mapping(_mapping(raw.get("build"), "build")),
        )


def load_config(path: str | Path) -> AppConfig:
    """Load and validate the YAML config file into typed settings."""
    cfg_path = Path(path).resolve()
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")
    with cfg_path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)
    if not isinstance(raw, Mapping):
        raise ValueError("Top-level config must be a YAML mapping")
    return AppConfig.from_mapping(cast(Mapping[str, Any], raw), cfg_path)
