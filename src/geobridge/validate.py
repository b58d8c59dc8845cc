"""Validation layer for config, lookup tables and the admin-0 dataset."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from .codes import CodeOverrides, CountryCodeResolver, is_valid_code, load_code_overrides
from .config import AppConfig
from .fetch import PROVIDER_WORLD_BANK
from .io_ne import NaturalEarthRepository
from .metrics import VALUE_KIND_EXTERNAL, MetricSpec, load_metric_catalog
from .models import CountryFeature
from .regions import UNKNOWN_REGION, ClassificationMode, RegionClassifier, RegionRegistry, load_region_registry
from .util import format_code_list


@dataclass(slots=True)
class ValidationReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    infos: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)

    def add_info(self, msg: str) -> None:
        self.infos.append(msg)


class Validator:
    """Top-level input and schema validator."""

    def __init__(self, cfg: AppConfig) -> None:
        self.cfg = cfg

    def run(self, *, strict_data_files: bool = False) -> ValidationReport:
        report = ValidationReport()
        self._validate_config_paths(report, strict_data_files=strict_data_files)
        overrides = self._validate_code_overrides(report)
        registry = self._validate_regions(report)
        self._validate_metrics(report)
        if overrides is not None and registry is not None:
            self._validate_natural_earth(
                report,
                overrides=overrides,
                registry=registry,
                strict_data_files=strict_data_files,
            )
        return report

    def _validate_config_paths(self, report: ValidationReport, *, strict_data_files: bool) -> None:
        for path in self.cfg.paths.required_input_files:
            if not path.exists():
                report.add_error(f"Missing required input file: {path}")
        self._check_exists(report, self.cfg.paths.ne_admin0_countries, as_error=strict_data_files)

    def _validate_code_overrides(self, report: ValidationReport) -> CodeOverrides | None:
        try:
            overrides = load_code_overrides(self.cfg.paths.code_overrides)
        except Exception as exc:
            report.add_error(f"Failed parsing code overrides: {exc}")
            return None
        report.add_info(
            f"Loaded {len(overrides.by_name)} code override entries "
            f"and {len(overrides.excluded)} excluded codes"
        )
        return overrides

    def _validate_regions(self, report: ValidationReport) -> RegionRegistry | None:
        path = self.cfg.paths.regions
        if not path.exists():
            return None
        try:
            registry = load_region_registry(path)
        except Exception as exc:
            report.add_error(f"Failed parsing region table '{path}': {exc}")
            return None
        report.add_info(
            f"Loaded {len(registry.regions)} regions covering "
            f"{len(registry.code_to_region)} country codes from {path}"
        )
        return registry

    def _validate_metrics(self, report: ValidationReport) -> list[MetricSpec]:
        path = self.cfg.paths.metrics
        if not path.exists():
            return []
        try:
            specs = load_metric_catalog(path)
        except Exception as exc:
            report.add_error(f"Failed parsing metric catalog '{path}': {exc}")
            return []
        enabled = [spec for spec in specs if spec.enabled]
        report.add_info(
            f"Loaded {len(specs)} metric sources ({len(enabled)} enabled) from {path}"
        )
        if not enabled:
            report.add_error("Metric catalog has no enabled sources.")

        for spec in specs:
            if not spec.enabled:
                report.add_info(f"Metric '{spec.id}' disabled: {spec.disabled_reason}")

        unsupported = sorted(
            f"{spec.id}({spec.provider})"
            for spec in enabled
            if spec.value_kind == VALUE_KIND_EXTERNAL and spec.provider != PROVIDER_WORLD_BANK
        )
        if unsupported:
            report.add_warning(
                "External metrics with no fetch client (heights will be 0): "
                + format_code_list(unsupported)
            )
        if any(spec.value_kind == VALUE_KIND_EXTERNAL for spec in enabled) and not self.cfg.fetch.enabled:
            report.add_warning("External metrics configured but fetch.enabled is false.")
        return specs

    def _validate_natural_earth(
        self,
        report: ValidationReport,
        *,
        overrides: CodeOverrides,
        registry: RegionRegistry,
        strict_data_files: bool,
    ) -> None:
        admin0_path = self.cfg.paths.ne_admin0_countries
        if not admin0_path.exists():
            report.add_info("Skipping Natural Earth coverage checks because the dataset file is missing.")
            return

        resolver = CountryCodeResolver(overrides)
        try:
            features = NaturalEarthRepository(admin0_path).load_features(resolver)
        except Exception as exc:
            _report_issue(
                report,
                f"Failed loading Natural Earth admin-0 dataset: {exc}",
                as_error=strict_data_files,
            )
            return
        if not features:
            _report_issue(
                report,
                f"Natural Earth admin-0 dataset has no usable features: {admin0_path}",
                as_error=strict_data_files,
            )
            return

        classifier = RegionClassifier(registry, resolver)
        unresolved: list[str] = []
        unclassified: list[str] = []
        no_ring: list[str] = []
        seen_codes: set[str] = set()
        for feature in features:
            code = resolver.resolve(feature.properties)
            if not is_valid_code(code):
                unresolved.append(_describe(feature, code))
            else:
                seen_codes.add(code.upper())
            if classifier.classify(feature, ClassificationMode.STATIC) == UNKNOWN_REGION:
                unclassified.append(_describe(feature, code))
            if not feature.representative_ring():
                no_ring.append(_describe(feature, code))

        if unresolved:
            report.add_warning(
                "Features without a usable country code (add a name override): "
                + format_code_list(sorted(unresolved))
            )
        if unclassified:
            report.add_warning(
                "Features outside every static region (shown as 'unknown'): "
                + format_code_list(sorted(unclassified))
            )
        if no_ring:
            report.add_warning(
                "Features with unsupported or empty geometry (no boundary matching): "
                + format_code_list(sorted(no_ring))
            )

        missing_from_dataset = sorted(set(registry.code_to_region) - seen_codes)
        if missing_from_dataset:
            report.add_info(
                "Region table codes absent from the admin-0 dataset: "
                + format_code_list(missing_from_dataset)
            )

        report.add_info(
            "Natural Earth check summary: "
            f"features={len(features)}, "
            f"unresolved_codes={len(unresolved)}, "
            f"unclassified_static={len(unclassified)}, "
            f"without_geometry={len(no_ring)}"
        )

    @staticmethod
    def _check_exists(report: ValidationReport, path: Path, *, as_error: bool) -> None:
        if not path.exists():
            _report_issue(report, f"Missing dataset file: {path}", as_error=as_error)


def _report_issue(report: ValidationReport, msg: str, *, as_error: bool) -> None:
    if as_error:
        report.add_error(msg)
    else:
        report.add_warning(msg)


def _describe(feature: CountryFeature, code: str) -> str:
    return f"{feature.display_name}({code or '?'})"


def format_report_lines(report: ValidationReport) -> Iterable[str]:
    yield from (f"[INFO] {msg}" for msg in report.infos)
    yield from (f"[WARN] {msg}" for msg in report.warnings)
    yield from (f"[ERROR] {msg}" for msg in report.errors)
    if report.ok:
        yield "[OK] Validation completed with no errors."
