"""CLI entrypoint for the geobridge globe overlay builder."""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .boundaries import BoundaryExtractor, MatchMode, ProximityMatcher
from .codes import CountryCodeResolver, load_code_overrides
from .config import AppConfig, load_config
from .fetch import FetchCache, FetchReport, WorldBankClient, format_fetch_lines, refresh_external_sources
from .heights import HeightNormalizer, HeightPolicy
from .io_ne import NaturalEarthRepository
from .metrics import MetricRegistry, load_metric_catalog
from .models import BuildManifest
from .overlay import GlobeOverlay, export_boundaries, export_heights
from .preview import PreviewRenderer
from .regions import ClassificationMode, RegionClassifier, load_region_registry
from .util import detect_git_commit, ensure_directories, sha256_file, setup_logging, write_json
from .validate import Validator, format_report_lines

LOGGER = logging.getLogger("geobridge.cli")

_CACHE_SNAPSHOT = "external_datasets.json"


@dataclass(slots=True)
class _Session:
    overlay: GlobeOverlay
    cache: FetchCache
    registry: MetricRegistry


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="geobridge",
        description="Globe overlay builder: regions, boundaries and metric heights.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", default="config.yaml", help="Path to YAML config.")
        p.add_argument("--verbose", action="store_true", help="Enable debug logs.")

    def add_mode(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--mode",
            choices=[mode.value for mode in ClassificationMode],
            default=None,
            help="Region classification mode (default from config).",
        )

    build_p = subparsers.add_parser("build", help="Run full overlay build pipeline.")
    add_common(build_p)

    validate_p = subparsers.add_parser("validate", help="Validate config and input files.")
    add_common(validate_p)
    validate_p.add_argument(
        "--strict-data-files",
        action="store_true",
        help="Treat missing Natural Earth files as validation errors.",
    )

    boundaries_p = subparsers.add_parser(
        "boundaries",
        help="Extract inter-region boundary polylines and write JSON.",
    )
    add_common(boundaries_p)
    add_mode(boundaries_p)
    boundaries_p.add_argument(
        "--match-mode",
        choices=[mode.value for mode in MatchMode],
        default=None,
        help="Shared-point matching mode (default from config).",
    )

    heights_p = subparsers.add_parser(
        "heights",
        help="Compute height statistics and per-country heights for one metric.",
    )
    add_common(heights_p)
    add_mode(heights_p)
    heights_p.add_argument("--metric", required=True, help="Metric source id.")

    fetch_p = subparsers.add_parser("fetch", help="Refresh external metric datasets.")
    add_common(fetch_p)
    fetch_p.add_argument(
        "--force",
        action="store_true",
        help="Refetch datasets even when the cached copy is fresh.",
    )

    preview_p = subparsers.add_parser("preview", help="Render a flat PNG preview.")
    add_common(preview_p)
    add_mode(preview_p)
    preview_p.add_argument("--metric", default=None, help="Metric source id driving heights.")

    return parser


def _load_and_setup(args: argparse.Namespace) -> AppConfig:
    cfg = load_config(args.config)
    log_path = cfg.paths.logs_dir / "geobridge.log"
    setup_logging(log_path, verbose=args.verbose)
    ensure_directories(cfg.paths.build_directories)
    return cfg


def _open_session(
    cfg: AppConfig,
    *,
    mode: str | None = None,
    match_mode: str | None = None,
) -> _Session:
    resolver = CountryCodeResolver(load_code_overrides(cfg.paths.code_overrides))
    classifier = RegionClassifier(load_region_registry(cfg.paths.regions), resolver)

    cache = FetchCache(ttl_s=cfg.fetch.ttl_s).open()
    loaded = cache.load_snapshot(cfg.paths.cache_dir / _CACHE_SNAPSHOT)
    if loaded:
        LOGGER.info("Loaded %d cached external datasets (%s)", loaded, cache.status_text())

    registry = MetricRegistry.from_specs(
        load_metric_catalog(cfg.paths.metrics),
        resolver=resolver,
        lookup=cache,
    )
    matcher = ProximityMatcher(
        tolerance=cfg.boundaries.tolerance,
        mode=MatchMode.parse(match_mode or cfg.boundaries.match_mode),
    )
    overlay = GlobeOverlay(
        classifier,
        registry,
        extractor=BoundaryExtractor(classifier, matcher),
        normalizer=HeightNormalizer(HeightPolicy.from_config(cfg.heights)),
        fetch_cache=cache,
        mode=ClassificationMode.parse(mode or cfg.classification.default_mode),
    )
    overlay.set_features(NaturalEarthRepository(cfg.paths.ne_admin0_countries).load_features(resolver))
    return _Session(overlay=overlay, cache=cache, registry=registry)


def _run_validate(cfg: AppConfig, *, strict_data_files: bool) -> int:
    report = Validator(cfg).run(strict_data_files=strict_data_files)
    for line in format_report_lines(report):
        LOGGER.info(line)
    return 0 if report.ok else 1


def _write_boundaries(cfg: AppConfig, overlay: GlobeOverlay) -> Path:
    output_path = cfg.paths.overlay_dir / f"boundaries_{overlay.mode.value}.json"
    payload = export_boundaries(overlay)
    write_json(output_path, payload)
    LOGGER.info(
        "Boundaries written to %s (%d segments)", output_path, payload["segment_count"]
    )
    return output_path


def _write_heights(cfg: AppConfig, overlay: GlobeOverlay) -> Path:
    source = overlay.height_source
    name = source.id if source is not None else "none"
    output_path = cfg.paths.overlay_dir / f"heights_{name}.json"
    write_json(output_path, export_heights(overlay))
    LOGGER.info("Heights written to %s", output_path)
    return output_path


def _select_metric(overlay: GlobeOverlay, metric_id: str) -> bool:
    if not overlay.select_height_source(metric_id):
        LOGGER.error("Metric '%s' is unknown or disabled.", metric_id)
        return False
    return True


def _run_boundaries(cfg: AppConfig, *, mode: str | None, match_mode: str | None) -> int:
    try:
        session = _open_session(cfg, mode=mode, match_mode=match_mode)
    except Exception as exc:
        LOGGER.error("Failed loading overlay inputs: %s", exc)
        return 1
    try:
        _write_boundaries(cfg, session.overlay)
    finally:
        session.cache.close()
    return 0


def _run_heights(cfg: AppConfig, *, mode: str | None, metric_id: str) -> int:
    try:
        session = _open_session(cfg, mode=mode)
    except Exception as exc:
        LOGGER.error("Failed loading overlay inputs: %s", exc)
        return 1
    try:
        if not _select_metric(session.overlay, metric_id):
            return 1
        _write_heights(cfg, session.overlay)
        stats = session.overlay.statistics()
        if stats is not None and stats.count == 0:
            LOGGER.warning("Metric '%s' has no positive values (%s).", metric_id, session.cache.status_text())
    finally:
        session.cache.close()
    return 0


def _refresh(cfg: AppConfig, session: _Session, *, force: bool) -> FetchReport | None:
    if not cfg.fetch.enabled:
        LOGGER.info("External fetching disabled in config; using cached datasets only.")
        return None
    report = refresh_external_sources(
        session.cache,
        WorldBankClient(cfg.fetch),
        session.registry,
        force=force,
    )
    snapshot_path = cfg.paths.cache_dir / _CACHE_SNAPSHOT
    session.cache.save_snapshot(snapshot_path)
    report.snapshot_path = snapshot_path
    report.add_info(f"Cache snapshot written to {snapshot_path}")
    for line in format_fetch_lines(report):
        LOGGER.info(line)
    session.overlay.refresh_statistics()
    return report


def _run_fetch(cfg: AppConfig, *, force: bool) -> int:
    try:
        session = _open_session(cfg)
    except Exception as exc:
        LOGGER.error("Failed loading overlay inputs: %s", exc)
        return 1
    try:
        report = _refresh(cfg, session, force=force)
        return 0 if report is None or report.ok else 1
    finally:
        session.cache.close()


def _run_preview(cfg: AppConfig, *, mode: str | None, metric_id: str | None) -> int:
    try:
        session = _open_session(cfg, mode=mode)
    except Exception as exc:
        LOGGER.error("Failed loading overlay inputs: %s", exc)
        return 1
    try:
        if metric_id is not None and not _select_metric(session.overlay, metric_id):
            return 1
        suffix = metric_id or "none"
        output_path = cfg.paths.preview_dir / f"preview_{session.overlay.mode.value}_{suffix}.png"
        try:
            PreviewRenderer(cfg.preview).render(session.overlay, output_path, title=metric_id)
        except (OSError, ValueError, RuntimeError) as exc:
            LOGGER.error("Preview rendering failed: %s", exc)
            return 1
    finally:
        session.cache.close()
    return 0


def _run_build(cfg: AppConfig) -> int:
    LOGGER.info("Starting build pipeline.")

    # Every build step needs the admin-0 features.
    report = Validator(cfg).run(strict_data_files=True)
    for line in format_report_lines(report):
        LOGGER.info(line)
    if not report.ok:
        LOGGER.error("Build aborted due to validation errors.")
        return 1

    try:
        session = _open_session(cfg)
    except Exception as exc:
        LOGGER.error("Build aborted; failed loading overlay inputs: %s", exc)
        return 1

    steps: dict[str, str] = {"validate": "ok"}
    artifacts: dict[str, str] = {}
    overlay = session.overlay
    try:
        fetch_report = _refresh(cfg, session, force=False)
        if fetch_report is None:
            steps["fetch"] = "skipped"
        elif fetch_report.warnings:
            steps["fetch"] = "degraded"
        else:
            steps["fetch"] = "ok"
        artifacts["fetch_cache"] = str(cfg.paths.cache_dir / _CACHE_SNAPSHOT)

        for mode in ClassificationMode:
            overlay.set_mode(mode)
            artifacts[f"boundaries_{mode.value}"] = str(_write_boundaries(cfg, overlay))
        steps["boundaries"] = "ok"
        overlay.set_mode(cfg.classification.default_mode)

        for source in session.registry.selectable():
            if not overlay.select_height_source(source.id):
                continue
            artifacts[f"heights_{source.id}"] = str(_write_heights(cfg, overlay))
            overlay.select_height_source(None)
        steps["heights"] = "ok"

        preview_path = cfg.paths.preview_dir / f"preview_{overlay.mode.value}_none.png"
        try:
            PreviewRenderer(cfg.preview).render(overlay, preview_path)
        except (OSError, ValueError, RuntimeError) as exc:
            LOGGER.warning("Preview rendering failed: %s", exc)
            steps["preview"] = "error"
        else:
            steps["preview"] = "ok"
            artifacts["preview"] = str(preview_path)

        summary = overlay.summary()
        LOGGER.info(
            "Overlay summary: features=%d, regions=%d, boundary_segments=%d, fetch_status=%s",
            summary["features"],
            summary["regions"],
            summary["boundary_segments"],
            summary["fetch_status"],
        )
    finally:
        session.cache.close()

    if cfg.build.write_manifest:
        manifest = BuildManifest.create(
            config_hash_sha256=sha256_file(cfg.source_path),
            git_commit=detect_git_commit(cfg.source_path.parent),
            steps=steps,
            artifacts=artifacts,
        )
        manifest_path = cfg.paths.manifests_dir / "build_manifest.json"
        write_json(manifest_path, manifest.to_dict())
        LOGGER.info("Build manifest written to %s", manifest_path)

    LOGGER.info("Build finished.")
    return 0


def _dispatch(args: argparse.Namespace) -> int:
    cfg = _load_and_setup(args)
    command = str(args.command)
    if command == "build":
        return _run_build(cfg)
    if command == "validate":
        return _run_validate(cfg, strict_data_files=bool(args.strict_data_files))
    if command == "boundaries":
        return _run_boundaries(cfg, mode=args.mode, match_mode=args.match_mode)
    if command == "heights":
        return _run_heights(cfg, mode=args.mode, metric_id=str(args.metric))
    if command == "fetch":
        return _run_fetch(cfg, force=bool(args.force))
    if command == "preview":
        return _run_preview(cfg, mode=args.mode, metric_id=args.metric)
    raise ValueError(f"Unknown command: {command}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    return _dispatch(args)


if __name__ == "__main__":
    raise SystemExit(main())
