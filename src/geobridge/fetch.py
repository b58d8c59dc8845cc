"""External dataset cache and World Bank indicator fetching."""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Mapping, Sequence

import requests

from .config import FetchConfig
from .metrics import MetricRegistry
from .util import format_code_list, read_json, write_json


PROVIDER_WORLD_BANK = "worldbank"
DEFAULT_TTL_S = 3600.0
SNAPSHOT_VERSION = 1

_RETRYABLE_HTTP_STATUS = {429, 500, 502, 503, 504}
_EMPTY: Mapping[str, float] = MappingProxyType({})

_LOGGER = logging.getLogger("geobridge.fetch")


@dataclass(frozen=True, slots=True)
class FetchTicket:
    """Handle for one in-flight fetch; stale tickets are ignored on completion."""

    dataset: str
    generation: int


@dataclass(frozen=True, slots=True)
class _DatasetEntry:
    values: Mapping[str, float]
    fetched_at: float | None
    error: str | None = None


class FetchCache:
    """Owned cache of external `code -> value` datasets.

    Lifecycle is explicit: `open()` before use, `close()` on shutdown. A fetch
    starts with `begin()` and ends with `complete()` or `fail()`; a completion
    whose ticket was superseded by a newer `begin()` or by `close()` is dropped.
    Mutations are serialized by a lock; reads return immutable snapshots.
    """

    def __init__(self, ttl_s: float = DEFAULT_TTL_S, clock: Callable[[], float] = time.time) -> None:
        if ttl_s <= 0:
            raise ValueError("ttl_s must be > 0")
        self.ttl_s = ttl_s
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _DatasetEntry] = {}
        self._pending: dict[str, int] = {}
        self._generation = 0
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> FetchCache:
        with self._lock:
            self._open = True
        return self

    def close(self) -> None:
        with self._lock:
            self._open = False
            self._generation += 1
            self._pending.clear()

    def __enter__(self) -> FetchCache:
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def datasets(self) -> tuple[str, ...]:
        return tuple(sorted(self._entries_snapshot()))

    def get(self, dataset: str) -> Mapping[str, float]:
        entry = self._entries.get(dataset)
        if entry is None:
            return _EMPTY
        return entry.values

    def fetched_at(self, dataset: str) -> float | None:
        entry = self._entries.get(dataset)
        return entry.fetched_at if entry is not None else None

    def is_stale(self, dataset: str) -> bool:
        return self._expired(self._entries.get(dataset), self._clock())

    def _expired(self, entry: _DatasetEntry | None, now: float) -> bool:
        if entry is None or entry.fetched_at is None:
            return True
        return now - entry.fetched_at >= self.ttl_s

    def begin(self, dataset: str) -> FetchTicket:
        with self._lock:
            if not self._open:
                raise RuntimeError("FetchCache is not open")
            self._generation += 1
            self._pending[dataset] = self._generation
            return FetchTicket(dataset=dataset, generation=self._generation)

    def complete(self, ticket: FetchTicket, values: Mapping[str, float]) -> bool:
        """Store fetched values; returns False when the ticket was superseded."""
        with self._lock:
            if not self._accepts(ticket):
                _LOGGER.debug("Dropping superseded result for '%s'", ticket.dataset)
                return False
            frozen = MappingProxyType({str(code).upper(): float(value) for code, value in values.items()})
            self._entries[ticket.dataset] = _DatasetEntry(values=frozen, fetched_at=self._clock())
            del self._pending[ticket.dataset]
            return True

    def fail(self, ticket: FetchTicket, message: str) -> bool:
        """Record a failure; previously cached values stay readable."""
        with self._lock:
            if not self._accepts(ticket):
                return False
            previous = self._entries.get(ticket.dataset)
            self._entries[ticket.dataset] = _DatasetEntry(
                values=previous.values if previous is not None else _EMPTY,
                fetched_at=previous.fetched_at if previous is not None else None,
                error=message,
            )
            del self._pending[ticket.dataset]
            return True

    def status_text(self) -> str:
        entries = sorted(self._entries_snapshot().items())
        failed = [
            f"{dataset} ({entry.error})" for dataset, entry in entries if entry.error is not None
        ]
        if failed:
            return "failed: " + format_code_list(failed)
        now = self._clock()
        stale = [dataset for dataset, entry in entries if self._expired(entry, now)]
        if stale:
            return "stale: " + format_code_list(stale)
        return "ok"

    def _entries_snapshot(self) -> dict[str, _DatasetEntry]:
        with self._lock:
            return dict(self._entries)

    def _accepts(self, ticket: FetchTicket) -> bool:
        return self._open and self._pending.get(ticket.dataset) == ticket.generation

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "datasets": {
                dataset: {
                    "fetched_at": entry.fetched_at,
                    "values": dict(sorted(entry.values.items())),
                }
                for dataset, entry in sorted(self._entries_snapshot().items())
                if entry.fetched_at is not None
            },
        }

    def save_snapshot(self, path: Path) -> None:
        write_json(path, self.to_snapshot())

    def load_snapshot(self, path: Path) -> int:
        """Seed the cache from a saved snapshot; returns the datasets loaded."""
        if not path.exists():
            return 0
        raw = read_json(path)
        if not isinstance(raw, Mapping) or raw.get("version") != SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported fetch cache snapshot: {path}")
        datasets = raw.get("datasets")
        if not isinstance(datasets, Mapping):
            raise ValueError(f"Expected mapping for 'datasets' in {path}")

        loaded = 0
        with self._lock:
            for dataset, item in datasets.items():
                if not isinstance(item, Mapping):
                    continue
                fetched_at = item.get("fetched_at")
                values = item.get("values")
                if not isinstance(fetched_at, (int, float)) or not isinstance(values, Mapping):
                    continue
                clean = {
                    str(code).upper(): float(value)
                    for code, value in values.items()
                    if isinstance(value, (int, float)) and not isinstance(value, bool)
                }
                self._entries[str(dataset)] = _DatasetEntry(
                    values=MappingProxyType(clean),
                    fetched_at=float(fetched_at),
                )
                loaded += 1
        return loaded


@dataclass(slots=True)
class FetchReport:
    snapshot_path: Path | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    infos: list[str] = field(default_factory=list)
    summary: dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)

    def add_info(self, msg: str) -> None:
        self.infos.append(msg)


class WorldBankClient:
    """Fetch latest per-country values for one World Bank indicator."""

    provider = PROVIDER_WORLD_BANK

    def __init__(self, cfg: FetchConfig, session: requests.Session | None = None) -> None:
        self.cfg = cfg
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": cfg.user_agent})
        self._min_request_interval_s = max(float(cfg.min_request_interval_s), 0.0)
        self._max_retries = max(int(cfg.max_retries), 0)
        self._retry_backoff_s = max(float(cfg.retry_backoff_s), 0.01)
        self._last_request_started_at: float | None = None

    def fetch_indicator(self, indicator: str, *, per_page: int = 400) -> dict[str, float]:
        url = f"{self.cfg.base_url.rstrip('/')}/country/all/indicator/{indicator}"
        values: dict[str, float] = {}
        page = 1
        pages = 1
        while page <= pages:
            response = self._request_get(
                url,
                params={"format": "json", "per_page": per_page, "mrnev": 1, "page": page},
            )
            meta, rows = _split_payload(response.json(), indicator)
            pages = int(meta.get("pages") or 1)
            for row in rows:
                parsed = _parse_row(row)
                if parsed is not None:
                    values[parsed[0]] = parsed[1]
            page += 1
        _LOGGER.debug("Indicator %s: %d country values over %d page(s)", indicator, len(values), pages)
        return values

    def _request_get(
        self,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
    ) -> requests.Response:
        attempts = self._max_retries + 1
        for attempt in range(attempts):
            self._wait_for_request_slot()
            response = self._session.get(url, params=params, timeout=self.cfg.request_timeout_s)
            if response.status_code not in _RETRYABLE_HTTP_STATUS:
                response.raise_for_status()
                return response
            if attempt >= self._max_retries:
                response.raise_for_status()
            delay_s = self._compute_retry_delay_s(response=response, attempt=attempt)
            _LOGGER.warning(
                "Retryable response %s for %s; retrying in %.1fs (%d/%d)",
                response.status_code,
                response.url,
                delay_s,
                attempt + 1,
                self._max_retries,
            )
            response.close()
            time.sleep(delay_s)
        raise RuntimeError("Unreachable retry loop in World Bank client")

    def _wait_for_request_slot(self) -> None:
        if self._min_request_interval_s <= 0:
            self._last_request_started_at = time.monotonic()
            return
        now = time.monotonic()
        if self._last_request_started_at is not None:
            elapsed = now - self._last_request_started_at
            if elapsed < self._min_request_interval_s:
                time.sleep(self._min_request_interval_s - elapsed)
        self._last_request_started_at = time.monotonic()

    def _compute_retry_delay_s(self, *, response: requests.Response, attempt: int) -> float:
        retry_after_s = _parse_retry_after_seconds(response.headers.get("Retry-After"))
        exponential_s = self._retry_backoff_s * (2**attempt)
        return min(max(exponential_s, retry_after_s), 300.0)


def _split_payload(payload: Any, indicator: str) -> tuple[Mapping[str, Any], Sequence[Any]]:
    # Errors come back as HTTP 200 with a single {"message": [...]} element.
    if not isinstance(payload, list) or not payload or not isinstance(payload[0], Mapping):
        raise ValueError(f"Unexpected World Bank response for {indicator}")
    meta = payload[0]
    if "message" in meta:
        messages = meta.get("message") or []
        detail = "; ".join(
            str(item.get("value", item)) for item in messages if isinstance(item, Mapping)
        )
        raise ValueError(f"World Bank API error for {indicator}: {detail or 'unknown error'}")
    rows = payload[1] if len(payload) > 1 and isinstance(payload[1], list) else []
    return meta, rows


def _parse_row(row: Any) -> tuple[str, float] | None:
    if not isinstance(row, Mapping):
        return None
    country = row.get("country")
    code = country.get("id") if isinstance(country, Mapping) else None
    value = row.get("value")
    if not isinstance(code, str) or len(code.strip()) != 2:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    number = float(value)
    if not math.isfinite(number):
        return None
    return code.strip().upper(), number


def _parse_retry_after_seconds(raw: str | None) -> float:
    if raw is None:
        return 0.0
    value = raw.strip()
    if not value:
        return 0.0
    try:
        parsed = float(value)
    except ValueError:
        return 0.0
    return max(parsed, 0.0)


def refresh_external_sources(
    cache: FetchCache,
    client: WorldBankClient,
    registry: MetricRegistry,
    *,
    force: bool = False,
) -> FetchReport:
    """Refresh every stale external dataset; failures degrade to empty lookups."""
    report = FetchReport()
    specs = registry.external_specs()
    if not specs:
        report.add_info("No enabled external metric sources in catalog.")
        return report

    fetched = 0
    fresh = 0
    failed: list[str] = []
    for idx, spec in enumerate(specs, start=1):
        dataset = spec.dataset_key
        if dataset is None or spec.indicator is None:
            continue
        if not force and not cache.is_stale(dataset):
            fresh += 1
            _LOGGER.info("[fetch] (%d/%d) fresh %s", idx, len(specs), dataset)
            continue
        ticket = cache.begin(dataset)
        if spec.provider != client.provider:
            message = f"no client for provider '{spec.provider}'"
            cache.fail(ticket, message)
            failed.append(f"{spec.id}({message})")
            continue
        try:
            values = client.fetch_indicator(spec.indicator)
        except (requests.RequestException, ValueError) as exc:
            cache.fail(ticket, str(exc))
            failed.append(f"{spec.id}({exc})")
            _LOGGER.error("[fetch] (%d/%d) failed %s: %s", idx, len(specs), dataset, exc)
            continue
        if cache.complete(ticket, values):
            fetched += 1
            _LOGGER.info(
                "[fetch] (%d/%d) fetched %s (%d countries)", idx, len(specs), dataset, len(values)
            )

    report.summary = {
        "datasets_total": len(specs),
        "datasets_fetched": fetched,
        "datasets_fresh": fresh,
        "datasets_failed": len(failed),
    }
    report.add_info(
        "Fetch summary: "
        f"datasets_total={len(specs)}, "
        f"datasets_fetched={fetched}, "
        f"datasets_fresh={fresh}, "
        f"datasets_failed={len(failed)}"
    )
    if failed:
        report.add_warning(
            "External datasets unavailable (heights fall back to 0): "
            + format_code_list(sorted(failed))
        )
    report.add_info(f"Cache status: {cache.status_text()}")
    return report


def format_fetch_lines(report: FetchReport) -> Sequence[str]:
    lines: list[str] = []
    lines.extend(f"[INFO] {msg}" for msg in report.infos)
    lines.extend(f"[WARN] {msg}" for msg in report.warnings)
    lines.extend(f"[ERROR] {msg}" for msg in report.errors)
    if report.ok:
        lines.append("[OK] External dataset refresh completed with no errors.")
    return lines
