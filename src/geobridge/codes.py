"""Country code resolution for Natural Earth admin-0 features."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml


INVALID_CODE_SENTINELS = frozenset({"-99", "N/A"})
PRIMARY_CODE_FIELD = "ISO_A2"
NAME_FIELDS = ("ADMIN", "NAME")


@dataclass(frozen=True, slots=True)
class CodeOverrides:
    """Manual name->code fixes plus codes dropped from the globe entirely."""

    by_name: Mapping[str, str] = field(default_factory=dict)
    excluded: frozenset[str] = frozenset()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> CodeOverrides:
        names_raw = data.get("names", {})
        if names_raw is None:
            names_raw = {}
        if not isinstance(names_raw, Mapping):
            raise ValueError("Expected mapping for 'names'")
        by_name: dict[str, str] = {}
        for name, code in names_raw.items():
            if not isinstance(name, str) or not name.strip():
                raise ValueError("Override names must be non-empty strings")
            if not isinstance(code, str) or not code.strip():
                raise ValueError(f"Override code for '{name}' must be a non-empty string")
            by_name[name.strip()] = code.strip().upper()

        excluded_raw = data.get("excluded", [])
        if excluded_raw is None:
            excluded_raw = []
        if not isinstance(excluded_raw, list):
            raise ValueError("Expected list for 'excluded'")
        excluded: set[str] = set()
        for item in excluded_raw:
            if not isinstance(item, (str, int)) or not str(item).strip():
                raise ValueError("Excluded codes must be non-empty strings")
            excluded.add(str(item).strip().upper())
        return cls(by_name=by_name, excluded=frozenset(excluded))


def load_code_overrides(path: Path) -> CodeOverrides:
    """Load the optional override table; a missing file means no overrides."""
    if not path.exists():
        return CodeOverrides()
    with path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)
    if raw is None:
        return CodeOverrides()
    if not isinstance(raw, dict):
        raise ValueError(f"Expected mapping in {path}")
    return CodeOverrides.from_mapping(raw)


def is_valid_code(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    normalized = value.strip().upper()
    return bool(normalized) and normalized not in INVALID_CODE_SENTINELS


class CountryCodeResolver:
    """Resolve a feature's property bag to a canonical 2-letter country code.

    Priority: a valid ``ISO_A2``; then the ``ADMIN``/``NAME`` override table;
    then the raw code as-is (possibly a sentinel), or ``""`` if absent.
    """

    def __init__(self, overrides: CodeOverrides | None = None) -> None:
        self.overrides = overrides or CodeOverrides()

    def resolve(self, properties: Mapping[str, Any]) -> str:
        raw = properties.get(PRIMARY_CODE_FIELD)
        if is_valid_code(raw):
            return str(raw).strip().upper()

        for name_field in NAME_FIELDS:
            name = properties.get(name_field)
            if isinstance(name, str):
                mapped = self.overrides.by_name.get(name.strip())
                if mapped:
                    return mapped

        if raw is None:
            return ""
        return str(raw).strip()

    def is_excluded(self, properties: Mapping[str, Any]) -> bool:
        return self.resolve(properties).upper() in self.overrides.excluded
