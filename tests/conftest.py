"""Pytest configuration and shared fixtures for geobridge tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

from geobridge.codes import CodeOverrides, CountryCodeResolver
from geobridge.models import CountryFeature
from geobridge.regions import RegionClassifier, RegionRegistry

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def square(x0: float, y0: float, size: float = 1.0) -> list[list[float]]:
    """Closed counter-clockwise square ring with its lower-left corner at (x0, y0)."""
    return [
        [x0, y0],
        [x0 + size, y0],
        [x0 + size, y0 + size],
        [x0, y0 + size],
        [x0, y0],
    ]


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def resolver() -> CountryCodeResolver:
    return CountryCodeResolver(
        CodeOverrides(
            by_name={"Norway": "NO", "France": "FR", "Kosovo": "XK"},
            excluded=frozenset({"GL", "-99"}),
        )
    )


@pytest.fixture
def registry() -> RegionRegistry:
    return RegionRegistry.from_mapping(
        {
            "west_europe": ["FR", "BE"],
            "central_europe": ["DE", "CH"],
            "north_europe": ["NO", "SE"],
        }
    )


@pytest.fixture
def classifier(registry: RegionRegistry, resolver: CountryCodeResolver) -> RegionClassifier:
    return RegionClassifier(registry, resolver)


@pytest.fixture
def make_feature() -> Callable[..., CountryFeature]:
    """Factory for features with a square (or explicit) polygon and property bag."""

    def _make(
        feature_id: int,
        code: str | None = None,
        *,
        origin: tuple[float, float] | None = None,
        geometry: dict[str, Any] | None = None,
        **properties: Any,
    ) -> CountryFeature:
        props = dict(properties)
        if code is not None:
            props.setdefault("ISO_A2", code)
        if geometry is None and origin is not None:
            geometry = {"type": "Polygon", "coordinates": [square(*origin)]}
        return CountryFeature.from_mapping(
            feature_id,
            {"geometry": geometry, "properties": props},
        )

    return _make
