from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from points_ledger.config import Settings
from points_ledger.models.package import Package
from points_ledger.services.catalog import DEFAULT_PACKAGES, PackageCatalog


def test_default_catalog():
    catalog = PackageCatalog()

    assert [p.points for p in catalog.active()] == [50, 100, 200, 500]
    assert catalog.get("enterprise").price_cents == 25000
    assert catalog.get("enterprise").points_per_dollar == 2.0
    assert catalog.get("missing") is None


def test_resolve_prefers_package_id_then_price_ref():
    catalog = PackageCatalog(
        [
            Package(id="a", name="A", points=10, price_cents=100, price_ref="price_a"),
            Package(id="b", name="B", points=20, price_cents=200, price_ref="price_b"),
        ]
    )

    assert catalog.resolve(package_id="a", price_ref="price_b").id == "a"
    assert catalog.resolve(package_id="zzz", price_ref="price_b").id == "b"
    assert catalog.resolve() is None


def test_duplicate_package_ids_are_rejected():
    with pytest.raises(ValueError):
        PackageCatalog([DEFAULT_PACKAGES[0], DEFAULT_PACKAGES[0]])


def test_catalog_from_settings(settings):
    catalog = PackageCatalog.from_settings(settings)

    assert catalog.get("starter_pack").points == 500
    assert catalog.by_price_ref("price_growth").id == "growth"
    assert [p.id for p in catalog.active()] == ["starter_pack", "growth"]


def test_invalid_packages_json(settings):
    broken = settings.model_copy(update={"packages_json": json.dumps([{"id": "x", "name": "X", "points": 0, "price_cents": 1}])})
    with pytest.raises(ValidationError):
        PackageCatalog.from_settings(broken)


def test_settings_read_prefixed_environment(monkeypatch):
    monkeypatch.setenv("POINTS_TRIAL_DAYS", "7")
    monkeypatch.setenv("POINTS_SCREENING_COST", "3")

    settings = Settings(_env_file=None)

    assert settings.trial_days == 7
    assert settings.screening_cost == 3
    assert settings.webhook_timeout_seconds == 8.0
