from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from pydantic import TypeAdapter

from ..config import Settings
from ..models.package import Package

DEFAULT_PACKAGES: tuple[Package, ...] = (
    Package(id="starter", name="Starter", points=50, price_cents=5000),
    Package(id="growth", name="Growth", points=100, price_cents=8000),
    Package(id="business", name="Business", points=200, price_cents=15000),
    Package(id="enterprise", name="Enterprise", points=500, price_cents=25000),
)

_PACKAGE_LIST = TypeAdapter(List[Package])


class PackageCatalog:
    """Static, read-only catalog of purchasable point packages."""

    def __init__(self, packages: Iterable[Package] = DEFAULT_PACKAGES) -> None:
        self._by_id: Dict[str, Package] = {}
        self._by_price: Dict[str, Package] = {}
        for package in packages:
            if package.id in self._by_id:
                raise ValueError(f"duplicate package id {package.id}")
            self._by_id[package.id] = package
            if package.price_ref:
                self._by_price[package.price_ref] = package

    @classmethod
    def from_settings(cls, settings: Settings) -> "PackageCatalog":
        if not settings.packages_json:
            return cls()
        return cls(_PACKAGE_LIST.validate_json(settings.packages_json))

    def get(self, package_id: str) -> Optional[Package]:
        return self._by_id.get(package_id)

    def by_price_ref(self, price_ref: str) -> Optional[Package]:
        return self._by_price.get(price_ref)

    def resolve(
        self,
        package_id: Optional[str] = None,
        price_ref: Optional[str] = None,
    ) -> Optional[Package]:
        """Look up by package id first, then by provider price id."""
        if package_id:
            package = self.get(package_id)
            if package is not None:
                return package
        if price_ref:
            return self.by_price_ref(price_ref)
        return None

    def active(self) -> List[Package]:
        return [p for p in self._by_id.values() if p.is_active]
