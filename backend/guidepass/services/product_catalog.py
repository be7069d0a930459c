"""Store product catalog.

Product identifiers are resolved to a `ProductFamily` exactly once, when an
event is ingested; downstream code works with the resolved `CatalogProduct`.
"""

from guidepass.config import CatalogConfig
from guidepass.models.billing import (
    CatalogProduct,
    PackageDefinition,
    ProductFamily,
    SubscriptionType,
)


class ProductCatalog:
    """Exact-match lookup from store product id to what it grants."""

    def __init__(self, config: CatalogConfig) -> None:
        self._products: dict[str, CatalogProduct] = {}
        self._packages: dict[str, PackageDefinition] = {}

        subscription_groups = (
            (config.unlimited_product_ids, ProductFamily.UNLIMITED, SubscriptionType.UNLIMITED),
            (
                config.legacy_monthly_product_ids,
                ProductFamily.LEGACY_SUBSCRIPTION,
                SubscriptionType.LEGACY_MONTHLY,
            ),
            (
                config.legacy_yearly_product_ids,
                ProductFamily.LEGACY_SUBSCRIPTION,
                SubscriptionType.LEGACY_YEARLY,
            ),
            (
                config.legacy_lifetime_product_ids,
                ProductFamily.LEGACY_SUBSCRIPTION,
                SubscriptionType.LEGACY_LIFETIME,
            ),
        )
        for product_ids, family, subscription_type in subscription_groups:
            for product_id in product_ids:
                self._register(
                    CatalogProduct(
                        product_id=product_id,
                        family=family,
                        subscription_type=subscription_type,
                    )
                )

        for package in config.packages:
            self._packages[package.package_id] = package
            self._register(
                CatalogProduct(
                    product_id=package.product_id,
                    family=ProductFamily.PACKAGE,
                    package_id=package.package_id,
                    credits=package.credits,
                )
            )

    def _register(self, product: CatalogProduct) -> None:
        if product.product_id in self._products:
            raise ValueError(f"Product id '{product.product_id}' is configured twice")
        self._products[product.product_id] = product

    def resolve(self, product_id: str) -> CatalogProduct:
        product = self._products.get(product_id)
        if product is None:
            return CatalogProduct(product_id=product_id, family=ProductFamily.UNKNOWN)
        return product

    def active_packages(self) -> list[PackageDefinition]:
        """Packages currently offered. Retired ones still resolve for past purchases."""
        return [package for package in self._packages.values() if package.is_active]
