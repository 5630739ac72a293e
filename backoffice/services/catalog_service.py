"""
Catalog lookups used by the engine.

The catalog is owned by another service; the engine depends only on the
narrow ``CatalogProvider`` interface so tests and alternative deployments can
swap the source of truth.
"""
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.models.catalog import Product, ProductVariation


@dataclass(frozen=True)
class SkuInfo:
    """Authoritative catalog data for one SKU at a point in time."""
    product_id: uuid.UUID
    variation_id: Optional[uuid.UUID]
    sku: str
    name: str
    price: Decimal
    active: bool
    category_id: Optional[uuid.UUID]


class CatalogProvider(Protocol):
    async def get_sku(
        self,
        product_id: uuid.UUID,
        variation_id: Optional[uuid.UUID] = None,
    ) -> Optional[SkuInfo]:
        ...


class SqlCatalogProvider:
    """Reads SKU data from the catalog tables in the shared database."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_sku(
        self,
        product_id: uuid.UUID,
        variation_id: Optional[uuid.UUID] = None,
    ) -> Optional[SkuInfo]:
        product = await self.db.get(Product, product_id)
        if product is None:
            return None

        if variation_id is None:
            return SkuInfo(
                product_id=product.id,
                variation_id=None,
                sku=product.sku,
                name=product.name,
                price=product.price,
                active=product.is_active,
                category_id=product.category_id,
            )

        result = await self.db.execute(
            select(ProductVariation).where(
                ProductVariation.id == variation_id,
                ProductVariation.product_id == product_id,
            )
        )
        variation = result.scalar_one_or_none()
        if variation is None:
            return None

        return SkuInfo(
            product_id=product.id,
            variation_id=variation.id,
            sku=variation.sku,
            name=f"{product.name} - {variation.name}",
            # Variation price overrides the product price when set
            price=variation.price if variation.price is not None else product.price,
            active=product.is_active and variation.is_active,
            category_id=product.category_id,
        )
