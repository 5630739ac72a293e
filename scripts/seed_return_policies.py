"""
Seed script for return policies and a small demo catalog.

Creates the global default policy, a stricter electronics category policy,
a non-returnable clearance product, and stock for every SKU.

Usage:
    python -m scripts.seed_return_policies
"""

import asyncio
import sys
from decimal import Decimal
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from backoffice.config import settings
from backoffice.database import create_engine, create_session_factory
from backoffice.models import (
    Category,
    InventoryUnit,
    Product,
    ProductVariation,
    RefundMethod,
    ReturnPolicy,
    ReturnReason,
)


# ==================== CATALOG ====================
CATEGORIES = [
    {"name": "Apparel", "slug": "apparel"},
    {"name": "Electronics", "slug": "electronics"},
]

PRODUCTS = [
    {"sku": "TSHIRT-BASIC", "name": "Basic T-Shirt", "category": "apparel", "price": Decimal("10000.00"), "stock": 100,
     "variations": [
         {"sku": "TSHIRT-BASIC-M", "name": "M", "stock": 40},
         {"sku": "TSHIRT-BASIC-L", "name": "L", "stock": 40},
     ]},
    {"sku": "CAP-LOGO", "name": "Logo Cap", "category": "apparel", "price": Decimal("5000.00"), "stock": 50},
    {"sku": "EARBUDS-X1", "name": "Wireless Earbuds X1", "category": "electronics", "price": Decimal("250000.00"), "stock": 20},
    {"sku": "CABLE-CLEARANCE", "name": "USB Cable (Clearance)", "category": "electronics", "price": Decimal("2500.00"), "stock": 200},
]


# ==================== POLICIES ====================
GLOBAL_POLICY = {
    "name": "Default return policy",
    "return_window_days": settings.DEFAULT_RETURN_WINDOW_DAYS,
    "requires_approval": True,
    "quality_check_required": True,
}

CATEGORY_POLICIES = {
    "electronics": {
        "name": "Electronics",
        "return_window_days": 14,
        "restocking_fee_percentage": Decimal("10.00"),
        "allowed_return_reasons": [
            ReturnReason.DEFECTIVE.value,
            ReturnReason.DAMAGED_SHIPPING.value,
            ReturnReason.WRONG_ITEM.value,
            ReturnReason.NOT_AS_DESCRIBED.value,
        ],
        "refund_methods": [RefundMethod.ORIGINAL_PAYMENT.value, RefundMethod.STORE_CREDIT.value],
        "restock_sellable_items": True,
    },
}

PRODUCT_POLICIES = {
    "CABLE-CLEARANCE": {"name": "Clearance - final sale", "is_returnable": False, "return_window_days": 0},
}


async def seed_catalog(session) -> dict:
    categories = {}
    for data in CATEGORIES:
        existing = await session.execute(select(Category).where(Category.slug == data["slug"]))
        category = existing.scalar_one_or_none()
        if category is None:
            category = Category(**data)
            session.add(category)
            await session.flush()
            print(f"  Created category: {category.name}")
        categories[category.slug] = category

    products = {}
    for data in PRODUCTS:
        existing = await session.execute(select(Product).where(Product.sku == data["sku"]))
        product = existing.scalar_one_or_none()
        if product is None:
            product = Product(
                sku=data["sku"],
                name=data["name"],
                category_id=categories[data["category"]].id,
                price=data["price"],
            )
            session.add(product)
            await session.flush()
            session.add(InventoryUnit(product_id=product.id, sku=product.sku, available_quantity=data["stock"]))
            for variation_data in data.get("variations", []):
                variation = ProductVariation(
                    product_id=product.id,
                    sku=variation_data["sku"],
                    name=variation_data["name"],
                )
                session.add(variation)
                await session.flush()
                session.add(InventoryUnit(
                    product_id=product.id,
                    variation_id=variation.id,
                    sku=variation.sku,
                    available_quantity=variation_data["stock"],
                ))
            print(f"  Created product: {product.sku} ({data['stock']} in stock)")
        products[product.sku] = product
    return {"categories": categories, "products": products}


async def seed_policies(session, catalog: dict) -> None:
    existing = await session.execute(select(ReturnPolicy.name))
    names = set(existing.scalars().all())

    if GLOBAL_POLICY["name"] not in names:
        session.add(ReturnPolicy(**GLOBAL_POLICY))
        print(f"  Created policy: {GLOBAL_POLICY['name']}")

    for slug, data in CATEGORY_POLICIES.items():
        if data["name"] not in names:
            session.add(ReturnPolicy(category_id=catalog["categories"][slug].id, **data))
            print(f"  Created policy: {data['name']}")

    for sku, data in PRODUCT_POLICIES.items():
        if data["name"] not in names:
            session.add(ReturnPolicy(product_id=catalog["products"][sku].id, priority=10, **data))
            print(f"  Created policy: {data['name']}")


async def seed():
    print("Seeding catalog and return policies...")
    engine = create_engine()
    session_factory = create_session_factory(engine)
    try:
        async with session_factory() as session:
            catalog = await seed_catalog(session)
            await seed_policies(session, catalog)
            await session.commit()
    finally:
        await engine.dispose()
    print("Done.")


if __name__ == "__main__":
    asyncio.run(seed())
