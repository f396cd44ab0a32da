import asyncio
import logging
from decimal import Decimal

from sqlalchemy import select

from storefront.catalog import get_active_settings, refresh_total_stock
from storefront.config import configure_logging
from storefront.database import SessionLocal, init_db
from storefront.models import Product, ProductSize

logger = logging.getLogger(__name__)

SEED_PRODUCTS = [
    {
        "name": "Cosmic Oversized Tee",
        "slug": "cosmic-oversized-tee",
        "price": Decimal("1999"),
        "discount_price": None,
        "sizes": {"S": 10, "M": 10, "L": 8, "XL": 4},
    },
    {
        "name": "Nebula Hoodie",
        "slug": "nebula-hoodie",
        "price": Decimal("2999"),
        "discount_price": Decimal("2499"),
        "sizes": {"M": 5, "L": 5},
    },
    {
        "name": "Orbit Cap",
        "slug": "orbit-cap",
        "price": Decimal("699"),
        "discount_price": None,
        "sizes": {"FREE": 0},  # sold out, exercises the stock check
    },
]


async def seed_catalog(session_factory=SessionLocal):
    async with session_factory() as session:
        existing = await session.execute(select(Product.id).where(Product.slug == SEED_PRODUCTS[0]["slug"]))
        if existing.scalar_one_or_none():
            logger.info("Catalog already seeded.")
            return

        await get_active_settings(session)
        for data in SEED_PRODUCTS:
            product = Product(
                name=data["name"],
                slug=data["slug"],
                price=data["price"],
                discount_price=data["discount_price"],
                sizes=[ProductSize(size=size, stock=stock) for size, stock in data["sizes"].items()],
            )
            session.add(product)
            await session.flush()
            await refresh_total_stock(session, product.id)
        await session.commit()
        logger.info("Catalog seeded with %d products.", len(SEED_PRODUCTS))


async def main():
    await init_db()
    await seed_catalog()


if __name__ == "__main__":
    configure_logging()
    asyncio.run(main())
