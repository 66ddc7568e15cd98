"""
Seed de paquetes de facturación electrónica.

Crea (o actualiza por nombre) los paquetes por defecto.
    python -m app.modules.ebilling.seed_packages
"""
import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.database import AsyncSessionLocal
from app.modules.ebilling.models import EbillingPackage, BillingCycle

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

PACKAGES_DATA = [
    {
        "name": "Emprendedor",
        "description": "Hasta 50 documentos electrónicos al mes",
        "billing_cycle": BillingCycle.MONTHLY.value,
        "included_documents": 50,
        "includes_support_docs": False,
        "price_usd_cents": 900,
    },
    {
        "name": "Pyme",
        "description": "Hasta 300 documentos electrónicos al mes",
        "billing_cycle": BillingCycle.MONTHLY.value,
        "included_documents": 300,
        "price_usd_cents": 2900,
    },
    {
        "name": "Empresarial",
        "description": "Hasta 1.500 documentos electrónicos al mes",
        "billing_cycle": BillingCycle.MONTHLY.value,
        "included_documents": 1500,
        "price_usd_cents": 9900,
    },
    {
        "name": "Empresarial Anual",
        "description": "18.000 documentos electrónicos por año",
        "billing_cycle": BillingCycle.ANNUAL.value,
        "included_documents": 18000,
        "price_usd_cents": 99000,
    },
]


async def seed_packages(db: AsyncSession) -> int:
    """Crear los paquetes faltantes y actualizar los existentes. Devuelve cuántos se crearon."""
    created = 0
    for package_data in PACKAGES_DATA:
        result = await db.execute(
            select(EbillingPackage).where(EbillingPackage.name == package_data["name"])
        )
        existing = result.scalar_one_or_none()

        if existing:
            logger.info(f"Package {package_data['name']} already exists, updating...")
            for key, value in package_data.items():
                setattr(existing, key, value)
        else:
            logger.info(f"Creating package {package_data['name']}...")
            db.add(EbillingPackage(**package_data))
            created += 1

    await db.commit()
    return created


async def main():
    logger.info("Starting e-billing packages seeding...")
    async with AsyncSessionLocal() as db:
        try:
            created = await seed_packages(db)
        except Exception as e:
            logger.error(f"Error seeding packages: {e}")
            await db.rollback()
            raise
    logger.info(f"E-billing packages seeding completed ({created} created)")


if __name__ == "__main__":
    asyncio.run(main())
