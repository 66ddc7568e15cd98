"""
CRUD operations for e-billing packages.
"""
from typing import List, Optional
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc

from .models import EbillingPackage
from .schemas import PackageCreate, PackageUpdate


# ===== PACKAGE CRUD =====

async def get_package(db: AsyncSession, package_id: UUID) -> Optional[EbillingPackage]:
    """Obtener un paquete por ID (activo o no)."""
    result = await db.execute(
        select(EbillingPackage).where(EbillingPackage.id == package_id)
    )
    return result.scalar_one_or_none()


async def list_packages(db: AsyncSession, active_only: bool = False) -> List[EbillingPackage]:
    """Obtener lista de paquetes, más recientes primero."""
    query = select(EbillingPackage)
    if active_only:
        query = query.where(EbillingPackage.is_active == True)
    query = query.order_by(desc(EbillingPackage.created_at))

    result = await db.execute(query)
    return list(result.scalars().all())


async def create_package(db: AsyncSession, package_data: PackageCreate) -> EbillingPackage:
    """Crear nuevo paquete."""
    package = EbillingPackage(**package_data.model_dump(mode="json"))
    db.add(package)
    await db.commit()
    await db.refresh(package)
    return package


async def update_package(db: AsyncSession, package_id: UUID, package_data: PackageUpdate) -> Optional[EbillingPackage]:
    """
    Actualizar paquete.
    Las suscripciones existentes conservan su snapshot de documentos incluidos.
    """
    package = await get_package(db, package_id)
    if not package:
        return None

    update_data = package_data.model_dump(exclude_unset=True, mode="json")
    for field, value in update_data.items():
        setattr(package, field, value)

    await db.commit()
    await db.refresh(package)
    return package
