from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cidery_core.db import get_session
from cidery_core.models import PRODUCT_TYPES, Vessel, Vendor, FruitVariety
from cidery_core.ttb import TTB_TAX_CLASSES

router = APIRouter(prefix="/lookups", tags=["lookups"])

@router.get("/vessels")
async def list_vessels(available_only: bool = False, session: AsyncSession = Depends(get_session)):
    q = select(Vessel).where(Vessel.is_active == True).order_by(Vessel.name)  # noqa
    if available_only:
        q = q.where(Vessel.status == "available")
    rows = (await session.execute(q)).scalars().all()
    return [{
        "id": r.id,
        "name": r.name,
        "vessel_type": r.vessel_type,
        "capacity_liters": None if r.capacity_liters is None else float(r.capacity_liters),
        "status": r.status,
    } for r in rows]

@router.get("/vendors")
async def list_vendors(session: AsyncSession = Depends(get_session)):
    rows = (await session.execute(
        select(Vendor).where(Vendor.is_active == True).order_by(Vendor.name)  # noqa
    )).scalars().all()
    return [{"id": r.id, "name": r.name} for r in rows]

@router.get("/varieties")
async def list_varieties(fruit_type: str | None = None, session: AsyncSession = Depends(get_session)):
    q = (
        select(FruitVariety)
        .where(FruitVariety.is_active == True)  # noqa
        .order_by(FruitVariety.sort_order.asc(), FruitVariety.name.asc())
    )
    if fruit_type is not None:
        q = q.where(FruitVariety.fruit_type == fruit_type)
    rows = (await session.execute(q)).scalars().all()
    return [{"id": r.id, "name": r.name, "fruit_type": r.fruit_type} for r in rows]

@router.get("/product-types")
async def list_product_types():
    return [{"code": pt, "ttb_tax_class": TTB_TAX_CLASSES[pt]} for pt in PRODUCT_TYPES]
