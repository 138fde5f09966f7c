import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from cidery_core.db import get_session
from cidery_core.models import Vendor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/vendors", tags=["vendors"])

class VendorCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    contact: str | None = Field(default=None, max_length=255)
    address: str | None = None

class VendorUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    contact: str | None = Field(default=None, max_length=255)
    address: str | None = None
    is_active: bool | None = None

def _row(v: Vendor) -> dict:
    return {"id": v.id, "name": v.name, "contact": v.contact, "address": v.address, "is_active": v.is_active}

async def _name_taken(session: AsyncSession, name: str, exclude_id: int | None = None) -> bool:
    q = select(Vendor.id).where(func.lower(Vendor.name) == name.lower())
    if exclude_id is not None:
        q = q.where(Vendor.id != exclude_id)
    return (await session.execute(q)).first() is not None

@router.get("")
async def list_vendors(
    search: str | None = None,
    include_inactive: bool = False,
    session: AsyncSession = Depends(get_session),
):
    q = select(Vendor).order_by(Vendor.name.asc())
    if not include_inactive:
        q = q.where(Vendor.is_active == True)  # noqa
    if search:
        q = q.where(Vendor.name.ilike(f"%{search.strip()}%"))
    rows = (await session.execute(q)).scalars().all()
    return [_row(v) for v in rows]

@router.post("")
async def create_vendor(req: VendorCreate, session: AsyncSession = Depends(get_session)):
    name = req.name.strip()
    if await _name_taken(session, name):
        raise HTTPException(status_code=409, detail=f"Vendor {name} already exists")

    v = Vendor(name=name, contact=req.contact, address=req.address, is_active=True)
    session.add(v)
    await session.commit()
    logger.info("Created vendor %s (%s)", v.id, v.name)
    return _row(v)

@router.patch("/{vendor_id}")
async def update_vendor(vendor_id: int, req: VendorUpdate, session: AsyncSession = Depends(get_session)):
    v = (await session.execute(select(Vendor).where(Vendor.id == vendor_id))).scalar_one_or_none()
    if not v:
        raise HTTPException(status_code=404, detail="Vendor not found")

    if req.name is not None:
        name = req.name.strip()
        if await _name_taken(session, name, exclude_id=vendor_id):
            raise HTTPException(status_code=409, detail=f"Vendor {name} already exists")
        v.name = name
    if req.contact is not None: v.contact = req.contact
    if req.address is not None: v.address = req.address
    if req.is_active is not None: v.is_active = req.is_active

    await session.commit()
    return _row(v)

@router.delete("/{vendor_id}")
async def deactivate_vendor(vendor_id: int, session: AsyncSession = Depends(get_session)):
    v = (await session.execute(select(Vendor).where(Vendor.id == vendor_id))).scalar_one_or_none()
    if not v:
        raise HTTPException(status_code=404, detail="Vendor not found")

    # Purchases keep pointing at the vendor; it just drops out of pick lists.
    v.is_active = False
    await session.commit()
    logger.info("Deactivated vendor %s", vendor_id)
    return {"ok": True, "id": vendor_id}
