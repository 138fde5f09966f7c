import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, condecimal
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cidery_core.db import get_session
from cidery_core.models import Vessel, Batch
from cidery_core.units import to_liters

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/vessels", tags=["vessels"])

VesselStatus = Literal["available", "in_use", "cleaning", "maintenance"]
Volume = condecimal(gt=0, max_digits=12, decimal_places=3)
Psi = condecimal(ge=0, max_digits=6, decimal_places=2)

class VesselCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    vessel_type: str = Field(default="tank", max_length=32)
    capacity: Volume | None = None
    capacity_unit: Literal["L", "gal"] = "L"
    max_pressure_psi: Psi | None = None

class VesselUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    vessel_type: str | None = Field(default=None, max_length=32)
    capacity: Volume | None = None
    capacity_unit: Literal["L", "gal"] = "L"
    max_pressure_psi: Psi | None = None
    status: VesselStatus | None = None
    is_active: bool | None = None

def _row(v: Vessel) -> dict:
    return {
        "id": v.id,
        "name": v.name,
        "vessel_type": v.vessel_type,
        "capacity_liters": None if v.capacity_liters is None else float(v.capacity_liters),
        "max_pressure_psi": None if v.max_pressure_psi is None else float(v.max_pressure_psi),
        "status": v.status,
        "is_active": v.is_active,
    }

@router.post("")
async def create_vessel(req: VesselCreate, session: AsyncSession = Depends(get_session)):
    name = req.name.strip()
    exists = (await session.execute(select(Vessel.id).where(Vessel.name == name))).first()
    if exists:
        raise HTTPException(status_code=409, detail=f"Vessel {name} already exists")

    v = Vessel(
        name=name,
        vessel_type=req.vessel_type,
        capacity_liters=None if req.capacity is None else round(to_liters(float(req.capacity), req.capacity_unit), 3),
        max_pressure_psi=None if req.max_pressure_psi is None else float(req.max_pressure_psi),
        status="available",
        is_active=True,
    )
    session.add(v)
    await session.commit()
    logger.info("Created vessel %s (%s)", v.id, v.name)
    return _row(v)

@router.patch("/{vessel_id}")
async def update_vessel(vessel_id: int, req: VesselUpdate, session: AsyncSession = Depends(get_session)):
    v = (await session.execute(select(Vessel).where(Vessel.id == vessel_id))).scalar_one_or_none()
    if not v:
        raise HTTPException(status_code=404, detail="Vessel not found")

    if req.name is not None:
        name = req.name.strip()
        clash = (await session.execute(
            select(Vessel.id).where(Vessel.name == name, Vessel.id != vessel_id)
        )).first()
        if clash:
            raise HTTPException(status_code=409, detail=f"Vessel {name} already exists")
        v.name = name
    if req.vessel_type is not None: v.vessel_type = req.vessel_type
    if req.capacity is not None: v.capacity_liters = round(to_liters(float(req.capacity), req.capacity_unit), 3)
    if req.max_pressure_psi is not None: v.max_pressure_psi = float(req.max_pressure_psi)
    if req.status is not None: v.status = req.status
    if req.is_active is not None: v.is_active = req.is_active

    await session.commit()
    return _row(v)

@router.get("/{vessel_id}")
async def get_vessel(vessel_id: int, session: AsyncSession = Depends(get_session)):
    v = (await session.execute(select(Vessel).where(Vessel.id == vessel_id))).scalar_one_or_none()
    if not v:
        raise HTTPException(status_code=404, detail="Vessel not found")

    batches = (await session.execute(
        select(Batch)
        .where(Batch.vessel_id == vessel_id, Batch.deleted_at.is_(None))
        .where(Batch.status.notin_(("completed", "discarded")))
        .order_by(Batch.start_date.desc())
    )).scalars().all()

    return _row(v) | {
        "batches": [{
            "id": b.id,
            "batch_number": b.batch_number,
            "name": b.name,
            "product_type": b.product_type,
            "status": b.status,
            "current_volume_liters": float(b.current_volume_liters),
        } for b in batches],
    }
