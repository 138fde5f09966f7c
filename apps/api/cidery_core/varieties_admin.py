from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cidery_core.db import get_session
from cidery_core.models import FruitVariety

router = APIRouter(prefix="/admin/varieties", tags=["admin"])

FruitType = Literal["apple", "pear", "other"]

class VarietyCreate(BaseModel):
    name: str = Field(min_length=2, max_length=128)
    fruit_type: FruitType = "apple"
    sort_order: int = 0
    is_active: bool = True

class VarietyUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=128)
    fruit_type: FruitType | None = None
    sort_order: int | None = None
    is_active: bool | None = None

def _row(r: FruitVariety) -> dict:
    return {"id": r.id, "name": r.name, "fruit_type": r.fruit_type, "is_active": r.is_active, "sort_order": r.sort_order}

@router.get("")
async def admin_list(session: AsyncSession = Depends(get_session)):
    rows = (await session.execute(
        select(FruitVariety).order_by(
            FruitVariety.is_active.desc(), FruitVariety.sort_order.asc(), FruitVariety.name.asc()
        )
    )).scalars().all()
    return [_row(r) for r in rows]

@router.post("")
async def admin_create(req: VarietyCreate, session: AsyncSession = Depends(get_session)):
    name = req.name.strip()
    exists = (await session.execute(select(FruitVariety).where(FruitVariety.name == name))).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="variety already exists")

    row = FruitVariety(name=name, fruit_type=req.fruit_type, is_active=req.is_active, sort_order=req.sort_order)
    session.add(row)
    await session.commit()
    return _row(row)

@router.patch("/{variety_id}")
async def admin_update(variety_id: int, req: VarietyUpdate, session: AsyncSession = Depends(get_session)):
    row = (await session.execute(select(FruitVariety).where(FruitVariety.id == variety_id))).scalar_one_or_none()
    if not row:
        raise HTTPException(status_code=404, detail="not found")

    values = {}
    if req.name is not None: values["name"] = req.name.strip()
    if req.fruit_type is not None: values["fruit_type"] = req.fruit_type
    if req.sort_order is not None: values["sort_order"] = req.sort_order
    if req.is_active is not None: values["is_active"] = req.is_active

    if not values:
        return {"ok": True}

    if "name" in values and values["name"] != row.name:
        clash = (await session.execute(
            select(FruitVariety.id).where(FruitVariety.name == values["name"])
        )).scalar_one_or_none()
        if clash:
            raise HTTPException(status_code=409, detail="variety already exists")

    await session.execute(update(FruitVariety).where(FruitVariety.id == variety_id).values(**values))
    await session.commit()
    return {"ok": True}
