from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import List, Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, condecimal
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cidery_core.db import get_session
from cidery_core.models import Vendor, FruitVariety, BaseFruitPurchase, BaseFruitPurchaseItem
from cidery_core.units import to_kg

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/purchases", tags=["purchases"])

Qty = condecimal(gt=0, max_digits=12, decimal_places=3)
Money = condecimal(ge=0, max_digits=12, decimal_places=4)

class PurchaseItemIn(BaseModel):
    variety_id: int
    quantity: Qty
    unit: Literal["kg", "lb"] = "kg"
    price_per_unit: Money | None = None
    total_cost: Money | None = None
    harvest_date: date | None = None
    notes: str | None = Field(default=None, max_length=500)

class PurchaseCreate(BaseModel):
    vendor_id: int
    purchase_date: date
    invoice_number: str | None = Field(default=None, max_length=64)
    notes: str | None = Field(default=None, max_length=500)
    items: List[PurchaseItemIn] = Field(min_length=1)

def item_total_cost(price_per_unit: float | None, quantity: float, total_cost: float | None) -> float | None:
    if total_cost is not None:
        return round(total_cost, 2)
    if price_per_unit is None:
        return None
    return round(price_per_unit * quantity, 2)

def _purchase_row(p: BaseFruitPurchase, vendor: Vendor, items: list[tuple[BaseFruitPurchaseItem, FruitVariety]]) -> dict:
    return {
        "id": p.id,
        "vendor_id": vendor.id,
        "vendor_name": vendor.name,
        "purchase_date": p.purchase_date,
        "invoice_number": p.invoice_number,
        "notes": p.notes,
        "items": [{
            "id": i.id,
            "variety_id": var.id,
            "variety_name": var.name,
            "quantity": float(i.quantity),
            "unit": i.unit,
            "quantity_kg": float(i.quantity_kg),
            "price_per_unit": None if i.price_per_unit is None else float(i.price_per_unit),
            "total_cost": None if i.total_cost is None else float(i.total_cost),
            "harvest_date": i.harvest_date,
        } for i, var in items],
        "total_kg": round(sum(float(i.quantity_kg) for i, _ in items), 3),
        "total_cost": round(sum(float(i.total_cost or 0) for i, _ in items), 2),
    }

@router.post("")
async def create_purchase(req: PurchaseCreate, session: AsyncSession = Depends(get_session)):
    vendor = (await session.execute(select(Vendor).where(Vendor.id == req.vendor_id))).scalar_one_or_none()
    if not vendor:
        raise HTTPException(status_code=400, detail="Invalid vendor_id")
    if not vendor.is_active:
        raise HTTPException(status_code=400, detail=f"Vendor {vendor.name} is inactive")

    variety_ids = {i.variety_id for i in req.items}
    varieties = (await session.execute(
        select(FruitVariety).where(FruitVariety.id.in_(variety_ids))
    )).scalars().all()
    variety_map = {v.id: v for v in varieties}
    if len(variety_map) != len(variety_ids):
        raise HTTPException(status_code=400, detail="One or more variety_id invalid")

    p = BaseFruitPurchase(
        vendor_id=req.vendor_id,
        purchase_date=req.purchase_date,
        invoice_number=req.invoice_number,
        notes=req.notes,
    )
    session.add(p)
    await session.flush()

    items = []
    for i in req.items:
        qty = float(i.quantity)
        price = None if i.price_per_unit is None else float(i.price_per_unit)
        row = BaseFruitPurchaseItem(
            purchase_id=p.id,
            variety_id=i.variety_id,
            quantity=qty,
            unit=i.unit,
            quantity_kg=round(to_kg(qty, i.unit), 3),
            price_per_unit=price,
            total_cost=item_total_cost(price, qty, None if i.total_cost is None else float(i.total_cost)),
            harvest_date=i.harvest_date,
            notes=i.notes,
        )
        session.add(row)
        items.append((row, variety_map[i.variety_id]))

    await session.commit()
    logger.info("Recorded purchase %s from vendor %s with %d items", p.id, vendor.id, len(items))
    return _purchase_row(p, vendor, items)

@router.get("")
async def list_purchases(
    start_date: date | None = None,
    end_date: date | None = None,
    vendor_id: int | None = None,
    session: AsyncSession = Depends(get_session),
):
    q = (
        select(BaseFruitPurchase, Vendor)
        .join(Vendor, Vendor.id == BaseFruitPurchase.vendor_id)
        .where(BaseFruitPurchase.deleted_at.is_(None))
        .order_by(BaseFruitPurchase.purchase_date.desc(), BaseFruitPurchase.id.desc())
    )
    if start_date is not None:
        q = q.where(BaseFruitPurchase.purchase_date >= start_date)
    if end_date is not None:
        q = q.where(BaseFruitPurchase.purchase_date <= end_date)
    if vendor_id is not None:
        q = q.where(BaseFruitPurchase.vendor_id == vendor_id)
    purchases = (await session.execute(q)).all()

    ids = [p.id for p, _ in purchases]
    by_purchase: dict[int, list] = {pid: [] for pid in ids}
    if ids:
        rows = (await session.execute(
            select(BaseFruitPurchaseItem, FruitVariety)
            .join(FruitVariety, FruitVariety.id == BaseFruitPurchaseItem.variety_id)
            .where(BaseFruitPurchaseItem.purchase_id.in_(ids))
            .order_by(BaseFruitPurchaseItem.id)
        )).all()
        for item, var in rows:
            by_purchase[item.purchase_id].append((item, var))

    return [_purchase_row(p, v, by_purchase[p.id]) for p, v in purchases]

@router.delete("/{purchase_id}")
async def delete_purchase(purchase_id: int, session: AsyncSession = Depends(get_session)):
    p = (await session.execute(
        select(BaseFruitPurchase).where(BaseFruitPurchase.id == purchase_id)
    )).scalar_one_or_none()
    if not p or p.deleted_at is not None:
        raise HTTPException(status_code=404, detail="Purchase not found")

    p.deleted_at = datetime.now(timezone.utc)
    await session.commit()
    logger.info("Deleted purchase %s", purchase_id)
    return {"ok": True, "id": purchase_id}
