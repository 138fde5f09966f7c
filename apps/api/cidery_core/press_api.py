from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone
from typing import List, Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, condecimal
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cidery_core.db import get_session
from cidery_core.models import Batch, FruitVariety, PressRun, PressRunLoad
from cidery_core.batch_codes import next_batch_number
from cidery_core.batches_api import batch_row, record_event, check_vessel_for_batch
from cidery_core.ttb import safe_ratio
from cidery_core.units import round_liters, to_kg, to_liters
from cidery_core.volumes import apply_movement

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/press-runs", tags=["press-runs"])

Weight = condecimal(gt=0, max_digits=12, decimal_places=3)
Juice = condecimal(ge=0, max_digits=12, decimal_places=3)


def extraction_rate(fruit_kg: float, juice_liters: float) -> float:
    return round(safe_ratio(juice_liters, fruit_kg) * 100, 2)


class LoadIn(BaseModel):
    variety_id: int
    fruit_weight: Weight
    fruit_weight_unit: Literal["kg", "lb"] = "kg"
    juice_volume: Juice
    juice_volume_unit: Literal["L", "gal"] = "L"


class BatchFromJuice(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    product_type: Literal["juice", "cider", "perry"] = "cider"
    vessel_id: int | None = None


class PressRunCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    date_completed: date
    loads: List[LoadIn] = Field(min_length=1)
    notes: str | None = Field(default=None, max_length=500)
    create_batch: BatchFromJuice | None = None
    performed_by: str | None = Field(default=None, max_length=128)


def _run_row(pr: PressRun, loads: list[tuple[PressRunLoad, FruitVariety]] | None = None) -> dict:
    fruit = float(pr.total_fruit_kg)
    juice = float(pr.total_juice_liters)
    out = {
        "id": pr.id,
        "name": pr.name,
        "date_completed": pr.date_completed,
        "total_fruit_kg": fruit,
        "total_juice_liters": juice,
        "extraction_rate": extraction_rate(fruit, juice),
        "notes": pr.notes,
    }
    if loads is not None:
        out["loads"] = [
            {
                "id": ld.id,
                "variety_id": ld.variety_id,
                "variety_name": v.name,
                "fruit_kg": float(ld.fruit_kg),
                "juice_liters": float(ld.juice_liters),
                "extraction_rate": extraction_rate(float(ld.fruit_kg), float(ld.juice_liters)),
            }
            for ld, v in loads
        ]
    return out


@router.post("")
async def create_press_run(req: PressRunCreate, session: AsyncSession = Depends(get_session)):
    variety_ids = {ld.variety_id for ld in req.loads}
    varieties = {
        v.id: v for v in (await session.execute(
            select(FruitVariety).where(FruitVariety.id.in_(variety_ids))
        )).scalars().all()
    }
    missing = variety_ids - set(varieties)
    if missing:
        raise HTTPException(status_code=400, detail=f"Invalid variety_id: {sorted(missing)[0]}")

    loads = [
        (
            ld.variety_id,
            round(to_kg(float(ld.fruit_weight), ld.fruit_weight_unit), 3),
            round_liters(to_liters(float(ld.juice_volume), ld.juice_volume_unit)),
        )
        for ld in req.loads
    ]
    total_fruit = round(sum(kg for _, kg, _ in loads), 3)
    total_juice = round_liters(sum(liters for _, _, liters in loads))

    pr = PressRun(
        name=req.name.strip(),
        date_completed=req.date_completed,
        total_fruit_kg=total_fruit,
        total_juice_liters=total_juice,
        notes=req.notes,
    )
    session.add(pr)
    await session.flush()

    load_rows = []
    for variety_id, kg, liters in loads:
        ld = PressRunLoad(press_run_id=pr.id, variety_id=variety_id, fruit_kg=kg, juice_liters=liters)
        session.add(ld)
        load_rows.append((ld, varieties[variety_id]))
    await session.flush()

    batch = None
    vessel = None
    if req.create_batch is not None:
        if total_juice <= 0:
            raise HTTPException(status_code=400, detail="Press run produced no juice to start a batch from")
        if req.create_batch.vessel_id is not None:
            vessel = await check_vessel_for_batch(session, req.create_batch.vessel_id, total_juice)

        started = datetime.combine(req.date_completed, time.min, tzinfo=timezone.utc)
        batch = Batch(
            batch_number=await next_batch_number(session, "BATCH", started),
            name=req.create_batch.name or pr.name,
            product_type=req.create_batch.product_type,
            status="fermentation",
            vessel_id=vessel.id if vessel else None,
            press_run_id=pr.id,
            initial_volume_liters=total_juice,
            current_volume_liters=0,
            start_date=started,
        )
        session.add(batch)
        await session.flush()
        apply_movement(session, batch, "production", total_juice, started,
                       to_vessel_id=batch.vessel_id, notes=f"Pressed in {pr.name}")
        record_event(session, batch.id, "created", started, f"From press run {pr.name}", req.performed_by)
        if vessel is not None:
            vessel.status = "in_use"

    await session.commit()
    logger.info("Recorded press run %s: %.3fkg fruit, %.3fL juice", pr.id, total_fruit, total_juice)

    out = _run_row(pr, load_rows)
    out["batch"] = batch_row(batch, vessel) if batch is not None else None
    return out


@router.get("")
async def list_press_runs(
    start_date: date | None = None,
    end_date: date | None = None,
    limit: int = 100,
    session: AsyncSession = Depends(get_session),
):
    q = select(PressRun).order_by(PressRun.date_completed.desc(), PressRun.id.desc()).limit(min(max(limit, 1), 500))
    if start_date is not None:
        q = q.where(PressRun.date_completed >= start_date)
    if end_date is not None:
        q = q.where(PressRun.date_completed <= end_date)
    runs = (await session.execute(q)).scalars().all()
    return [_run_row(pr) for pr in runs]


@router.get("/{press_run_id}")
async def get_press_run(press_run_id: int, session: AsyncSession = Depends(get_session)):
    pr = (await session.execute(select(PressRun).where(PressRun.id == press_run_id))).scalar_one_or_none()
    if not pr:
        raise HTTPException(status_code=404, detail="Press run not found")
    loads = (await session.execute(
        select(PressRunLoad, FruitVariety)
        .join(FruitVariety, FruitVariety.id == PressRunLoad.variety_id)
        .where(PressRunLoad.press_run_id == pr.id)
        .order_by(PressRunLoad.id)
    )).all()
    batches = (await session.execute(
        select(Batch).where(Batch.press_run_id == pr.id, Batch.deleted_at.is_(None)).order_by(Batch.id)
    )).scalars().all()
    return _run_row(pr, [(ld, v) for ld, v in loads]) | {"batches": [batch_row(b) for b in batches]}
