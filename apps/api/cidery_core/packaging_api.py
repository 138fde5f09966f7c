from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, condecimal
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cidery_core.db import get_session
from cidery_core.models import Batch, PackagingRun
from cidery_core.batches_api import load_batch, record_event, release_vessel_if_empty
from cidery_core.ttb import safe_ratio
from cidery_core.units import ML_PER_LITER, round_liters, to_liters
from cidery_core.volumes import TOLERANCE, apply_movement, has_volume, loss_type

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/packaging", tags=["packaging"])

PackageType = Literal["bottle", "can", "keg"]


def packaged_liters(units: int, package_size_ml: int) -> float:
    return round_liters(units * package_size_ml / ML_PER_LITER)


def _row(r: PackagingRun, batch: Batch | None = None) -> dict:
    packaged = packaged_liters(r.units_produced, r.package_size_ml)
    cost = None if r.material_cost is None else float(r.material_cost)
    out = {
        "id": r.id,
        "batch_id": r.batch_id,
        "package_type": r.package_type,
        "package_size_ml": r.package_size_ml,
        "units_produced": r.units_produced,
        "packaged_liters": packaged,
        "volume_taken_liters": float(r.volume_taken_liters),
        "loss_liters": float(r.loss_liters),
        "material_cost": cost,
        "cost_per_unit": None if cost is None else round(safe_ratio(cost, r.units_produced), 4),
        "packaged_at": r.packaged_at,
        "notes": r.notes,
    }
    if batch is not None:
        out["batch_name"] = batch.custom_name or batch.name
        out["batch_number"] = batch.batch_number
        out["product_type"] = batch.product_type
    return out


class PackagingCreate(BaseModel):
    batch_id: int
    package_type: PackageType
    package_size_ml: int = Field(gt=0, le=100000)
    units_produced: int = Field(ge=0)
    loss: condecimal(ge=0, max_digits=12, decimal_places=3) = 0
    loss_unit: Literal["L", "gal"] = "L"
    material_cost: condecimal(ge=0, max_digits=12, decimal_places=2) | None = None
    packaged_at: datetime | None = None
    complete_batch: bool = False
    notes: str | None = Field(default=None, max_length=500)
    performed_by: str | None = Field(default=None, max_length=128)


@router.post("")
async def create_run(req: PackagingCreate, session: AsyncSession = Depends(get_session)):
    packaged_at = req.packaged_at or datetime.now(timezone.utc)
    batch = await load_batch(session, req.batch_id, lock=True)

    packaged = packaged_liters(req.units_produced, req.package_size_ml)
    loss = round_liters(to_liters(float(req.loss), req.loss_unit))
    taken = packaged + loss
    if taken <= 0:
        raise HTTPException(status_code=400, detail="Nothing to package: units and loss are both zero")

    available = float(batch.current_volume_liters)
    if not has_volume(batch, taken):
        logger.warning("Rejected packaging of %.3fL from batch %s (%.3fL available)", taken, batch.id, available)
        raise HTTPException(
            status_code=400,
            detail=f"Packaging needs {taken:.1f}L but batch {batch.name} only has {available:.1f}L",
        )

    run = PackagingRun(
        batch_id=batch.id,
        package_type=req.package_type,
        package_size_ml=req.package_size_ml,
        units_produced=req.units_produced,
        volume_taken_liters=round_liters(taken),
        loss_liters=loss,
        material_cost=req.material_cost,
        packaged_at=packaged_at,
        notes=req.notes,
    )
    session.add(run)

    if packaged > 0:
        apply_movement(session, batch, "packaged", packaged, packaged_at,
                       from_vessel_id=batch.vessel_id,
                       notes=f"{req.units_produced} x {req.package_size_ml}mL {req.package_type}")
    if loss > 0:
        apply_movement(session, batch, loss_type("packaging"), loss, packaged_at,
                       from_vessel_id=batch.vessel_id, notes="Packaging loss")

    record_event(session, batch.id, "packaged", packaged_at,
                 f"{req.units_produced} x {req.package_size_ml}mL {req.package_type}", req.performed_by)

    if req.complete_batch and float(batch.current_volume_liters) <= TOLERANCE:
        batch.status = "completed"
        batch.end_date = packaged_at
        record_event(session, batch.id, "status:completed", packaged_at, "Fully packaged", req.performed_by)
        await release_vessel_if_empty(session, batch.vessel_id, batch.id)

    await session.commit()
    logger.info("Packaging run %s: %.3fL packaged, %.3fL lost from batch %s", run.id, packaged, loss, batch.id)
    return _row(run, batch) | {"remaining_volume_liters": float(batch.current_volume_liters)}


@router.get("")
async def list_runs(
    batch_id: int | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = 100,
    session: AsyncSession = Depends(get_session),
):
    q = (
        select(PackagingRun, Batch)
        .join(Batch, Batch.id == PackagingRun.batch_id)
        .order_by(PackagingRun.packaged_at.desc(), PackagingRun.id.desc())
        .limit(min(max(limit, 1), 500))
    )
    if batch_id is not None:
        q = q.where(PackagingRun.batch_id == batch_id)
    if start_date is not None:
        q = q.where(PackagingRun.packaged_at >= start_date)
    if end_date is not None:
        q = q.where(PackagingRun.packaged_at <= end_date)
    rows = (await session.execute(q)).all()
    return [_row(r, b) for r, b in rows]
