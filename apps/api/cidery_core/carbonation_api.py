from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, condecimal
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cidery_core.config import settings
from cidery_core.db import get_session
from cidery_core.models import Batch, CarbonationOperation, Vessel, as_utc
from cidery_core.batches_api import load_batch, record_event
from cidery_core.units import to_liters
from cidery_core.volumes import TOLERANCE, apply_movement, has_volume, loss_type

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/carbonation", tags=["carbonation"])

CarbonationProcess = Literal["headspace", "inline", "stone", "bottle_conditioning"]
Volume = condecimal(gt=0, max_digits=12, decimal_places=3)
TARGET_MET_CO2_VOLUMES = 0.3


def carbonation_level(co2_volumes: float) -> str:
    if co2_volumes < 1.0:
        return "still"
    if co2_volumes < 2.5:
        return "petillant"
    return "sparkling"


def _f(v):
    return None if v is None else float(v)


def _row(op: CarbonationOperation, batch: Batch | None = None, vessel: Vessel | None = None) -> dict:
    target = float(op.target_co2_volumes)
    out = {
        "id": op.id,
        "batch_id": op.batch_id,
        "vessel_id": op.vessel_id,
        "process": op.process,
        "gas_type": op.gas_type,
        "target_co2_volumes": target,
        "starting_co2_volumes": _f(op.starting_co2_volumes),
        "pressure_applied_psi": float(op.pressure_applied_psi),
        "starting_temperature_c": _f(op.starting_temperature_c),
        "starting_volume_liters": float(op.starting_volume_liters),
        "started_at": op.started_at,
        "completed_at": op.completed_at,
        "final_co2_volumes": _f(op.final_co2_volumes),
        "final_pressure_psi": _f(op.final_pressure_psi),
        "final_temperature_c": _f(op.final_temperature_c),
        "final_volume_liters": _f(op.final_volume_liters),
        "notes": op.notes,
        "carbonation_level": carbonation_level(target),
        "is_complete": op.completed_at is not None,
    }
    if batch is not None:
        out["batch_name"] = batch.custom_name or batch.name
        out["batch_number"] = batch.batch_number
    if vessel is not None:
        out["vessel_name"] = vessel.name
    return out


class CarbonationStart(BaseModel):
    batch_id: int
    vessel_id: int | None = None
    process: CarbonationProcess
    gas_type: str = Field(default="CO2", max_length=16)
    target_co2_volumes: float = Field(ge=0, le=5)
    starting_co2_volumes: float | None = Field(default=None, ge=0, le=5)
    pressure_applied_psi: float = Field(ge=0, le=50)
    starting_temperature_c: float | None = Field(default=None, ge=-5, le=25)
    starting_volume: Volume | None = None
    starting_volume_unit: Literal["L", "gal"] = "L"
    started_at: datetime | None = None
    notes: str | None = Field(default=None, max_length=500)
    performed_by: str | None = Field(default=None, max_length=128)


class CarbonationComplete(BaseModel):
    final_co2_volumes: float = Field(ge=0, le=5)
    final_pressure_psi: float | None = Field(default=None, ge=0, le=50)
    final_temperature_c: float | None = Field(default=None, ge=-5, le=25)
    final_volume: Volume | None = None
    final_volume_unit: Literal["L", "gal"] = "L"
    completed_at: datetime | None = None
    notes: str | None = Field(default=None, max_length=500)
    performed_by: str | None = Field(default=None, max_length=128)


@router.post("/start")
async def start_carbonation(req: CarbonationStart, session: AsyncSession = Depends(get_session)):
    started_at = req.started_at or datetime.now(timezone.utc)
    batch = await load_batch(session, req.batch_id, lock=True)

    active = (await session.execute(
        select(CarbonationOperation.id)
        .where(CarbonationOperation.batch_id == batch.id, CarbonationOperation.completed_at.is_(None))
    )).first()
    if active:
        raise HTTPException(status_code=409, detail="Batch already has an active carbonation operation")

    vessel_id = req.vessel_id if req.vessel_id is not None else batch.vessel_id
    if vessel_id is not None and req.process != "bottle_conditioning":
        vessel = (await session.execute(select(Vessel).where(Vessel.id == vessel_id))).scalar_one_or_none()
        if not vessel:
            raise HTTPException(status_code=404, detail="Vessel not found")
        max_psi = (
            float(vessel.max_pressure_psi) if vessel.max_pressure_psi is not None
            else settings.default_vessel_max_pressure_psi
        )
        if req.pressure_applied_psi > max_psi:
            logger.warning("Rejected carbonation of batch %s at %.1f PSI (vessel max %.1f)",
                           batch.id, req.pressure_applied_psi, max_psi)
            raise HTTPException(
                status_code=400,
                detail=f"Pressure {req.pressure_applied_psi:g} PSI exceeds safe limit for this vessel (max: {max_psi:g} PSI)",
            )

    starting_volume = (
        float(batch.current_volume_liters) if req.starting_volume is None
        else round(to_liters(float(req.starting_volume), req.starting_volume_unit), 3)
    )

    op = CarbonationOperation(
        batch_id=batch.id,
        vessel_id=vessel_id,
        process=req.process,
        gas_type=req.gas_type,
        target_co2_volumes=req.target_co2_volumes,
        starting_co2_volumes=req.starting_co2_volumes if req.starting_co2_volumes is not None else 0,
        pressure_applied_psi=req.pressure_applied_psi,
        starting_temperature_c=req.starting_temperature_c,
        starting_volume_liters=starting_volume,
        started_at=started_at,
        notes=req.notes,
    )
    session.add(op)
    record_event(session, batch.id, "carbonation_started", started_at,
                 f"{req.process}, target {req.target_co2_volumes:g} vols", req.performed_by)

    await session.commit()
    logger.info("Started carbonation %s for batch %s", op.id, batch.id)
    return _row(op)


@router.post("/{operation_id}/complete")
async def complete_carbonation(operation_id: int, req: CarbonationComplete, session: AsyncSession = Depends(get_session)):
    op = (await session.execute(
        select(CarbonationOperation).where(CarbonationOperation.id == operation_id).with_for_update()
    )).scalar_one_or_none()
    if not op:
        raise HTTPException(status_code=404, detail="Carbonation operation not found")
    if op.completed_at is not None:
        raise HTTPException(status_code=409, detail="Carbonation operation already completed")

    completed_at = req.completed_at or datetime.now(timezone.utc)
    if as_utc(completed_at) < as_utc(op.started_at):
        raise HTTPException(status_code=400, detail="Completion time cannot be before the start time")

    batch = await load_batch(session, op.batch_id, lock=True)

    final_volume = None
    if req.final_volume is not None:
        final_volume = round(to_liters(float(req.final_volume), req.final_volume_unit), 3)
        # against the current volume, packaging or racking may have run since start
        current = float(batch.current_volume_liters)
        if not has_volume(batch, final_volume):
            raise HTTPException(
                status_code=400,
                detail=f"Final volume ({final_volume:.1f}L) cannot exceed the batch's current volume ({current:.1f}L)",
            )

        loss = current - final_volume
        if loss > TOLERANCE:
            apply_movement(session, batch, loss_type("other"), loss, completed_at,
                           from_vessel_id=op.vessel_id, notes="Carbonation loss")

    op.completed_at = completed_at
    op.final_co2_volumes = req.final_co2_volumes
    op.final_pressure_psi = req.final_pressure_psi
    op.final_temperature_c = req.final_temperature_c
    op.final_volume_liters = final_volume
    if req.notes:
        op.notes = f"{op.notes}\n{req.notes}" if op.notes else req.notes

    target_met = abs(req.final_co2_volumes - float(op.target_co2_volumes)) < TARGET_MET_CO2_VOLUMES
    record_event(session, batch.id, "carbonation_completed", completed_at,
                 f"final {req.final_co2_volumes:g} vols", req.performed_by)

    await session.commit()
    logger.info("Completed carbonation %s for batch %s", op.id, batch.id)
    return _row(op) | {
        "final_carbonation_level": carbonation_level(req.final_co2_volumes),
        "target_met": target_met,
    }


@router.get("/active")
async def list_active(session: AsyncSession = Depends(get_session)):
    rows = (await session.execute(
        select(CarbonationOperation, Batch, Vessel)
        .join(Batch, Batch.id == CarbonationOperation.batch_id)
        .outerjoin(Vessel, Vessel.id == CarbonationOperation.vessel_id)
        .where(CarbonationOperation.completed_at.is_(None), Batch.deleted_at.is_(None))
        .order_by(CarbonationOperation.started_at.desc())
    )).all()
    return [_row(op, b, v) for op, b, v in rows]


@router.get("/batch/{batch_id}")
async def list_for_batch(batch_id: int, session: AsyncSession = Depends(get_session)):
    await load_batch(session, batch_id)
    rows = (await session.execute(
        select(CarbonationOperation, Vessel)
        .outerjoin(Vessel, Vessel.id == CarbonationOperation.vessel_id)
        .where(CarbonationOperation.batch_id == batch_id)
        .order_by(CarbonationOperation.started_at.desc(), CarbonationOperation.id.desc())
    )).all()
    return [_row(op, vessel=v) for op, v in rows]
