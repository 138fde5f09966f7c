from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, condecimal
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from cidery_core.db import get_session
from cidery_core.models import (
    Batch, BatchEvent, BatchMeasurement, BatchAdditive, BatchTransfer,
    Vessel, PressRun, VolumeMovement,
)
from cidery_core.batch_codes import next_batch_number
from cidery_core.traceability import backward_trace, forward_trace
from cidery_core.units import to_liters
from cidery_core.volumes import (
    TOLERANCE, apply_movement, ledger_volume, movement_sign, INFLOW_TYPES, OUTFLOW_TYPES, LOSS_PREFIX,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/batches", tags=["batches"])

Volume = condecimal(gt=0, max_digits=12, decimal_places=3)
VolumeUnit = Literal["L", "gal"]
ProductType = Literal["cider", "perry", "brandy", "pommeau", "juice", "other"]
BatchStatus = Literal["fermentation", "aging", "conditioning", "completed", "discarded"]
Abv = condecimal(ge=0, le=100, max_digits=5, decimal_places=2)
Amount = condecimal(gt=0, max_digits=12, decimal_places=3)

CLOSED_STATUSES = ("completed", "discarded")


# --- shared helpers (also used by the cellar, distillation and packaging routers) ---

async def load_batch(session: AsyncSession, batch_id: int, lock: bool = False) -> Batch:
    q = select(Batch).where(Batch.id == batch_id, Batch.deleted_at.is_(None))
    if lock:
        q = q.with_for_update()
    batch = (await session.execute(q)).scalar_one_or_none()
    if not batch:
        raise HTTPException(status_code=404, detail=f"Batch {batch_id} not found")
    return batch


def record_event(
    session: AsyncSession,
    batch_id: int,
    event_type: str,
    performed_at: datetime,
    reason: str | None = None,
    performed_by: str | None = None,
) -> BatchEvent:
    ev = BatchEvent(
        batch_id=batch_id,
        event_type=event_type,
        reason=reason,
        performed_by=performed_by,
        performed_at=performed_at,
    )
    session.add(ev)
    return ev


async def release_vessel_if_empty(session: AsyncSession, vessel_id: int | None, leaving_batch_id: int) -> None:
    """Mark a vessel available once no other open batch sits in it."""
    if vessel_id is None:
        return
    other = (await session.execute(
        select(Batch.id)
        .where(Batch.vessel_id == vessel_id, Batch.id != leaving_batch_id)
        .where(Batch.deleted_at.is_(None))
        .where(Batch.status.notin_(CLOSED_STATUSES))
        .limit(1)
    )).first()
    if other is None:
        vessel = (await session.execute(select(Vessel).where(Vessel.id == vessel_id))).scalar_one_or_none()
        if vessel and vessel.status == "in_use":
            vessel.status = "available"


def _f(v):
    return None if v is None else float(v)


def batch_row(b: Batch, vessel: Vessel | None = None) -> dict:
    return {
        "id": b.id,
        "batch_number": b.batch_number,
        "name": b.name,
        "custom_name": b.custom_name,
        "product_type": b.product_type,
        "status": b.status,
        "vessel_id": b.vessel_id,
        "vessel_name": vessel.name if vessel else None,
        "press_run_id": b.press_run_id,
        "parent_batch_id": b.parent_batch_id,
        "initial_volume_liters": float(b.initial_volume_liters),
        "current_volume_liters": float(b.current_volume_liters),
        "estimated_abv": _f(b.estimated_abv),
        "actual_abv": _f(b.actual_abv),
        "start_date": b.start_date,
        "end_date": b.end_date,
        "deleted_at": b.deleted_at,
    }


# --- batch CRUD ---

class BatchCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    custom_name: str | None = Field(default=None, max_length=255)
    product_type: ProductType = "cider"
    vessel_id: int | None = None
    press_run_id: int | None = None
    parent_batch_id: int | None = None
    initial_volume: Volume
    initial_volume_unit: VolumeUnit = "L"
    estimated_abv: Abv | None = None
    start_date: datetime | None = None
    notes: str | None = Field(default=None, max_length=500)
    performed_by: str | None = Field(default=None, max_length=128)


class BatchUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    custom_name: str | None = Field(default=None, max_length=255)
    product_type: ProductType | None = None
    status: BatchStatus | None = None
    estimated_abv: Abv | None = None
    actual_abv: Abv | None = None
    end_date: datetime | None = None
    performed_by: str | None = Field(default=None, max_length=128)


async def check_vessel_for_batch(session: AsyncSession, vessel_id: int, volume_liters: float, batch_id: int | None = None) -> Vessel:
    vessel = (await session.execute(select(Vessel).where(Vessel.id == vessel_id))).scalar_one_or_none()
    if not vessel or not vessel.is_active:
        raise HTTPException(status_code=400, detail="Invalid vessel_id")

    if vessel.status != "available":
        holds_batch = batch_id is not None and (await session.execute(
            select(Batch.id).where(Batch.id == batch_id, Batch.vessel_id == vessel_id)
        )).first() is not None
        if not holds_batch:
            raise HTTPException(status_code=400, detail=f"Vessel {vessel.name} is not available ({vessel.status})")

    if vessel.capacity_liters is not None and volume_liters - float(vessel.capacity_liters) > TOLERANCE:
        raise HTTPException(
            status_code=400,
            detail=f"Volume {volume_liters:.1f}L exceeds vessel {vessel.name} capacity {float(vessel.capacity_liters):.1f}L",
        )
    return vessel


@router.get("")
async def list_batches(
    status: BatchStatus | None = None,
    vessel_id: int | None = None,
    product_type: ProductType | None = None,
    search: str | None = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    sort_by: Literal["name", "start_date", "status"] = "start_date",
    sort_order: Literal["asc", "desc"] = "desc",
    include_deleted: bool = False,
    session: AsyncSession = Depends(get_session),
):
    conditions = []
    if not include_deleted:
        conditions.append(Batch.deleted_at.is_(None))
    if status is not None:
        conditions.append(Batch.status == status)
    if vessel_id is not None:
        conditions.append(Batch.vessel_id == vessel_id)
    if product_type is not None:
        conditions.append(Batch.product_type == product_type)
    if search:
        term = f"%{search.strip()}%"
        conditions.append(or_(
            Batch.name.ilike(term), Batch.custom_name.ilike(term), Batch.batch_number.ilike(term)
        ))

    total = (await session.execute(select(func.count(Batch.id)).where(*conditions))).scalar_one()

    sort_col = {"name": Batch.name, "start_date": Batch.start_date, "status": Batch.status}[sort_by]
    order = sort_col.asc() if sort_order == "asc" else sort_col.desc()

    rows = (await session.execute(
        select(Batch, Vessel)
        .outerjoin(Vessel, Vessel.id == Batch.vessel_id)
        .where(*conditions)
        .order_by(order, Batch.id.desc())
        .limit(limit)
        .offset(offset)
    )).all()

    return {
        "items": [batch_row(b, v) for b, v in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
        "has_more": offset + len(rows) < total,
    }


@router.get("/{batch_id}")
async def get_batch(batch_id: int, session: AsyncSession = Depends(get_session)):
    batch = await load_batch(session, batch_id)
    vessel = None
    if batch.vessel_id is not None:
        vessel = (await session.execute(select(Vessel).where(Vessel.id == batch.vessel_id))).scalar_one_or_none()

    press_run = None
    if batch.press_run_id is not None:
        pr = (await session.execute(select(PressRun).where(PressRun.id == batch.press_run_id))).scalar_one_or_none()
        if pr:
            press_run = {"id": pr.id, "name": pr.name, "date_completed": pr.date_completed}

    measurements = (await session.execute(
        select(BatchMeasurement)
        .where(BatchMeasurement.batch_id == batch_id, BatchMeasurement.deleted_at.is_(None))
        .order_by(BatchMeasurement.measured_at.desc(), BatchMeasurement.id.desc())
    )).scalars().all()
    additives = (await session.execute(
        select(BatchAdditive)
        .where(BatchAdditive.batch_id == batch_id, BatchAdditive.deleted_at.is_(None))
        .order_by(BatchAdditive.added_at.desc(), BatchAdditive.id.desc())
    )).scalars().all()

    return batch_row(batch, vessel) | {
        "press_run": press_run,
        "ledger_volume_liters": round(await ledger_volume(session, batch_id), 3),
        "measurements": [_measurement_row(m) for m in measurements],
        "additives": [_additive_row(a) for a in additives],
    }


@router.post("")
async def create_batch(req: BatchCreate, session: AsyncSession = Depends(get_session)):
    performed_at = req.start_date or datetime.now(timezone.utc)
    volume = round(to_liters(float(req.initial_volume), req.initial_volume_unit), 3)

    vessel = None
    if req.vessel_id is not None:
        vessel = await check_vessel_for_batch(session, req.vessel_id, volume)

    if req.press_run_id is not None:
        pr = (await session.execute(select(PressRun.id).where(PressRun.id == req.press_run_id))).first()
        if not pr:
            raise HTTPException(status_code=400, detail="Invalid press_run_id")
    if req.parent_batch_id is not None:
        await load_batch(session, req.parent_batch_id)

    batch = Batch(
        batch_number=await next_batch_number(session, "BATCH", performed_at),
        name=req.name.strip(),
        custom_name=req.custom_name,
        product_type=req.product_type,
        status="fermentation",
        vessel_id=req.vessel_id,
        press_run_id=req.press_run_id,
        parent_batch_id=req.parent_batch_id,
        initial_volume_liters=volume,
        current_volume_liters=0,
        estimated_abv=None if req.estimated_abv is None else float(req.estimated_abv),
        start_date=performed_at,
    )
    session.add(batch)
    await session.flush()

    apply_movement(session, batch, "production", volume, performed_at, to_vessel_id=req.vessel_id, notes=req.notes)
    record_event(session, batch.id, "created", performed_at, req.notes, req.performed_by)
    if vessel is not None:
        vessel.status = "in_use"

    await session.commit()
    logger.info("Created batch %s (%s) with %.3fL", batch.id, batch.batch_number, volume)
    return batch_row(batch, vessel)


@router.patch("/{batch_id}")
async def update_batch(batch_id: int, req: BatchUpdate, session: AsyncSession = Depends(get_session)):
    batch = await load_batch(session, batch_id, lock=True)
    now = datetime.now(timezone.utc)

    if req.name is not None: batch.name = req.name.strip()
    if req.custom_name is not None: batch.custom_name = req.custom_name
    if req.product_type is not None and req.product_type != batch.product_type:
        record_event(session, batch.id, "product_type_changed", now,
                     f"{batch.product_type} -> {req.product_type}", req.performed_by)
        batch.product_type = req.product_type
    if req.estimated_abv is not None: batch.estimated_abv = float(req.estimated_abv)
    if req.actual_abv is not None: batch.actual_abv = float(req.actual_abv)
    if req.end_date is not None: batch.end_date = req.end_date

    if req.status is not None and req.status != batch.status:
        record_event(session, batch.id, f"status:{req.status}", now, f"{batch.status} -> {req.status}", req.performed_by)
        batch.status = req.status
        if req.status in CLOSED_STATUSES:
            if batch.end_date is None:
                batch.end_date = now
            await release_vessel_if_empty(session, batch.vessel_id, batch.id)

    await session.commit()
    return batch_row(batch)


@router.delete("/{batch_id}")
async def delete_batch(batch_id: int, performed_by: str | None = None, session: AsyncSession = Depends(get_session)):
    batch = await load_batch(session, batch_id, lock=True)
    now = datetime.now(timezone.utc)

    batch.deleted_at = now
    await release_vessel_if_empty(session, batch.vessel_id, batch.id)
    record_event(session, batch.id, "deleted", now, None, performed_by)

    await session.commit()
    logger.info("Deleted batch %s (%s)", batch.id, batch.batch_number)
    return {"ok": True, "id": batch_id}


# --- measurements ---

class MeasurementIn(BaseModel):
    measured_at: datetime | None = None
    specific_gravity: float | None = Field(default=None, ge=0.99, le=1.2)
    abv: float | None = Field(default=None, ge=0, le=20)
    ph: float | None = Field(default=None, ge=2, le=5)
    total_acidity: float | None = Field(default=None, ge=0, le=20)
    temperature_c: float | None = Field(default=None, ge=0, le=40)
    volume: float | None = Field(default=None, ge=0)
    volume_unit: VolumeUnit = "L"
    notes: str | None = Field(default=None, max_length=500)
    taken_by: str | None = Field(default=None, max_length=128)


def _measurement_row(m: BatchMeasurement) -> dict:
    return {
        "id": m.id,
        "batch_id": m.batch_id,
        "measured_at": m.measured_at,
        "specific_gravity": _f(m.specific_gravity),
        "abv": _f(m.abv),
        "ph": _f(m.ph),
        "total_acidity": _f(m.total_acidity),
        "temperature_c": _f(m.temperature_c),
        "volume_liters": _f(m.volume_liters),
        "notes": m.notes,
        "taken_by": m.taken_by,
    }


def _apply_measurement_to_batch(batch: Batch, volume_liters: float | None, abv: float | None) -> None:
    # A measured volume is a recorded-volume correction; it does not touch the ledger,
    # so any difference shows up as a discrepancy until adjusted.
    if volume_liters is not None:
        batch.current_volume_liters = volume_liters
    if abv is not None:
        batch.actual_abv = abv


@router.post("/{batch_id}/measurements")
async def add_measurement(batch_id: int, req: MeasurementIn, session: AsyncSession = Depends(get_session)):
    batch = await load_batch(session, batch_id, lock=True)
    measured_at = req.measured_at or datetime.now(timezone.utc)
    volume = None if req.volume is None else round(to_liters(req.volume, req.volume_unit), 3)

    m = BatchMeasurement(
        batch_id=batch_id,
        measured_at=measured_at,
        specific_gravity=req.specific_gravity,
        abv=req.abv,
        ph=req.ph,
        total_acidity=req.total_acidity,
        temperature_c=req.temperature_c,
        volume_liters=volume,
        notes=req.notes,
        taken_by=req.taken_by,
    )
    session.add(m)
    _apply_measurement_to_batch(batch, volume, req.abv)
    record_event(session, batch_id, "measurement", measured_at, req.notes, req.taken_by)

    await session.commit()
    return _measurement_row(m)


@router.patch("/{batch_id}/measurements/{measurement_id}")
async def update_measurement(
    batch_id: int, measurement_id: int, req: MeasurementIn, session: AsyncSession = Depends(get_session),
):
    batch = await load_batch(session, batch_id, lock=True)
    m = (await session.execute(
        select(BatchMeasurement).where(
            BatchMeasurement.id == measurement_id,
            BatchMeasurement.batch_id == batch_id,
            BatchMeasurement.deleted_at.is_(None),
        )
    )).scalar_one_or_none()
    if not m:
        raise HTTPException(status_code=404, detail="Measurement not found")

    fields = req.model_dump(exclude_unset=True)
    for key in ("measured_at", "specific_gravity", "abv", "ph", "total_acidity", "temperature_c", "notes", "taken_by"):
        if key in fields:
            setattr(m, key, fields[key])

    volume = None
    if "volume" in fields and req.volume is not None:
        volume = round(to_liters(req.volume, req.volume_unit), 3)
        m.volume_liters = volume
    _apply_measurement_to_batch(batch, volume, fields.get("abv"))

    await session.commit()
    return _measurement_row(m)


@router.delete("/{batch_id}/measurements/{measurement_id}")
async def delete_measurement(batch_id: int, measurement_id: int, session: AsyncSession = Depends(get_session)):
    await load_batch(session, batch_id)
    m = (await session.execute(
        select(BatchMeasurement).where(
            BatchMeasurement.id == measurement_id,
            BatchMeasurement.batch_id == batch_id,
            BatchMeasurement.deleted_at.is_(None),
        )
    )).scalar_one_or_none()
    if not m:
        raise HTTPException(status_code=404, detail="Measurement not found")

    m.deleted_at = datetime.now(timezone.utc)
    await session.commit()
    return {"ok": True, "id": measurement_id}


# --- additives ---

class AdditiveIn(BaseModel):
    additive_type: str = Field(min_length=1, max_length=64)
    additive_name: str = Field(min_length=1, max_length=128)
    amount: Amount
    unit: str = Field(min_length=1, max_length=16)
    added_at: datetime | None = None
    notes: str | None = Field(default=None, max_length=500)
    added_by: str | None = Field(default=None, max_length=128)


class AdditiveUpdate(BaseModel):
    additive_type: str | None = Field(default=None, min_length=1, max_length=64)
    additive_name: str | None = Field(default=None, min_length=1, max_length=128)
    amount: Amount | None = None
    unit: str | None = Field(default=None, min_length=1, max_length=16)
    added_at: datetime | None = None
    notes: str | None = Field(default=None, max_length=500)


def _additive_row(a: BatchAdditive) -> dict:
    return {
        "id": a.id,
        "batch_id": a.batch_id,
        "additive_type": a.additive_type,
        "additive_name": a.additive_name,
        "amount": float(a.amount),
        "unit": a.unit,
        "added_at": a.added_at,
        "notes": a.notes,
        "added_by": a.added_by,
    }


async def _load_additive(session: AsyncSession, batch_id: int, additive_id: int) -> BatchAdditive:
    a = (await session.execute(
        select(BatchAdditive).where(
            BatchAdditive.id == additive_id,
            BatchAdditive.batch_id == batch_id,
            BatchAdditive.deleted_at.is_(None),
        )
    )).scalar_one_or_none()
    if not a:
        raise HTTPException(status_code=404, detail="Additive not found")
    return a


@router.post("/{batch_id}/additives")
async def add_additive(batch_id: int, req: AdditiveIn, session: AsyncSession = Depends(get_session)):
    await load_batch(session, batch_id)
    added_at = req.added_at or datetime.now(timezone.utc)

    a = BatchAdditive(
        batch_id=batch_id,
        additive_type=req.additive_type,
        additive_name=req.additive_name,
        amount=float(req.amount),
        unit=req.unit,
        added_at=added_at,
        notes=req.notes,
        added_by=req.added_by,
    )
    session.add(a)
    record_event(session, batch_id, "additive", added_at,
                 f"{req.additive_name} {float(req.amount):g} {req.unit}", req.added_by)
    await session.commit()
    return _additive_row(a)


@router.patch("/{batch_id}/additives/{additive_id}")
async def update_additive(
    batch_id: int, additive_id: int, req: AdditiveUpdate, session: AsyncSession = Depends(get_session),
):
    await load_batch(session, batch_id)
    a = await _load_additive(session, batch_id, additive_id)

    fields = req.model_dump(exclude_unset=True, exclude_none=True)
    if "amount" in fields:
        fields["amount"] = float(fields["amount"])
    for key, value in fields.items():
        setattr(a, key, value)

    await session.commit()
    return _additive_row(a)


@router.delete("/{batch_id}/additives/{additive_id}")
async def delete_additive(batch_id: int, additive_id: int, session: AsyncSession = Depends(get_session)):
    await load_batch(session, batch_id)
    a = await _load_additive(session, batch_id, additive_id)
    a.deleted_at = datetime.now(timezone.utc)
    await session.commit()
    return {"ok": True, "id": additive_id}


# --- activity, lineage, volume trace ---

@router.get("/{batch_id}/activity")
async def get_activity(batch_id: int, limit: int = 200, session: AsyncSession = Depends(get_session)):
    await load_batch(session, batch_id)

    rows = (await session.execute(
        select(BatchEvent)
        .where(BatchEvent.batch_id == batch_id)
        .order_by(BatchEvent.performed_at.desc(), BatchEvent.id.desc())
        .limit(limit)
    )).scalars().all()

    return [{
        "id": r.id,
        "event_type": r.event_type,
        "reason": r.reason,
        "performed_by": r.performed_by,
        "performed_at": r.performed_at,
    } for r in rows]


async def _batch_briefs(session: AsyncSession, ids: list[int]) -> list[dict]:
    if not ids:
        return []
    rows = (await session.execute(select(Batch).where(Batch.id.in_(ids)).order_by(Batch.id))).scalars().all()
    return [{
        "id": b.id,
        "batch_number": b.batch_number,
        "name": b.name,
        "product_type": b.product_type,
        "deleted": b.deleted_at is not None,
    } for b in rows]


@router.get("/{batch_id}/lineage")
async def get_lineage(batch_id: int, session: AsyncSession = Depends(get_session)):
    batch = await load_batch(session, batch_id)

    transfers = (await session.execute(
        select(BatchTransfer)
        .where(or_(BatchTransfer.source_batch_id == batch_id, BatchTransfer.destination_batch_id == batch_id))
        .order_by(BatchTransfer.transferred_at.asc(), BatchTransfer.id.asc())
    )).scalars().all()

    parent = await _batch_briefs(session, [batch.parent_batch_id] if batch.parent_batch_id else [])
    children = (await session.execute(
        select(Batch.id).where(Batch.parent_batch_id == batch_id)
    )).scalars().all()

    return {
        "batch_id": batch_id,
        "parent": parent[0] if parent else None,
        "children": await _batch_briefs(session, list(children)),
        "sources": await _batch_briefs(session, await backward_trace(session, batch_id)),
        "derived": await _batch_briefs(session, await forward_trace(session, batch_id)),
        "transfers": [{
            "id": t.id,
            "source_batch_id": t.source_batch_id,
            "destination_batch_id": t.destination_batch_id,
            "volume_liters": float(t.volume_liters),
            "transferred_at": t.transferred_at,
        } for t in transfers],
    }


@router.get("/{batch_id}/volume-trace")
async def get_volume_trace(batch_id: int, session: AsyncSession = Depends(get_session)):
    batch = await load_batch(session, batch_id)

    movements = (await session.execute(
        select(VolumeMovement)
        .where(VolumeMovement.batch_id == batch_id)
        .order_by(VolumeMovement.moved_at.asc(), VolumeMovement.id.asc())
    )).scalars().all()

    entries: List[dict] = []
    running = inflow = outflow = losses = 0.0
    for mv in movements:
        vol = float(mv.volume_liters)
        running += movement_sign(mv.move_type) * vol
        if mv.move_type in INFLOW_TYPES:
            inflow += vol
        elif mv.move_type in OUTFLOW_TYPES:
            outflow += vol
        elif mv.move_type.startswith(LOSS_PREFIX):
            losses += vol
        entries.append({
            "id": mv.id,
            "move_type": mv.move_type,
            "volume_liters": vol,
            "direction": "in" if movement_sign(mv.move_type) > 0 else "out",
            "moved_at": mv.moved_at,
            "from_vessel_id": mv.from_vessel_id,
            "to_vessel_id": mv.to_vessel_id,
            "related_batch_id": mv.related_batch_id,
            "notes": mv.notes,
            "running_volume_liters": round(running, 3),
        })

    recorded = float(batch.current_volume_liters)
    return {
        "batch": batch_row(batch),
        "entries": entries,
        "summary": {
            "initial_volume_liters": float(batch.initial_volume_liters),
            "inflow_liters": round(inflow, 3),
            "outflow_liters": round(outflow, 3),
            "losses_liters": round(losses, 3),
            "ledger_volume_liters": round(running, 3),
            "recorded_volume_liters": recorded,
            "discrepancy_liters": round(recorded - running, 3),
        },
    }
