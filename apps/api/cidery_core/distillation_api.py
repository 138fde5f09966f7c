from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, condecimal
from sqlalchemy import select, func, case
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from cidery_core.db import get_session
from cidery_core.models import Batch, BatchMeasurement, BatchTransfer, DistillationRecord, Vessel
from cidery_core.batches_api import load_batch, record_event, batch_row
from cidery_core.batch_codes import next_batch_number
from cidery_core.blending import (
    calculate_blend_abv, proof_gallons, estimate_spirit_sg, blend_specific_gravity, blend_ph,
    is_typical_pommeau_abv, POMMEAU_ABV_RANGE,
)
from cidery_core.cellar_api import batch_abv
from cidery_core.ttb import safe_ratio
from cidery_core.units import to_liters
from cidery_core.volumes import TOLERANCE, apply_movement, has_volume

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/distillation", tags=["distillation"])

Volume = condecimal(gt=0, max_digits=12, decimal_places=3)
VolumeUnit = Literal["L", "gal"]
Abv = condecimal(ge=0, le=100, max_digits=5, decimal_places=2)

DEFAULT_BRANDY_ABV = 60.0
BRANDY_PH = 6.5


def distillation_loss_percent(proof_gallons_sent: float | None, proof_gallons_received: float | None) -> float | None:
    if not proof_gallons_sent or proof_gallons_received is None:
        return None
    return round(safe_ratio(proof_gallons_sent - proof_gallons_received, proof_gallons_sent) * 100, 2)


def _f(v):
    return None if v is None else float(v)


def _row(r: DistillationRecord, source: Batch | None = None, result: Batch | None = None) -> dict:
    out = {
        "id": r.id,
        "source_batch_id": r.source_batch_id,
        "source_volume_liters": float(r.source_volume_liters),
        "source_abv": _f(r.source_abv),
        "proof_gallons_sent": _f(r.proof_gallons_sent),
        "deducted": r.deducted,
        "distillery_name": r.distillery_name,
        "distillery_permit_number": r.distillery_permit_number,
        "tib_outbound_number": r.tib_outbound_number,
        "sent_at": r.sent_at,
        "status": r.status,
        "result_batch_id": r.result_batch_id,
        "received_volume_liters": _f(r.received_volume_liters),
        "received_abv": _f(r.received_abv),
        "proof_gallons_received": _f(r.proof_gallons_received),
        "received_at": r.received_at,
        "notes": r.notes,
        "loss_percent": distillation_loss_percent(_f(r.proof_gallons_sent), _f(r.proof_gallons_received)),
    }
    if source is not None:
        out["source_batch_name"] = source.custom_name or source.name
        out["source_batch_number"] = source.batch_number
    if result is not None:
        out["result_batch_name"] = result.custom_name or result.name
    return out


def _join_notes(*notes: str | None) -> str | None:
    joined = "\n".join(n for n in notes if n)
    return joined or None


# --- send ---

class SendBatch(BaseModel):
    batch_id: int
    volume: Volume
    volume_unit: VolumeUnit = "L"
    source_abv: Abv | None = None


class SendRequest(BaseModel):
    batches: List[SendBatch] = Field(min_length=1)
    distillery_name: str = Field(min_length=1, max_length=255)
    distillery_permit_number: str | None = Field(default=None, max_length=64)
    tib_outbound_number: str | None = Field(default=None, max_length=64)
    sent_at: datetime | None = None
    deduct_volume: bool = True
    notes: str | None = Field(default=None, max_length=500)
    performed_by: str | None = Field(default=None, max_length=128)


@router.post("/send")
async def send_to_distillery(req: SendRequest, session: AsyncSession = Depends(get_session)):
    sent_at = req.sent_at or datetime.now(timezone.utc)

    requested: dict[int, float] = {}
    for b in req.batches:
        requested[b.batch_id] = requested.get(b.batch_id, 0.0) + to_liters(float(b.volume), b.volume_unit)

    batches: dict[int, Batch] = {}
    for batch_id, total in requested.items():
        batch = await load_batch(session, batch_id, lock=True)
        current = float(batch.current_volume_liters)
        if not has_volume(batch, total):
            raise HTTPException(
                status_code=400,
                detail=f'Batch "{batch.name}" only has {current:.1f}L available, cannot send {total:.1f}L',
            )
        batches[batch_id] = batch

    records = []
    for b in req.batches:
        batch = batches[b.batch_id]
        volume = round(to_liters(float(b.volume), b.volume_unit), 3)
        abv = float(b.source_abv) if b.source_abv is not None else batch_abv(batch)

        rec = DistillationRecord(
            source_batch_id=batch.id,
            source_volume_liters=volume,
            source_abv=abv,
            proof_gallons_sent=None if abv is None else round(proof_gallons(volume, abv), 3),
            deducted=req.deduct_volume,
            distillery_name=req.distillery_name.strip(),
            distillery_permit_number=req.distillery_permit_number,
            tib_outbound_number=req.tib_outbound_number,
            sent_at=sent_at,
            status="sent",
            notes=req.notes,
        )
        session.add(rec)

        if req.deduct_volume:
            apply_movement(session, batch, "distilled", volume, sent_at,
                           from_vessel_id=batch.vessel_id, notes=f"Sent to {rec.distillery_name}")
        record_event(session, batch.id, "sent_to_distillery", sent_at,
                     f"{volume:.1f}L to {rec.distillery_name}", req.performed_by)
        records.append((rec, batch))

    await session.commit()
    logger.info("Sent %d batches to distillery %s", len(records), req.distillery_name)
    return [_row(r, b) for r, b in records]


# --- receive ---

class ReceiveRequest(BaseModel):
    received_volume: Volume
    received_volume_unit: VolumeUnit = "L"
    received_abv: Abv
    received_at: datetime | None = None
    destination_vessel_id: int | None = None
    brandy_batch_id: int | None = None
    brandy_batch_name: str | None = Field(default=None, max_length=255)
    notes: str | None = Field(default=None, max_length=500)
    performed_by: str | None = Field(default=None, max_length=128)


class ReceiveMultipleRequest(ReceiveRequest):
    distillation_record_ids: List[int] = Field(min_length=1)


async def _brandy_destination(
    session: AsyncSession,
    req: ReceiveRequest,
    default_name: str,
    volume: float,
    abv: float,
    received_at: datetime,
) -> Batch:
    """Create the brandy batch for a return, or add the return to an existing one."""
    if req.brandy_batch_id is not None:
        brandy = await load_batch(session, req.brandy_batch_id, lock=True)
        if brandy.product_type != "brandy":
            raise HTTPException(status_code=400, detail=f"Batch {brandy.name} is not a brandy batch")
        components = [(float(brandy.current_volume_liters), batch_abv(brandy) or 0.0), (volume, abv)]
        apply_movement(session, brandy, "receipt", volume, received_at,
                       to_vessel_id=brandy.vessel_id, notes=req.notes)
        brandy.actual_abv = calculate_blend_abv(components)
        return brandy

    vessel = None
    if req.destination_vessel_id is not None:
        vessel = (await session.execute(
            select(Vessel).where(Vessel.id == req.destination_vessel_id)
        )).scalar_one_or_none()
        if not vessel or not vessel.is_active:
            raise HTTPException(status_code=404, detail="Destination vessel not found")
        if vessel.status != "available":
            raise HTTPException(status_code=400, detail=f"Vessel {vessel.name} is not available ({vessel.status})")

    brandy = Batch(
        batch_number=await next_batch_number(session, "BR", received_at),
        name=req.brandy_batch_name or default_name,
        product_type="brandy",
        status="aging",
        vessel_id=vessel.id if vessel else None,
        initial_volume_liters=volume,
        current_volume_liters=0,
        actual_abv=abv,
        start_date=received_at,
    )
    session.add(brandy)
    await session.flush()
    apply_movement(session, brandy, "receipt", volume, received_at,
                   to_vessel_id=brandy.vessel_id, notes=req.notes)
    if vessel is not None:
        vessel.status = "in_use"
    return brandy


async def _receive(session: AsyncSession, record_ids: list[int], req: ReceiveRequest) -> dict:
    received_at = req.received_at or datetime.now(timezone.utc)

    records = (await session.execute(
        select(DistillationRecord)
        .where(DistillationRecord.id.in_(record_ids))
        .order_by(DistillationRecord.id)
        .with_for_update()
    )).scalars().all()
    if len(records) != len(set(record_ids)):
        raise HTTPException(status_code=404, detail="Distillation record not found")
    for r in records:
        if r.status != "sent":
            raise HTTPException(status_code=400, detail=f"Record {r.id} is already {r.status}")

    volume = round(to_liters(float(req.received_volume), req.received_volume_unit), 3)
    abv = float(req.received_abv)
    pg_received = proof_gallons(volume, abv)

    sources = (await session.execute(
        select(Batch).where(Batch.id.in_([r.source_batch_id for r in records]))
    )).scalars().all()
    names = [b.custom_name or b.batch_number for b in sources][:3]
    default_name = f"Brandy-{'-'.join(names)}-{received_at.year}"

    brandy = await _brandy_destination(session, req, default_name, volume, abv, received_at)

    # A combined run is apportioned to each record by the volume it sent.
    total_sent = sum(float(r.source_volume_liters) for r in records)
    for r in records:
        share = safe_ratio(float(r.source_volume_liters), total_sent)
        r.status = "received"
        r.result_batch_id = brandy.id
        r.received_volume_liters = round(volume * share, 3)
        r.received_abv = abv
        r.proof_gallons_received = round(pg_received * share, 3)
        r.received_at = received_at
        r.notes = _join_notes(r.notes, req.notes)

    record_event(session, brandy.id, "brandy_received", received_at,
                 f"{volume:.1f}L at {abv:g}% from {records[0].distillery_name}", req.performed_by)

    await session.commit()
    logger.info("Received %.3fL brandy into batch %s for %d records", volume, brandy.id, len(records))

    return {
        "brandy_batch": batch_row(brandy),
        "proof_gallons_received": round(pg_received, 3),
        "records_updated": len(records),
        "distillation_records": [_row(r) for r in records],
    }


@router.post("/{record_id}/receive")
async def receive_brandy(record_id: int, req: ReceiveRequest, session: AsyncSession = Depends(get_session)):
    return await _receive(session, [record_id], req)


@router.post("/receive-multiple")
async def receive_multiple(req: ReceiveMultipleRequest, session: AsyncSession = Depends(get_session)):
    return await _receive(session, req.distillation_record_ids, req)


# --- cancel ---

class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)
    performed_by: str | None = Field(default=None, max_length=128)


@router.post("/{record_id}/cancel")
async def cancel(record_id: int, req: CancelRequest, session: AsyncSession = Depends(get_session)):
    rec = (await session.execute(
        select(DistillationRecord).where(DistillationRecord.id == record_id).with_for_update()
    )).scalar_one_or_none()
    if not rec:
        raise HTTPException(status_code=404, detail="Distillation record not found")
    if rec.status != "sent":
        raise HTTPException(status_code=400, detail=f"Cannot cancel a {rec.status} distillation record")

    now = datetime.now(timezone.utc)
    restored = 0.0
    if rec.deducted:
        source = (await session.execute(
            select(Batch).where(Batch.id == rec.source_batch_id).with_for_update()
        )).scalar_one_or_none()
        if source is not None and source.deleted_at is None:
            restored = float(rec.source_volume_liters)
            apply_movement(session, source, "adjustment_in", restored, now,
                           to_vessel_id=source.vessel_id, notes=f"Distillation {rec.id} cancelled")
            record_event(session, source.id, "distillation_cancelled", now, req.reason, req.performed_by)

    rec.status = "cancelled"
    rec.notes = _join_notes(rec.notes, req.reason and f"Cancelled: {req.reason}")

    await session.commit()
    logger.info("Cancelled distillation record %s (restored %.3fL)", rec.id, restored)
    return _row(rec) | {"restored_volume_liters": restored}


# --- reads ---

@router.get("")
async def list_records(
    status: Literal["sent", "received", "cancelled"] | None = None,
    batch_id: int | None = None,
    limit: int = 50,
    session: AsyncSession = Depends(get_session),
):
    source = aliased(Batch)
    result = aliased(Batch)
    q = (
        select(DistillationRecord, source, result)
        .join(source, source.id == DistillationRecord.source_batch_id)
        .outerjoin(result, result.id == DistillationRecord.result_batch_id)
        .order_by(DistillationRecord.sent_at.desc(), DistillationRecord.id.desc())
        .limit(min(max(limit, 1), 200))
    )
    if status is not None:
        q = q.where(DistillationRecord.status == status)
    if batch_id is not None:
        q = q.where(DistillationRecord.source_batch_id == batch_id)
    rows = (await session.execute(q)).all()
    return [_row(r, s, res) for r, s, res in rows]


@router.get("/stats")
async def get_stats(session: AsyncSession = Depends(get_session)):
    row = (await session.execute(
        select(
            func.count(DistillationRecord.id),
            func.coalesce(func.sum(case((DistillationRecord.status == "sent", 1), else_=0)), 0),
            func.coalesce(func.sum(case((DistillationRecord.status == "received", 1), else_=0)), 0),
            func.coalesce(func.sum(case(
                (DistillationRecord.status != "cancelled", DistillationRecord.source_volume_liters), else_=0
            )), 0),
            func.coalesce(func.sum(DistillationRecord.received_volume_liters), 0),
            func.coalesce(func.sum(case(
                (DistillationRecord.status != "cancelled", DistillationRecord.proof_gallons_sent), else_=0
            )), 0),
            func.coalesce(func.sum(DistillationRecord.proof_gallons_received), 0),
        )
    )).one()

    return {
        "total_records": int(row[0]),
        "pending_records": int(row[1]),
        "completed_records": int(row[2]),
        "total_liters_sent": round(float(row[3]), 3),
        "total_liters_received": round(float(row[4]), 3),
        "total_proof_gallons_sent": round(float(row[5]), 3),
        "total_proof_gallons_received": round(float(row[6]), 3),
    }


@router.get("/distilleries")
async def list_distilleries(session: AsyncSession = Depends(get_session)):
    rows = (await session.execute(
        select(DistillationRecord.distillery_name, DistillationRecord.distillery_permit_number)
        .distinct()
        .order_by(DistillationRecord.distillery_name)
    )).all()
    return [{"name": name, "permit_number": permit} for name, permit in rows]


@router.get("/{record_id}")
async def get_record(record_id: int, session: AsyncSession = Depends(get_session)):
    rec = (await session.execute(
        select(DistillationRecord).where(DistillationRecord.id == record_id)
    )).scalar_one_or_none()
    if not rec:
        raise HTTPException(status_code=404, detail="Distillation record not found")
    source = (await session.execute(select(Batch).where(Batch.id == rec.source_batch_id))).scalar_one_or_none()
    result = None
    if rec.result_batch_id is not None:
        result = (await session.execute(select(Batch).where(Batch.id == rec.result_batch_id))).scalar_one_or_none()
    return _row(rec, source, result)


# --- pommeau ---

class PommeauRequest(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    cider_batch_id: int | None = None
    juice_volume: Volume
    juice_volume_unit: VolumeUnit = "L"
    juice_abv: Abv = 0
    deduct_from_cider: bool = True
    brandy_batch_id: int
    brandy_volume: Volume
    brandy_volume_unit: VolumeUnit = "L"
    deduct_from_brandy: bool = True
    destination_vessel_id: int | None = None
    blend_date: datetime | None = None
    notes: str | None = Field(default=None, max_length=500)
    performed_by: str | None = Field(default=None, max_length=128)


async def _latest_measured(session: AsyncSession, batch_id: int, column) -> float | None:
    value = (await session.execute(
        select(column)
        .where(BatchMeasurement.batch_id == batch_id, BatchMeasurement.deleted_at.is_(None), column.is_not(None))
        .order_by(BatchMeasurement.measured_at.desc(), BatchMeasurement.id.desc())
        .limit(1)
    )).scalar_one_or_none()
    return _f(value)


@router.post("/pommeau")
async def create_pommeau(req: PommeauRequest, session: AsyncSession = Depends(get_session)):
    blend_date = req.blend_date or datetime.now(timezone.utc)
    juice_volume = round(to_liters(float(req.juice_volume), req.juice_volume_unit), 3)
    brandy_volume = round(to_liters(float(req.brandy_volume), req.brandy_volume_unit), 3)

    cider = None
    cider_abv = float(req.juice_abv)
    cider_sg = cider_ph = None
    if req.cider_batch_id is not None:
        cider = await load_batch(session, req.cider_batch_id, lock=True)
        if batch_abv(cider) is not None:
            cider_abv = batch_abv(cider)
        cider_sg = await _latest_measured(session, cider.id, BatchMeasurement.specific_gravity)
        cider_ph = await _latest_measured(session, cider.id, BatchMeasurement.ph)
        current = float(cider.current_volume_liters)
        if req.deduct_from_cider and not has_volume(cider, juice_volume):
            raise HTTPException(status_code=400, detail=f"Cider batch only has {current:.1f}L available")

    brandy = await load_batch(session, req.brandy_batch_id, lock=True)
    if brandy.product_type != "brandy":
        raise HTTPException(status_code=400, detail=f"Batch {brandy.name} is not a brandy batch")
    brandy_abv = batch_abv(brandy) if batch_abv(brandy) is not None else DEFAULT_BRANDY_ABV
    current = float(brandy.current_volume_liters)
    if req.deduct_from_brandy and not has_volume(brandy, brandy_volume):
        raise HTTPException(status_code=400, detail=f"Brandy batch only has {current:.1f}L available")

    vessel = None
    if req.destination_vessel_id is not None:
        vessel = (await session.execute(
            select(Vessel).where(Vessel.id == req.destination_vessel_id)
        )).scalar_one_or_none()
        if not vessel or not vessel.is_active:
            raise HTTPException(status_code=404, detail="Destination vessel not found")
        if vessel.status != "available":
            raise HTTPException(status_code=400, detail=f"Vessel {vessel.name} is not available ({vessel.status})")

    total_volume = juice_volume + brandy_volume
    resulting_abv = calculate_blend_abv([(juice_volume, cider_abv), (brandy_volume, brandy_abv)])
    brandy_sg = estimate_spirit_sg(brandy_abv)
    blended_sg = None if cider_sg is None else blend_specific_gravity(
        [(juice_volume, cider_sg), (brandy_volume, brandy_sg)]
    )
    blended_ph = None if cider_ph is None else blend_ph([(juice_volume, cider_ph), (brandy_volume, BRANDY_PH)])

    batch_number = await next_batch_number(session, "POM", blend_date)
    pommeau = Batch(
        batch_number=batch_number,
        name=req.name or f"Pommeau {batch_number}",
        product_type="pommeau",
        status="aging",
        vessel_id=vessel.id if vessel else None,
        initial_volume_liters=round(total_volume, 3),
        current_volume_liters=0,
        estimated_abv=resulting_abv,
        start_date=blend_date,
    )
    session.add(pommeau)
    await session.flush()

    # Volume drawn from a tracked batch is a blend; anything else enters as production.
    for source, volume, deduct in ((cider, juice_volume, req.deduct_from_cider), (brandy, brandy_volume, req.deduct_from_brandy)):
        if source is not None and deduct:
            apply_movement(session, source, "blend_out", volume, blend_date,
                           from_vessel_id=source.vessel_id, to_vessel_id=pommeau.vessel_id,
                           related_batch_id=pommeau.id)
            apply_movement(session, pommeau, "blend_in", volume, blend_date,
                           from_vessel_id=source.vessel_id, to_vessel_id=pommeau.vessel_id,
                           related_batch_id=source.id)
            record_event(session, source.id, "blended_out", blend_date,
                         f"{volume:.1f}L into pommeau {pommeau.batch_number}", req.performed_by)
        else:
            apply_movement(session, pommeau, "production", volume, blend_date,
                           to_vessel_id=pommeau.vessel_id,
                           related_batch_id=source.id if source is not None else None)
        if source is not None:
            session.add(BatchTransfer(
                source_batch_id=source.id,
                destination_batch_id=pommeau.id,
                volume_liters=volume,
                transferred_at=blend_date,
            ))

    if blended_sg is not None or blended_ph is not None:
        session.add(BatchMeasurement(
            batch_id=pommeau.id,
            measured_at=blend_date,
            specific_gravity=blended_sg,
            ph=blended_ph,
            notes=(
                f"Estimated from blend components. Cider: {juice_volume:g}L, "
                f"Brandy: {brandy_volume:g}L ({brandy_abv:g}% ABV, est. SG {brandy_sg:.2f})"
            ),
        ))

    if vessel is not None:
        vessel.status = "in_use"
    record_event(session, pommeau.id, "created", blend_date,
                 _join_notes(f"Pommeau blend {juice_volume:.1f}L cider + {brandy_volume:.1f}L brandy", req.notes),
                 req.performed_by)

    await session.commit()
    logger.info("Created pommeau batch %s at %.2f%% ABV", pommeau.id, resulting_abv)

    warning = None
    if not is_typical_pommeau_abv(resulting_abv):
        low, high = POMMEAU_ABV_RANGE
        warning = f"Resulting ABV {resulting_abv:.2f}% is outside the typical pommeau range ({low:g}-{high:g}%)"

    return {
        "pommeau_batch": batch_row(pommeau, vessel),
        "resulting_abv": resulting_abv,
        "cider_abv": cider_abv,
        "brandy_abv": brandy_abv,
        "blended_specific_gravity": blended_sg,
        "blended_ph": blended_ph,
        "abv_warning": warning,
    }
