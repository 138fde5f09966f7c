from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, condecimal
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cidery_core.db import get_session
from cidery_core.models import Batch, BatchTransfer, Vessel, VolumeMovement
from cidery_core.batches_api import load_batch, record_event, release_vessel_if_empty, batch_row
from cidery_core.blending import calculate_blend_abv
from cidery_core.units import to_liters
from cidery_core.volumes import TOLERANCE, apply_movement, has_volume, ledger_volume, loss_type

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cellar", tags=["cellar"])

Volume = condecimal(gt=0, max_digits=12, decimal_places=3)
VolumeOrZero = condecimal(ge=0, max_digits=12, decimal_places=3)
VolumeUnit = Literal["L", "gal"]


def batch_abv(batch: Batch) -> float | None:
    if batch.actual_abv is not None:
        return float(batch.actual_abv)
    if batch.estimated_abv is not None:
        return float(batch.estimated_abv)
    return None


async def _load_vessel(session: AsyncSession, vessel_id: int) -> Vessel:
    vessel = (await session.execute(select(Vessel).where(Vessel.id == vessel_id))).scalar_one_or_none()
    if not vessel or not vessel.is_active:
        raise HTTPException(status_code=400, detail="Invalid vessel_id")
    return vessel


def _check_capacity(vessel: Vessel, volume_liters: float) -> None:
    if vessel.capacity_liters is not None and volume_liters - float(vessel.capacity_liters) > TOLERANCE:
        raise HTTPException(
            status_code=400,
            detail=f"Volume {volume_liters:.1f}L exceeds vessel {vessel.name} capacity {float(vessel.capacity_liters):.1f}L",
        )


# --- racking ---

class RackRequest(BaseModel):
    batch_id: int
    destination_vessel_id: int
    volume_after: VolumeOrZero | None = None
    volume_unit: VolumeUnit = "L"
    performed_at: datetime | None = None
    notes: str | None = Field(default=None, max_length=500)
    performed_by: str | None = Field(default=None, max_length=128)


@router.post("/rack")
async def rack(req: RackRequest, session: AsyncSession = Depends(get_session)):
    performed_at = req.performed_at or datetime.now(timezone.utc)
    batch = await load_batch(session, req.batch_id, lock=True)
    current = float(batch.current_volume_liters)

    dest = await _load_vessel(session, req.destination_vessel_id)
    same_vessel = dest.id == batch.vessel_id
    if not same_vessel and dest.status != "available":
        raise HTTPException(status_code=400, detail=f"Vessel {dest.name} is not available ({dest.status})")

    volume_after = current if req.volume_after is None else round(to_liters(float(req.volume_after), req.volume_unit), 3)
    if not has_volume(batch, volume_after):
        raise HTTPException(
            status_code=400,
            detail=f"Volume after racking ({volume_after:.1f}L) cannot exceed current volume ({current:.1f}L)",
        )
    _check_capacity(dest, volume_after)

    loss = round(current - volume_after, 3)
    source_vessel_id = batch.vessel_id
    movement_id = None
    if loss > TOLERANCE:
        mv = apply_movement(
            session, batch, loss_type("racking"), loss, performed_at,
            from_vessel_id=source_vessel_id, to_vessel_id=dest.id, notes=req.notes,
        )
        await session.flush()
        movement_id = mv.id

    batch.vessel_id = dest.id
    dest.status = "in_use"
    if not same_vessel:
        await release_vessel_if_empty(session, source_vessel_id, batch.id)

    record_event(
        session, batch.id, "racked", performed_at,
        req.notes or f"Racked to {dest.name}, loss {loss:.1f}L", req.performed_by,
    )
    await session.commit()
    logger.info("Racked batch %s to vessel %s (loss %.3fL)", batch.id, dest.id, loss)

    return {
        "batch_id": batch.id,
        "from_vessel_id": source_vessel_id,
        "to_vessel_id": dest.id,
        "volume_before_liters": current,
        "volume_after_liters": float(batch.current_volume_liters),
        "loss_liters": max(loss, 0.0),
        "loss_movement_id": movement_id,
    }


# --- filtering ---

class FilterRequest(BaseModel):
    batch_id: int
    filter_type: str = Field(default="plate", max_length=64)
    volume_before: Volume | None = None
    volume_after: VolumeOrZero
    volume_unit: VolumeUnit = "L"
    performed_at: datetime | None = None
    notes: str | None = Field(default=None, max_length=500)
    performed_by: str | None = Field(default=None, max_length=128)


@router.post("/filter")
async def filter_batch(req: FilterRequest, session: AsyncSession = Depends(get_session)):
    performed_at = req.performed_at or datetime.now(timezone.utc)
    batch = await load_batch(session, req.batch_id, lock=True)
    current = float(batch.current_volume_liters)

    before = current if req.volume_before is None else round(to_liters(float(req.volume_before), req.volume_unit), 3)
    after = round(to_liters(float(req.volume_after), req.volume_unit), 3)

    if not has_volume(batch, before):
        raise HTTPException(
            status_code=400,
            detail=f"Volume before filtering ({before:.1f}L) exceeds current volume ({current:.1f}L)",
        )
    if after - before > TOLERANCE:
        raise HTTPException(status_code=400, detail="Volume after filtering must be less than volume before")

    loss = round(before - after, 3)
    movement_id = None
    if loss > TOLERANCE:
        mv = apply_movement(
            session, batch, loss_type("filtering"), loss, performed_at,
            from_vessel_id=batch.vessel_id, notes=req.notes,
        )
        await session.flush()
        movement_id = mv.id

    record_event(
        session, batch.id, "filtered", performed_at,
        req.notes or f"{req.filter_type} filter, loss {loss:.1f}L", req.performed_by,
    )
    await session.commit()
    logger.info("Filtered batch %s (loss %.3fL)", batch.id, loss)

    return {
        "batch_id": batch.id,
        "filter_type": req.filter_type,
        "volume_before_liters": before,
        "volume_after_liters": float(batch.current_volume_liters),
        "loss_liters": max(loss, 0.0),
        "loss_movement_id": movement_id,
    }


# --- volume adjustment ---

class AdjustVolumeRequest(BaseModel):
    batch_id: int
    new_volume: VolumeOrZero
    volume_unit: VolumeUnit = "L"
    reason: str = Field(min_length=1, max_length=500)
    performed_at: datetime | None = None
    performed_by: str | None = Field(default=None, max_length=128)


@router.post("/adjust-volume")
async def adjust_volume(req: AdjustVolumeRequest, session: AsyncSession = Depends(get_session)):
    performed_at = req.performed_at or datetime.now(timezone.utc)
    batch = await load_batch(session, req.batch_id, lock=True)

    new_volume = round(to_liters(float(req.new_volume), req.volume_unit), 3)
    previous = float(batch.current_volume_liters)
    ledger = await ledger_volume(session, batch.id)

    # Adjust against the ledger, not the recorded volume, so a stale
    # recorded volume is reconciled in the same step.
    diff = round(new_volume - ledger, 3)
    movement_id = None
    if abs(diff) > TOLERANCE:
        mv = VolumeMovement(
            batch_id=batch.id,
            move_type="adjustment_in" if diff > 0 else "adjustment_out",
            volume_liters=abs(diff),
            moved_at=performed_at,
            from_vessel_id=batch.vessel_id if diff < 0 else None,
            to_vessel_id=batch.vessel_id if diff > 0 else None,
            notes=req.reason,
        )
        session.add(mv)
        await session.flush()
        movement_id = mv.id

    batch.current_volume_liters = new_volume
    record_event(
        session, batch.id, "volume_adjusted", performed_at,
        f"{previous:.1f}L -> {new_volume:.1f}L: {req.reason}", req.performed_by,
    )
    await session.commit()
    logger.info("Adjusted batch %s volume %.3fL -> %.3fL (ledger %.3fL)", batch.id, previous, new_volume, ledger)

    return {
        "batch_id": batch.id,
        "previous_volume_liters": previous,
        "ledger_volume_liters": round(ledger, 3),
        "new_volume_liters": new_volume,
        "adjustment_liters": diff,
        "movement_id": movement_id,
    }


# --- blending ---

class BlendSource(BaseModel):
    batch_id: int
    volume: Volume
    volume_unit: VolumeUnit = "L"


class BlendRequest(BaseModel):
    target_batch_id: int
    sources: List[BlendSource] = Field(min_length=1)
    performed_at: datetime | None = None
    notes: str | None = Field(default=None, max_length=500)
    performed_by: str | None = Field(default=None, max_length=128)


@router.post("/blend")
async def blend(req: BlendRequest, session: AsyncSession = Depends(get_session)):
    performed_at = req.performed_at or datetime.now(timezone.utc)

    by_batch: dict[int, float] = {}
    for s in req.sources:
        by_batch[s.batch_id] = by_batch.get(s.batch_id, 0.0) + to_liters(float(s.volume), s.volume_unit)
    if req.target_batch_id in by_batch:
        raise HTTPException(status_code=400, detail="A batch cannot be blended into itself")

    target = await load_batch(session, req.target_batch_id, lock=True)
    sources = (await session.execute(
        select(Batch)
        .where(Batch.id.in_(list(by_batch.keys())), Batch.deleted_at.is_(None))
        .order_by(Batch.id)
        .with_for_update()
    )).scalars().all()
    source_map = {b.id: b for b in sources}
    if len(source_map) != len(by_batch):
        raise HTTPException(status_code=400, detail="One or more source batch_id invalid")

    for batch_id, vol in by_batch.items():
        src = source_map[batch_id]
        avail = float(src.current_volume_liters)
        if not has_volume(src, vol):
            raise HTTPException(
                status_code=400,
                detail=f"Source batch {src.name}: insufficient volume. requested={vol:.3f} available={avail:.3f}",
            )

    target_before = float(target.current_volume_liters)
    total_after = target_before + sum(by_batch.values())
    if target.vessel_id is not None:
        vessel = (await session.execute(select(Vessel).where(Vessel.id == target.vessel_id))).scalar_one_or_none()
        if vessel:
            _check_capacity(vessel, total_after)

    components = [(target_before, batch_abv(target))] + [
        (vol, batch_abv(source_map[bid])) for bid, vol in by_batch.items()
    ]
    new_abv = None
    if all(abv is not None for vol, abv in components if vol > 0):
        new_abv = calculate_blend_abv(components)
    else:
        logger.warning("Blend into batch %s has components without ABV; ABV not recalculated", target.id)

    transfer_ids = []
    for batch_id, vol in by_batch.items():
        src = source_map[batch_id]
        apply_movement(
            session, src, "blend_out", vol, performed_at,
            from_vessel_id=src.vessel_id, to_vessel_id=target.vessel_id,
            related_batch_id=target.id, notes=req.notes,
        )
        apply_movement(
            session, target, "blend_in", vol, performed_at,
            from_vessel_id=src.vessel_id, to_vessel_id=target.vessel_id,
            related_batch_id=src.id, notes=req.notes,
        )
        t = BatchTransfer(
            source_batch_id=src.id,
            destination_batch_id=target.id,
            volume_liters=round(vol, 3),
            transferred_at=performed_at,
        )
        session.add(t)
        await session.flush()
        transfer_ids.append(t.id)

        record_event(session, src.id, "blended_out", performed_at,
                     f"{vol:.1f}L into {target.name}", req.performed_by)

        # An emptied source batch is finished and frees its vessel.
        if float(src.current_volume_liters) <= TOLERANCE:
            src.status = "completed"
            src.end_date = performed_at
            await release_vessel_if_empty(session, src.vessel_id, src.id)

    if new_abv is not None:
        target.actual_abv = new_abv
    record_event(session, target.id, "blended_in", performed_at,
                 req.notes or f"{len(by_batch)} source batches, {sum(by_batch.values()):.1f}L", req.performed_by)

    await session.commit()
    logger.info("Blended %d sources into batch %s", len(by_batch), target.id)

    return {
        "target": batch_row(target),
        "blended_volume_liters": round(sum(by_batch.values()), 3),
        "new_abv": new_abv,
        "transfer_ids": transfer_ids,
    }
