from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Dict, Literal

from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field, condecimal
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cidery_core.db import get_session
from cidery_core.models import PRODUCT_TYPES, TTBOpeningBalance, TTBPeriodSnapshot
from cidery_core.exports import trace_report_csv, trace_report_pdf
from cidery_core.trace_report import build_batch_trace_report, build_form_5120_17
from cidery_core.ttb import period_date_range
from cidery_core.units import to_liters

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ttb", tags=["ttb"])

PeriodType = Literal["monthly", "quarterly", "annual"]


async def _trace_report(session: AsyncSession, period_start: date, period_end: date) -> dict:
    try:
        return await build_batch_trace_report(session, period_start, period_end)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/batch-trace")
async def batch_trace_report(period_start: date, period_end: date, session: AsyncSession = Depends(get_session)):
    return await _trace_report(session, period_start, period_end)


@router.get("/batch-trace/export")
async def export_batch_trace_report(
    period_start: date,
    period_end: date,
    format: Literal["csv", "pdf"] = "csv",
    session: AsyncSession = Depends(get_session),
):
    report = await _trace_report(session, period_start, period_end)
    filename = f"ttb-batch-trace-{period_start.isoformat()}-{period_end.isoformat()}"
    if format == "pdf":
        return Response(
            content=trace_report_pdf(report),
            media_type="application/pdf",
            headers={"Content-Disposition": f'attachment; filename="{filename}.pdf"'},
        )
    return Response(
        content=trace_report_csv(report),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}.csv"'},
    )


# --- opening balances ---

class OpeningBalancesIn(BaseModel):
    balance_date: date
    balances: Dict[Literal["cider", "perry", "brandy", "pommeau", "juice", "other"],
                   condecimal(ge=0, max_digits=12, decimal_places=3)]
    unit: Literal["L", "gal"] = "L"
    notes: str | None = None


def _balances_out(rows: list[TTBOpeningBalance]) -> dict:
    by_type = {r.product_type: r for r in rows}
    dates = sorted({r.balance_date for r in rows})
    return {
        "balance_date": dates[-1] if dates else None,
        "balances": {pt: float(by_type[pt].volume_liters) if pt in by_type else 0.0 for pt in PRODUCT_TYPES},
        "notes": next((r.notes for r in rows if r.notes), None),
        "configured": bool(rows),
    }


@router.get("/opening-balances")
async def get_opening_balances(session: AsyncSession = Depends(get_session)):
    rows = (await session.execute(select(TTBOpeningBalance))).scalars().all()
    return _balances_out(list(rows))


@router.put("/opening-balances")
async def set_opening_balances(req: OpeningBalancesIn, session: AsyncSession = Depends(get_session)):
    existing = {
        r.product_type: r
        for r in (await session.execute(select(TTBOpeningBalance).with_for_update())).scalars().all()
    }
    now = datetime.now(timezone.utc)

    # One balance date for every product type; types left out are zeroed.
    for pt in PRODUCT_TYPES:
        liters = round(to_liters(float(req.balances.get(pt, 0)), req.unit), 3)
        row = existing.get(pt)
        if row is None:
            row = TTBOpeningBalance(product_type=pt)
            session.add(row)
        row.balance_date = req.balance_date
        row.volume_liters = liters
        row.notes = req.notes
        row.updated_at = now

    await session.commit()
    logger.info("Set TTB opening balances as of %s", req.balance_date)
    rows = (await session.execute(select(TTBOpeningBalance))).scalars().all()
    return _balances_out(list(rows))


# --- Form 5120.17 ---

def _period_args(period_type: str, year: int, period_number: int | None) -> None:
    try:
        period_date_range(period_type, year, period_number)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/form-5120-17")
async def form_5120_17(
    period_type: PeriodType,
    year: int,
    period_number: int | None = None,
    session: AsyncSession = Depends(get_session),
):
    _period_args(period_type, year, period_number)
    return await build_form_5120_17(session, period_type, year, period_number)


# --- period snapshots ---

class SnapshotSave(BaseModel):
    period_type: PeriodType
    year: int = Field(ge=2000, le=2100)
    period_number: int | None = None
    notes: str | None = None


def _snapshot_row(s: TTBPeriodSnapshot, include_data: bool = False) -> dict:
    out = {
        "id": s.id,
        "period_type": s.period_type,
        "period_start": s.period_start,
        "period_end": s.period_end,
        "status": s.status,
        "notes": s.notes,
        "created_at": s.created_at,
        "finalized_at": s.finalized_at,
    }
    if include_data:
        out["data"] = s.data
    return out


@router.post("/snapshots")
async def save_snapshot(req: SnapshotSave, session: AsyncSession = Depends(get_session)):
    _period_args(req.period_type, req.year, req.period_number)
    period_start, period_end = period_date_range(req.period_type, req.year, req.period_number)

    snap = (await session.execute(
        select(TTBPeriodSnapshot)
        .where(TTBPeriodSnapshot.period_type == req.period_type, TTBPeriodSnapshot.period_start == period_start)
        .with_for_update()
    )).scalar_one_or_none()
    if snap is not None and snap.status == "finalized":
        raise HTTPException(status_code=409, detail="Snapshot for this period is finalized and cannot be overwritten")

    data = jsonable_encoder(await build_form_5120_17(session, req.period_type, req.year, req.period_number))
    if snap is None:
        snap = TTBPeriodSnapshot(period_type=req.period_type, period_start=period_start, period_end=period_end)
        session.add(snap)
    snap.data = data
    snap.status = "draft"
    snap.notes = req.notes
    snap.created_at = datetime.now(timezone.utc)

    await session.commit()
    logger.info("Saved draft TTB snapshot %s for %s", snap.id, data["reporting_period"]["label"])
    return _snapshot_row(snap, include_data=True)


@router.get("/snapshots")
async def list_snapshots(
    period_type: PeriodType | None = None,
    year: int | None = None,
    session: AsyncSession = Depends(get_session),
):
    q = select(TTBPeriodSnapshot).order_by(TTBPeriodSnapshot.period_start.desc(), TTBPeriodSnapshot.id.desc())
    if period_type is not None:
        q = q.where(TTBPeriodSnapshot.period_type == period_type)
    if year is not None:
        q = q.where(TTBPeriodSnapshot.period_start >= date(year, 1, 1), TTBPeriodSnapshot.period_start <= date(year, 12, 31))
    rows = (await session.execute(q)).scalars().all()
    return [_snapshot_row(s) for s in rows]


@router.get("/snapshots/{snapshot_id}")
async def get_snapshot(snapshot_id: int, session: AsyncSession = Depends(get_session)):
    snap = (await session.execute(
        select(TTBPeriodSnapshot).where(TTBPeriodSnapshot.id == snapshot_id)
    )).scalar_one_or_none()
    if not snap:
        raise HTTPException(status_code=404, detail="Snapshot not found")
    return _snapshot_row(snap, include_data=True)


@router.post("/snapshots/{snapshot_id}/finalize")
async def finalize_snapshot(snapshot_id: int, session: AsyncSession = Depends(get_session)):
    snap = (await session.execute(
        select(TTBPeriodSnapshot).where(TTBPeriodSnapshot.id == snapshot_id).with_for_update()
    )).scalar_one_or_none()
    if not snap:
        raise HTTPException(status_code=404, detail="Snapshot not found")
    if snap.status == "finalized":
        raise HTTPException(status_code=409, detail="Snapshot already finalized")

    snap.status = "finalized"
    snap.finalized_at = datetime.now(timezone.utc)
    await session.commit()
    logger.info("Finalized TTB snapshot %s", snap.id)
    return _snapshot_row(snap)
