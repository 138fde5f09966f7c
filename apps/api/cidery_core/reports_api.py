from __future__ import annotations

import logging
from datetime import date
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cidery_core.db import get_session
from cidery_core.exports import vendor_purchase_csv, vendor_purchase_pdf
from cidery_core.models import BaseFruitPurchase, BaseFruitPurchaseItem, FruitVariety, Vendor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reports", tags=["reports"])


async def build_vendor_purchase_report(session: AsyncSession, start_date: date, end_date: date) -> dict:
    """Base-fruit purchases in [start_date, end_date] grouped by vendor, vendors sorted by name."""
    if end_date < start_date:
        raise ValueError("end_date must be on or after start_date")

    rows = (await session.execute(
        select(BaseFruitPurchase, BaseFruitPurchaseItem, Vendor, FruitVariety)
        .join(BaseFruitPurchaseItem, BaseFruitPurchaseItem.purchase_id == BaseFruitPurchase.id)
        .join(Vendor, Vendor.id == BaseFruitPurchase.vendor_id)
        .join(FruitVariety, FruitVariety.id == BaseFruitPurchaseItem.variety_id)
        .where(BaseFruitPurchase.deleted_at.is_(None))
        .where(BaseFruitPurchase.purchase_date >= start_date, BaseFruitPurchase.purchase_date <= end_date)
        .order_by(BaseFruitPurchase.purchase_date.desc(), BaseFruitPurchase.id, BaseFruitPurchaseItem.id)
    )).all()

    vendors: dict[int, dict] = {}
    purchase_ids = set()
    for p, item, vendor, variety in rows:
        purchase_ids.add(p.id)
        v = vendors.setdefault(vendor.id, {
            "vendor_id": vendor.id,
            "vendor_name": vendor.name,
            "items": [],
            "total_kg": 0.0,
            "total_cost": 0.0,
        })
        cost = None if item.total_cost is None else float(item.total_cost)
        v["items"].append({
            "purchase_id": p.id,
            "purchase_date": p.purchase_date,
            "invoice_number": p.invoice_number,
            "variety_name": variety.name,
            "harvest_date": item.harvest_date,
            "quantity": float(item.quantity),
            "unit": item.unit,
            "quantity_kg": float(item.quantity_kg),
            "price_per_unit": None if item.price_per_unit is None else float(item.price_per_unit),
            "total_cost": cost,
            "notes": item.notes,
        })
        v["total_kg"] += float(item.quantity_kg)
        v["total_cost"] += cost or 0.0

    out = sorted(vendors.values(), key=lambda v: v["vendor_name"].lower())
    for v in out:
        v["total_kg"] = round(v["total_kg"], 3)
        v["total_cost"] = round(v["total_cost"], 2)

    return {
        "period": {"start": start_date.isoformat(), "end": end_date.isoformat()},
        "vendors": out,
        "vendor_count": len(out),
        "purchase_count": len(purchase_ids),
        "grand_total_kg": round(sum(v["total_kg"] for v in out), 3),
        "grand_total_cost": round(sum(v["total_cost"] for v in out), 2),
    }


@router.get("/vendor-apple-purchases")
async def vendor_apple_purchases(
    start_date: date,
    end_date: date,
    format: Literal["json", "csv", "pdf"] = "json",
    session: AsyncSession = Depends(get_session),
):
    try:
        report = await build_vendor_purchase_report(session, start_date, end_date)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info("Vendor purchase report %s..%s: %d vendors", start_date, end_date, report["vendor_count"])
    if format == "json":
        return report

    filename = f"vendor-apple-purchases-{start_date.isoformat()}-{end_date.isoformat()}"
    if format == "pdf":
        return Response(
            content=vendor_purchase_pdf(report),
            media_type="application/pdf",
            headers={"Content-Disposition": f'attachment; filename="{filename}.pdf"'},
        )
    return Response(
        content=vendor_purchase_csv(report),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}.csv"'},
    )
