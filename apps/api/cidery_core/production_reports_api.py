from __future__ import annotations

import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cidery_core.db import get_session
from cidery_core.models import FruitVariety, PressRun, PressRunLoad
from cidery_core.press_api import extraction_rate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/production-reports", tags=["production-reports"])


@router.get("/yield-analysis")
async def yield_analysis(start_date: date, end_date: date, session: AsyncSession = Depends(get_session)):
    if end_date < start_date:
        raise HTTPException(status_code=400, detail="end_date must be on or after start_date")

    runs = (await session.execute(
        select(PressRun)
        .where(PressRun.date_completed >= start_date, PressRun.date_completed <= end_date)
        .order_by(PressRun.date_completed.asc(), PressRun.id.asc())
    )).scalars().all()

    loads = (await session.execute(
        select(PressRunLoad, FruitVariety)
        .join(FruitVariety, FruitVariety.id == PressRunLoad.variety_id)
        .join(PressRun, PressRun.id == PressRunLoad.press_run_id)
        .where(PressRun.date_completed >= start_date, PressRun.date_completed <= end_date)
    )).all()

    by_variety: dict[int, dict] = {}
    for ld, v in loads:
        row = by_variety.setdefault(v.id, {
            "variety_id": v.id,
            "variety_name": v.name,
            "fruit_type": v.fruit_type,
            "fruit_kg": 0.0,
            "juice_liters": 0.0,
            "load_count": 0,
        })
        row["fruit_kg"] += float(ld.fruit_kg)
        row["juice_liters"] += float(ld.juice_liters)
        row["load_count"] += 1

    varieties = sorted(by_variety.values(), key=lambda r: r["variety_name"].lower())
    for row in varieties:
        row["fruit_kg"] = round(row["fruit_kg"], 3)
        row["juice_liters"] = round(row["juice_liters"], 3)
        row["extraction_rate"] = extraction_rate(row["fruit_kg"], row["juice_liters"])

    total_fruit = round(sum(float(r.total_fruit_kg) for r in runs), 3)
    total_juice = round(sum(float(r.total_juice_liters) for r in runs), 3)

    logger.info("Yield analysis %s..%s: %d press runs", start_date, end_date, len(runs))
    return {
        "period": {"start": start_date.isoformat(), "end": end_date.isoformat()},
        "totals": {
            "press_run_count": len(runs),
            "total_fruit_kg": total_fruit,
            "total_juice_liters": total_juice,
            "average_extraction_rate": extraction_rate(total_fruit, total_juice),
        },
        "by_variety": varieties,
        "press_runs": [
            {
                "id": r.id,
                "name": r.name,
                "date_completed": r.date_completed,
                "total_fruit_kg": float(r.total_fruit_kg),
                "total_juice_liters": float(r.total_juice_liters),
                "extraction_rate": extraction_rate(float(r.total_fruit_kg), float(r.total_juice_liters)),
            }
            for r in runs
        ],
    }
