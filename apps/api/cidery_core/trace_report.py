"""TTB batch trace report and Form 5120.17 data.

The report is built from the volume ledger: every period flow comes from
volume_movements, the ending balance is the recorded batch volume rolled
back by movements after the period, and per-batch discrepancies compare the
recorded volume with the full ledger.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cidery_core.config import settings
from cidery_core.models import (
    PRODUCT_TYPES, Batch, Vessel, as_utc, DistillationRecord, TTBOpeningBalance, VolumeMovement,
)
from cidery_core.volumes import TOLERANCE, movement_sums, net_volume, ttb_category
from cidery_core import ttb

logger = logging.getLogger(__name__)

FLOW_FIELDS = ("production", "receipts", "blended_in", "packaged", "distilled", "blended_out", "losses")
ABV_REQUIRED_TYPES = ("brandy", "pommeau")


def day_start(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


def period_bounds(period_start: date, period_end: date) -> tuple[datetime, datetime]:
    """[start, end) datetimes for an inclusive date range."""
    if period_end < period_start:
        raise ValueError("period_end must be on or after period_start")
    return day_start(period_start), day_start(period_end + timedelta(days=1))


def _flows(sums_by_type: dict[str, float]) -> dict[str, float]:
    out = {f: 0.0 for f in FLOW_FIELDS}
    for move_type, total in sums_by_type.items():
        out[ttb_category(move_type)] += total
    return out


def _batch_row(batch: Batch, vessel: Vessel | None) -> dict:
    return {
        "id": batch.id,
        "batch_number": batch.batch_number,
        "name": batch.name,
        "custom_name": batch.custom_name,
        "product_type": batch.product_type,
        "status": batch.status,
        "vessel_id": batch.vessel_id,
        "vessel_name": vessel.name if vessel else None,
        "start_date": batch.start_date,
        "initial_volume_liters": float(batch.initial_volume_liters or 0),
        "current_volume_liters": float(batch.current_volume_liters or 0),
        "actual_abv": None if batch.actual_abv is None else float(batch.actual_abv),
        "estimated_abv": None if batch.estimated_abv is None else float(batch.estimated_abv),
    }


async def _opening_balances(
    session: AsyncSession,
    start_dt: datetime,
    period_start: date,
    batch_types: dict[int, str],
    before_start: dict[int, dict[str, float]],
) -> dict[str, float]:
    openings = {
        r.product_type: r
        for r in (await session.execute(select(TTBOpeningBalance))).scalars().all()
    }

    out = {}
    for product_type in PRODUCT_TYPES:
        type_batches = [bid for bid, pt in batch_types.items() if pt == product_type]
        configured = openings.get(product_type)

        if configured is not None and configured.balance_date <= period_start:
            # Configured balance plus what moved between its date and the period start.
            since = await movement_sums(
                session, start=day_start(configured.balance_date), end=start_dt, batch_ids=type_batches,
            )
            out[product_type] = float(configured.volume_liters) + sum(net_volume(since[b]) for b in since)
        else:
            out[product_type] = sum(net_volume(before_start.get(b, {})) for b in type_batches)
    return out


async def build_batch_trace_report(
    session: AsyncSession,
    period_start: date,
    period_end: date,
    tolerance: float | None = None,
) -> dict:
    if tolerance is None:
        tolerance = settings.ttb_balance_tolerance_liters
    start_dt, end_dt = period_bounds(period_start, period_end)

    rows = (await session.execute(
        select(Batch, Vessel)
        .outerjoin(Vessel, Vessel.id == Batch.vessel_id)
        .where(Batch.deleted_at.is_(None))
        .order_by(Batch.start_date.asc(), Batch.id.asc())
    )).all()

    batch_ids = [b.id for b, _ in rows]
    batch_types = {b.id: b.product_type for b, _ in rows}

    before_start = await movement_sums(session, end=start_dt, batch_ids=batch_ids)
    in_period = await movement_sums(session, start=start_dt, end=end_dt, batch_ids=batch_ids)
    after_end = await movement_sums(session, start=end_dt, batch_ids=batch_ids)
    all_time = await movement_sums(session, batch_ids=batch_ids)

    type_openings = await _opening_balances(session, start_dt, period_start, batch_types, before_start)

    totals = {pt: {f: 0.0 for f in FLOW_FIELDS} | {"ending": 0.0, "batch_count": 0} for pt in PRODUCT_TYPES}
    batches_by_type: dict[str, list[dict]] = {pt: [] for pt in PRODUCT_TYPES}
    discrepancies: list[dict] = []

    for batch, vessel in rows:
        recorded = float(batch.current_volume_liters or 0)
        opening = net_volume(before_start.get(batch.id, {}))
        flows = _flows(in_period.get(batch.id, {}))
        ending = recorded - net_volume(after_end.get(batch.id, {}))
        ledger = net_volume(all_time.get(batch.id, {}))

        active = (
            bool(in_period.get(batch.id))
            or abs(opening) > TOLERANCE
            or abs(ending) > TOLERANCE
        )
        if not active and not (start_dt <= as_utc(batch.start_date) < end_dt):
            continue

        t = totals[batch.product_type]
        t["batch_count"] += 1
        t["ending"] += ending
        for f in FLOW_FIELDS:
            t[f] += flows[f]

        row = _batch_row(batch, vessel)
        row.update({
            "opening_liters": round(opening, 3),
            "ending_liters": round(ending, 3),
            "ledger_volume_liters": round(ledger, 3),
            "period_flows": {f: round(v, 3) for f, v in flows.items()},
        })
        batches_by_type[batch.product_type].append(row)

        discrepancies.extend(_batch_discrepancies(batch, recorded, ledger, ending, tolerance))

    summaries = {
        pt: ttb.build_summary(
            pt,
            batch_count=totals[pt]["batch_count"],
            opening_balance=type_openings[pt],
            ending_balance=totals[pt]["ending"],
            tolerance=tolerance,
            **{f: totals[pt][f] for f in FLOW_FIELDS},
        )
        for pt in PRODUCT_TYPES
    }

    combined = {
        "cider_perry": ttb.combine_summaries(summaries["cider"], summaries["perry"], "cider_perry"),
        "other": ttb.combine_summaries(
            summaries["juice"], summaries["other"], "other", ttb_tax_class="Other (Juice and Other)",
        ),
    }

    distillery = await _distillery_operations(session, start_dt, end_dt)

    logger.info(
        "Batch trace report %s..%s: %d batches, %d discrepancies",
        period_start, period_end, sum(len(v) for v in batches_by_type.values()), len(discrepancies),
    )

    return {
        "period": {"start": period_start.isoformat(), "end": period_end.isoformat()},
        "tolerance_liters": tolerance,
        "summaries": {pt: s.as_dict() for pt, s in summaries.items()},
        "combined": {k: s.as_dict() for k, s in combined.items()},
        "grand_summary": ttb.grand_summary(summaries.values()),
        "distillery_operations": distillery,
        "batches_by_type": batches_by_type,
        "discrepancies": discrepancies,
    }


def _batch_discrepancies(batch: Batch, recorded: float, ledger: float, ending: float, tolerance: float) -> list[dict]:
    base = {
        "batch_id": batch.id,
        "batch_name": batch.custom_name or batch.name,
        "batch_number": batch.batch_number,
        "product_type": batch.product_type,
    }
    out = []

    diff = recorded - ledger
    if abs(diff) > tolerance:
        out.append(base | {
            "type": "volume_mismatch",
            "description": f"Recorded volume {recorded:.1f}L differs from ledger volume {ledger:.1f}L",
            "volume_affected_liters": round(abs(diff), 3),
            "suggested_action": "Record a volume adjustment to reconcile the batch with its ledger",
        })

    if ledger < -tolerance:
        out.append(base | {
            "type": "negative_ledger_volume",
            "description": f"Ledger removes {abs(ledger):.1f}L more than was ever added",
            "volume_affected_liters": round(abs(ledger), 3),
            "suggested_action": "Check for a missing production or receipt entry",
        })

    if (
        batch.product_type in ABV_REQUIRED_TYPES
        and batch.actual_abv is None
        and batch.estimated_abv is None
        and ending > tolerance
    ):
        out.append(base | {
            "type": "missing_abv",
            "description": f"{batch.product_type.capitalize()} batch has no ABV recorded",
            "volume_affected_liters": round(ending, 3),
            "suggested_action": "Record an ABV measurement for this batch",
        })
    return out


async def _distillery_operations(session: AsyncSession, start_dt: datetime, end_dt: datetime) -> dict:
    records = (await session.execute(
        select(DistillationRecord, Batch)
        .join(Batch, Batch.id == DistillationRecord.source_batch_id)
        .where(DistillationRecord.status != "cancelled")
        .where(DistillationRecord.sent_at < end_dt)
        .order_by(DistillationRecord.sent_at.asc(), DistillationRecord.id.asc())
    )).all()

    sent_liters = 0.0
    received_liters = 0.0
    operations = []
    pending = []

    for rec, source in records:
        sent_at = as_utc(rec.sent_at)
        if sent_at >= start_dt:
            sent_liters += float(rec.source_volume_liters)
            operations.append({
                "type": "sent",
                "distillation_id": rec.id,
                "batch_id": source.id,
                "batch_name": source.custom_name or source.name,
                "volume_liters": float(rec.source_volume_liters),
                "distillery_name": rec.distillery_name,
                "date": rec.sent_at,
            })

        if rec.received_at is not None:
            received_at = as_utc(rec.received_at)
            if start_dt <= received_at < end_dt:
                received_liters += float(rec.received_volume_liters or 0)
                operations.append({
                    "type": "received",
                    "distillation_id": rec.id,
                    "batch_id": rec.result_batch_id,
                    "batch_name": source.custom_name or source.name,
                    "volume_liters": float(rec.received_volume_liters or 0),
                    "distillery_name": rec.distillery_name,
                    "date": rec.received_at,
                })
            if received_at < end_dt:
                continue

        pending.append({
            "distillation_id": rec.id,
            "batch_id": source.id,
            "batch_name": source.custom_name or source.name,
            "volume_liters": float(rec.source_volume_liters),
            "distillery_name": rec.distillery_name,
            "sent_at": rec.sent_at,
        })

    return {
        "cider_sent_liters": round(sent_liters, 3),
        "brandy_received_liters": round(received_liters, 3),
        "operations": operations,
        "pending_returns": pending,
    }


# --- Form 5120.17 -------------------------------------------------------

async def _packaged_wine_liters(session: AsyncSession, start_dt: datetime, end_dt: datetime) -> float:
    rows = (await session.execute(
        select(VolumeMovement.volume_liters)
        .join(Batch, Batch.id == VolumeMovement.batch_id)
        .where(Batch.deleted_at.is_(None))
        .where(Batch.product_type.in_(ttb.WINE_PRODUCT_TYPES))
        .where(VolumeMovement.move_type == "packaged")
        .where(VolumeMovement.moved_at >= start_dt, VolumeMovement.moved_at < end_dt)
    )).scalars().all()
    return sum(float(v) for v in rows)


async def build_form_5120_17(
    session: AsyncSession,
    period_type: str,
    year: int,
    period_number: int | None = None,
) -> dict:
    period_start, period_end = ttb.period_date_range(period_type, year, period_number)
    report = await build_batch_trace_report(session, period_start, period_end)
    summaries = report["summaries"]

    def wine_total(field: str) -> float:
        return sum(summaries[pt][field] for pt in ttb.WINE_PRODUCT_TYPES)

    opening = wine_total("opening_balance_liters")
    production = wine_total("production_liters")
    receipts = wine_total("receipts_liters")
    # Blends between wine types cancel out; spirits or juice blended into wine count as production.
    net_blend = wine_total("blended_in_liters") - wine_total("blended_out_liters")
    packaged = wine_total("packaged_liters")
    distilled = wine_total("distilled_liters")
    losses = wine_total("losses_liters")
    ending = wine_total("ending_balance_liters")

    g = ttb.liters_to_wine_gallons
    produced_gal = g(production + max(net_blend, 0.0))
    removed_by_blend_gal = g(max(-net_blend, 0.0))
    tax_paid_gal = g(packaged)
    distilled_gal = g(distilled)
    losses_gal = g(losses)
    other_removals_gal = distilled_gal + losses_gal + removed_by_blend_gal

    ytd_start = day_start(date(year, 1, 1))
    prior_ytd_gal = g(await _packaged_wine_liters(session, ytd_start, day_start(period_start)))

    reconciliation = ttb.calculate_reconciliation(
        beginning_inventory=g(opening),
        wine_produced=produced_gal,
        receipts=g(receipts),
        tax_paid_removals=tax_paid_gal,
        other_removals=other_removals_gal,
        ending_inventory=g(ending),
    )

    brandy = summaries["brandy"]
    r = ttb.round_gallons

    return {
        "reporting_period": {
            "type": period_type,
            "year": year,
            "period_number": period_number,
            "start": period_start.isoformat(),
            "end": period_end.isoformat(),
            "label": ttb.format_period_label(period_type, year, period_number),
        },
        "beginning_inventory": {"gallons": r(g(opening))},
        "wine_produced": {"gallons": r(produced_gal)},
        "receipts": {"gallons": r(g(receipts))},
        "tax_paid_removals": {"gallons": r(tax_paid_gal)},
        "other_removals": {
            "distilled": r(distilled_gal),
            "losses": r(losses_gal),
            "used_in_blends": r(removed_by_blend_gal),
            "total": r(other_removals_gal),
        },
        "ending_inventory": {"gallons": r(g(ending))},
        "reconciliation": reconciliation,
        "tax_summary": ttb.calculate_hard_cider_tax(r(tax_paid_gal), prior_ytd_gal),
        "brandy": {
            "opening_gallons": r(g(brandy["opening_balance_liters"])),
            "received_gallons": r(g(brandy["receipts_liters"] + brandy["production_liters"])),
            "used_in_blends_gallons": r(g(brandy["blended_out_liters"])),
            "losses_gallons": r(g(brandy["losses_liters"])),
            "ending_gallons": r(g(brandy["ending_balance_liters"])),
        },
        "distillery_operations": {
            "cider_sent_gallons": r(g(report["distillery_operations"]["cider_sent_liters"])),
            "brandy_received_gallons": r(g(report["distillery_operations"]["brandy_received_liters"])),
            "pending_returns": len(report["distillery_operations"]["pending_returns"]),
        },
    }
