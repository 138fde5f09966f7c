from __future__ import annotations

from collections import defaultdict
from datetime import datetime

from sqlalchemy import select, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from cidery_core.models import Batch, VolumeMovement

TOLERANCE = 0.001

INFLOW_TYPES = ("production", "receipt", "blend_in", "adjustment_in")
OUTFLOW_TYPES = ("packaged", "distilled", "blend_out", "adjustment_out")
LOSS_PREFIX = "loss:"
LOSS_REASONS = ("racking", "filtering", "packaging", "other")

# Ledger move types grouped into the columns of the TTB balance equation.
TTB_CATEGORIES = {
    "production": "production",
    "receipt": "receipts",
    "adjustment_in": "receipts",
    "blend_in": "blended_in",
    "packaged": "packaged",
    "distilled": "distilled",
    "blend_out": "blended_out",
    "adjustment_out": "losses",
}


def loss_type(reason: str) -> str:
    if reason not in LOSS_REASONS:
        raise ValueError(f"Unknown loss reason: {reason}")
    return f"{LOSS_PREFIX}{reason}"


def movement_sign(move_type: str) -> int:
    if move_type in INFLOW_TYPES:
        return 1
    if move_type in OUTFLOW_TYPES or move_type.startswith(LOSS_PREFIX):
        return -1
    raise ValueError(f"Unknown move type: {move_type}")


def ttb_category(move_type: str) -> str:
    if move_type.startswith(LOSS_PREFIX):
        return "losses"
    return TTB_CATEGORIES[move_type]


def net_volume(sums_by_type: dict[str, float]) -> float:
    return sum(movement_sign(t) * v for t, v in sums_by_type.items())


async def ledger_volume(session: AsyncSession, batch_id: int) -> float:
    """
    Ledger volume for a batch = inflows - outflows - losses.

    Loss move types are stored like "loss:racking" (prefix match).
    VolumeMovement.volume_liters is always positive.
    """
    in_case = case(
        (VolumeMovement.move_type.in_(INFLOW_TYPES), VolumeMovement.volume_liters),
        else_=0,
    )
    out_case = case(
        (VolumeMovement.move_type.in_(OUTFLOW_TYPES), VolumeMovement.volume_liters),
        else_=0,
    )
    loss_case = case(
        (VolumeMovement.move_type.like(f"{LOSS_PREFIX}%"), VolumeMovement.volume_liters),
        else_=0,
    )

    stmt = select(
        func.coalesce(func.sum(in_case - out_case - loss_case), 0)
    ).where(VolumeMovement.batch_id == batch_id)

    res = await session.execute(stmt)
    return float(res.scalar_one())


async def movement_sums(
    session: AsyncSession,
    start: datetime | None = None,
    end: datetime | None = None,
    batch_ids: list[int] | None = None,
) -> dict[int, dict[str, float]]:
    """Per batch, per move type totals for moved_at in [start, end)."""
    stmt = (
        select(
            VolumeMovement.batch_id,
            VolumeMovement.move_type,
            func.coalesce(func.sum(VolumeMovement.volume_liters), 0),
        )
        .group_by(VolumeMovement.batch_id, VolumeMovement.move_type)
    )
    if start is not None:
        stmt = stmt.where(VolumeMovement.moved_at >= start)
    if end is not None:
        stmt = stmt.where(VolumeMovement.moved_at < end)
    if batch_ids is not None:
        stmt = stmt.where(VolumeMovement.batch_id.in_(batch_ids))

    out: dict[int, dict[str, float]] = defaultdict(dict)
    for batch_id, move_type, total in (await session.execute(stmt)).all():
        out[batch_id][move_type] = float(total)
    return out


def apply_movement(
    session: AsyncSession,
    batch: Batch,
    move_type: str,
    volume_liters: float,
    moved_at: datetime,
    *,
    from_vessel_id: int | None = None,
    to_vessel_id: int | None = None,
    related_batch_id: int | None = None,
    notes: str | None = None,
) -> VolumeMovement:
    """Record a ledger movement and keep the batch's recorded volume in step."""
    volume_liters = float(volume_liters)
    if volume_liters <= 0:
        raise ValueError("Movement volume must be positive")

    new_volume = float(batch.current_volume_liters or 0) + movement_sign(move_type) * volume_liters
    if new_volume < -TOLERANCE:
        raise ValueError(
            f"Batch {batch.name} only has {float(batch.current_volume_liters or 0):.1f}L, "
            f"cannot remove {volume_liters:.1f}L"
        )
    batch.current_volume_liters = round(max(new_volume, 0.0), 3)

    mv = VolumeMovement(
        batch_id=batch.id,
        move_type=move_type,
        volume_liters=round(volume_liters, 3),
        moved_at=moved_at,
        from_vessel_id=from_vessel_id,
        to_vessel_id=to_vessel_id,
        related_batch_id=related_batch_id,
        notes=notes,
    )
    session.add(mv)
    return mv


def has_volume(batch: Batch, volume_liters: float) -> bool:
    return float(volume_liters) - float(batch.current_volume_liters or 0) <= TOLERANCE
