from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

# Blend lineage. batch_transfers holds one edge per blend:
# source_batch_id -> destination_batch_id.

BACKWARD_SQL = text("""
WITH RECURSIVE backward(batch_id, source_batch_id) AS (
    SELECT
        bt.destination_batch_id AS batch_id,
        bt.source_batch_id      AS source_batch_id
    FROM batch_transfers bt
    WHERE bt.destination_batch_id = :batch_id

    UNION

    SELECT
        b.batch_id,
        bt.source_batch_id
    FROM backward b
    JOIN batch_transfers bt
      ON bt.destination_batch_id = b.source_batch_id
)
SELECT DISTINCT source_batch_id FROM backward;
""")

FORWARD_SQL = text("""
WITH RECURSIVE forward(batch_id, derived_batch_id) AS (
    SELECT
        bt.source_batch_id      AS batch_id,
        bt.destination_batch_id AS derived_batch_id
    FROM batch_transfers bt
    WHERE bt.source_batch_id = :batch_id

    UNION

    SELECT
        f.derived_batch_id,
        bt.destination_batch_id
    FROM forward f
    JOIN batch_transfers bt
      ON bt.source_batch_id = f.derived_batch_id
)
SELECT DISTINCT derived_batch_id FROM forward;
""")

async def backward_trace(session: AsyncSession, batch_id: int) -> list[int]:
    res = await session.execute(BACKWARD_SQL, {"batch_id": batch_id})
    return sorted(r[0] for r in res.fetchall() if r[0] != batch_id)

async def forward_trace(session: AsyncSession, batch_id: int) -> list[int]:
    res = await session.execute(FORWARD_SQL, {"batch_id": batch_id})
    return sorted(r[0] for r in res.fetchall() if r[0] != batch_id)
