from __future__ import annotations

from datetime import datetime, timezone
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from cidery_core.models import CodeCounter

async def next_batch_number(session: AsyncSession, prefix: str = "BATCH", at: datetime | None = None) -> str:
    if at is None:
        at = datetime.now(timezone.utc)
    d = at.date()

    insert = sqlite_insert if session.get_bind().dialect.name == "sqlite" else pg_insert
    await session.execute(
        insert(CodeCounter)
        .values(code_date=d, prefix=prefix, last_seq=0)
        .on_conflict_do_nothing(index_elements=["code_date", "prefix"])
    )

    counter = (await session.execute(
        select(CodeCounter)
        .where(CodeCounter.code_date == d, CodeCounter.prefix == prefix)
        .with_for_update()
    )).scalar_one()

    counter.last_seq = counter.last_seq + 1
    await session.flush()

    return f"{prefix}-{d.strftime('%Y%m%d')}-{counter.last_seq:04d}"
