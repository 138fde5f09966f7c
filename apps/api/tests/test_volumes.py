from datetime import datetime, timezone

import pytest

from cidery_core.batch_codes import next_batch_number
from cidery_core.models import Batch
from cidery_core.volumes import (
    apply_movement, has_volume, ledger_volume, loss_type, movement_sign, movement_sums, net_volume, ttb_category,
)

AT = datetime(2025, 3, 5, 12, 0, tzinfo=timezone.utc)


def test_movement_signs():
    assert movement_sign("production") == 1
    assert movement_sign("adjustment_in") == 1
    assert movement_sign("packaged") == -1
    assert movement_sign("loss:racking") == -1
    with pytest.raises(ValueError):
        movement_sign("evaporated")


def test_loss_type_validates_reason():
    assert loss_type("filtering") == "loss:filtering"
    with pytest.raises(ValueError):
        loss_type("spilled")


def test_ttb_categories():
    assert ttb_category("adjustment_in") == "receipts"
    assert ttb_category("adjustment_out") == "losses"
    assert ttb_category("loss:packaging") == "losses"
    assert ttb_category("blend_in") == "blended_in"


def test_net_volume():
    assert net_volume({"production": 100, "packaged": 30, "loss:other": 5}) == 65


async def _batch(session, volume=0):
    b = Batch(batch_number=await next_batch_number(session, "T", AT), name="Test", product_type="cider",
              current_volume_liters=volume, start_date=AT)
    session.add(b)
    await session.flush()
    return b


async def test_apply_movement_tracks_recorded_volume(session):
    b = await _batch(session)
    apply_movement(session, b, "production", 100, AT)
    apply_movement(session, b, "loss:racking", 2.5, AT)
    await session.flush()

    assert float(b.current_volume_liters) == 97.5
    assert await ledger_volume(session, b.id) == pytest.approx(97.5)


async def test_apply_movement_refuses_to_go_negative(session):
    b = await _batch(session)
    apply_movement(session, b, "production", 10, AT)
    with pytest.raises(ValueError):
        apply_movement(session, b, "packaged", 11, AT)
    with pytest.raises(ValueError):
        apply_movement(session, b, "packaged", 0, AT)


async def test_movement_sums_by_window(session):
    b = await _batch(session)
    apply_movement(session, b, "production", 100, AT)
    apply_movement(session, b, "packaged", 40, datetime(2025, 4, 2, tzinfo=timezone.utc))
    await session.flush()

    before_april = await movement_sums(session, end=datetime(2025, 4, 1, tzinfo=timezone.utc), batch_ids=[b.id])
    assert before_april[b.id] == {"production": 100.0}

    everything = await movement_sums(session, batch_ids=[b.id])
    assert net_volume(everything[b.id]) == 60


async def test_batch_numbers_count_per_day_and_prefix(session):
    assert await next_batch_number(session, "BATCH", AT) == "BATCH-20250305-0001"
    assert await next_batch_number(session, "BATCH", AT) == "BATCH-20250305-0002"
    assert await next_batch_number(session, "POM", AT) == "POM-20250305-0001"


@pytest.mark.parametrize("requested,ok", [(50, True), (50.0005, True), (50.01, False), (0, True)])
def test_has_volume_allows_rounding_slack(requested, ok):
    assert has_volume(Batch(current_volume_liters=50), requested) is ok
