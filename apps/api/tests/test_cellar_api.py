async def test_rack_moves_batch_and_records_loss(client, make_vessel, make_batch):
    a = await make_vessel("Tank A")
    b = await make_vessel("Tank B")
    batch = await make_batch("Racked", volume=500, vessel_id=a["id"])

    r = await client.post("/cellar/rack", json={
        "batch_id": batch["id"], "destination_vessel_id": b["id"], "volume_after": 488,
    })
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["loss_liters"] == 12
    assert body["volume_after_liters"] == 488

    assert (await client.get(f"/vessels/{a['id']}")).json()["status"] == "available"
    assert (await client.get(f"/vessels/{b['id']}")).json()["status"] == "in_use"

    trace = (await client.get(f"/batches/{batch['id']}/volume-trace")).json()
    assert trace["entries"][-1]["move_type"] == "loss:racking"
    assert trace["summary"]["losses_liters"] == 12
    assert trace["summary"]["discrepancy_liters"] == 0


async def test_rack_rejects_growth_and_busy_vessel(client, make_vessel, make_batch):
    a = await make_vessel("Tank A")
    b = await make_vessel("Tank B")
    batch = await make_batch("One", volume=100, vessel_id=a["id"])
    await make_batch("Two", volume=100, vessel_id=b["id"])

    r = await client.post("/cellar/rack", json={"batch_id": batch["id"], "destination_vessel_id": b["id"]})
    assert r.status_code == 400

    c = await make_vessel("Tank C")
    r = await client.post("/cellar/rack", json={
        "batch_id": batch["id"], "destination_vessel_id": c["id"], "volume_after": 101,
    })
    assert r.status_code == 400


async def test_filter_records_filtering_loss(client, make_batch):
    batch = await make_batch("Filtered", volume=200)
    r = await client.post("/cellar/filter", json={"batch_id": batch["id"], "volume_after": 195})
    assert r.status_code == 200
    assert r.json()["loss_liters"] == 5

    r = await client.post("/cellar/filter", json={"batch_id": batch["id"], "volume_before": 195, "volume_after": 196})
    assert r.status_code == 400


async def test_adjust_volume_closes_discrepancy(client, make_batch):
    batch = await make_batch("Adjusted", volume=300)
    # measured volume drifts away from the ledger
    await client.post(f"/batches/{batch['id']}/measurements", json={"volume": 290})

    r = await client.post("/cellar/adjust-volume", json={
        "batch_id": batch["id"], "new_volume": 292, "reason": "Dip stick reading",
    })
    assert r.status_code == 200
    body = r.json()
    assert body["previous_volume_liters"] == 290
    assert body["ledger_volume_liters"] == 300
    assert body["adjustment_liters"] == -8

    trace = (await client.get(f"/batches/{batch['id']}/volume-trace")).json()
    assert trace["entries"][-1]["move_type"] == "adjustment_out"
    assert trace["summary"]["discrepancy_liters"] == 0


async def test_adjust_volume_requires_reason(client, make_batch):
    batch = await make_batch("Adjusted")
    r = await client.post("/cellar/adjust-volume", json={"batch_id": batch["id"], "new_volume": 10})
    assert r.status_code == 422


async def test_blend_moves_volume_and_recomputes_abv(client, make_batch):
    target = await make_batch("Target", volume=100, estimated_abv=6)
    src = await make_batch("Source", volume=100, estimated_abv=8)

    r = await client.post("/cellar/blend", json={
        "target_batch_id": target["id"], "sources": [{"batch_id": src["id"], "volume": 100}],
    })
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["new_abv"] == 7.0
    assert body["target"]["current_volume_liters"] == 200

    emptied = (await client.get(f"/batches/{src['id']}")).json()
    assert emptied["current_volume_liters"] == 0
    assert emptied["status"] == "completed"

    lineage = (await client.get(f"/batches/{target['id']}/lineage")).json()
    assert [s["id"] for s in lineage["sources"]] == [src["id"]]
    derived = (await client.get(f"/batches/{src['id']}/lineage")).json()
    assert [d["id"] for d in derived["derived"]] == [target["id"]]


async def test_blend_keeps_abv_when_a_component_is_unknown(client, make_batch):
    target = await make_batch("Target", volume=100, estimated_abv=6)
    src = await make_batch("Source", volume=100)

    r = await client.post("/cellar/blend", json={
        "target_batch_id": target["id"], "sources": [{"batch_id": src["id"], "volume": 50}],
    })
    assert r.json()["new_abv"] is None
    assert r.json()["target"]["estimated_abv"] == 6


async def test_blend_rejections(client, make_batch):
    target = await make_batch("Target", volume=100)
    src = await make_batch("Source", volume=10)

    r = await client.post("/cellar/blend", json={
        "target_batch_id": target["id"], "sources": [{"batch_id": target["id"], "volume": 5}],
    })
    assert r.status_code == 400

    r = await client.post("/cellar/blend", json={
        "target_batch_id": target["id"], "sources": [{"batch_id": src["id"], "volume": 11}],
    })
    assert r.status_code == 400
    assert "insufficient volume" in r.json()["detail"]
