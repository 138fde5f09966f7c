import pytest


async def _send(client, batch_id, volume, **extra):
    r = await client.post("/distillation/send", json={
        "batches": [{"batch_id": batch_id, "volume": volume}],
        "distillery_name": "Copper Still Co",
        "sent_at": "2025-03-10T09:00:00Z",
        **extra,
    })
    return r


async def test_send_deducts_volume_and_computes_proof_gallons(client, make_batch):
    cider = await make_batch("Still Cider", volume=500, estimated_abv=7)
    r = await _send(client, cider["id"], 378.541)
    assert r.status_code == 200, r.text
    rec = r.json()[0]
    assert rec["status"] == "sent"
    assert rec["source_abv"] == 7
    assert rec["proof_gallons_sent"] == pytest.approx(14.0, abs=0.001)

    after = (await client.get(f"/batches/{cider['id']}")).json()
    assert after["current_volume_liters"] == pytest.approx(121.459, abs=0.001)
    trace = (await client.get(f"/batches/{cider['id']}/volume-trace")).json()
    assert trace["entries"][-1]["move_type"] == "distilled"


async def test_send_rejects_more_than_available(client, make_batch):
    cider = await make_batch("Small", volume=50)
    r = await _send(client, cider["id"], 60)
    assert r.status_code == 400
    assert "only has" in r.json()["detail"]


async def test_send_without_deduction_leaves_volume(client, make_batch):
    cider = await make_batch("Kept", volume=50)
    r = await _send(client, cider["id"], 20, deduct_volume=False)
    assert r.json()[0]["deducted"] is False
    assert (await client.get(f"/batches/{cider['id']}")).json()["current_volume_liters"] == 50


async def test_receive_creates_aging_brandy_batch(client, make_batch):
    cider = await make_batch("Distill Me", volume=1000, estimated_abv=7)
    rec = (await _send(client, cider["id"], 1000)).json()[0]

    r = await client.post(f"/distillation/{rec['id']}/receive", json={
        "received_volume": 100, "received_abv": 70, "received_at": "2025-04-01T09:00:00Z",
    })
    assert r.status_code == 200, r.text
    body = r.json()
    brandy = body["brandy_batch"]
    assert brandy["product_type"] == "brandy"
    assert brandy["status"] == "aging"
    assert brandy["current_volume_liters"] == 100
    assert brandy["batch_number"].startswith("BR-20250401-")
    assert body["distillation_records"][0]["status"] == "received"
    assert body["distillation_records"][0]["loss_percent"] is not None

    again = await client.post(f"/distillation/{rec['id']}/receive", json={"received_volume": 1, "received_abv": 70})
    assert again.status_code == 400
    assert again.json()["detail"] == f"Record {rec['id']} is already received"


async def test_receive_into_existing_brandy_recomputes_abv(client, make_batch):
    brandy = await make_batch("Brandy Cask", volume=100, product_type="brandy", estimated_abv=60)
    cider = await make_batch("More Cider", volume=500, estimated_abv=7)
    rec = (await _send(client, cider["id"], 500)).json()[0]

    r = await client.post(f"/distillation/{rec['id']}/receive", json={
        "received_volume": 100, "received_abv": 70, "brandy_batch_id": brandy["id"],
    })
    assert r.status_code == 200, r.text
    out = r.json()["brandy_batch"]
    assert out["id"] == brandy["id"]
    assert out["current_volume_liters"] == 200
    assert out["actual_abv"] == 65.0


async def test_receive_multiple_splits_by_volume_sent(client, make_batch):
    a = await make_batch("A", volume=300, estimated_abv=7)
    b = await make_batch("B", volume=100, estimated_abv=7)
    recs = (await client.post("/distillation/send", json={
        "batches": [{"batch_id": a["id"], "volume": 300}, {"batch_id": b["id"], "volume": 100}],
        "distillery_name": "Copper Still Co",
    })).json()

    r = await client.post("/distillation/receive-multiple", json={
        "distillation_record_ids": [x["id"] for x in recs], "received_volume": 40, "received_abv": 65,
    })
    assert r.status_code == 200, r.text
    shares = {x["source_batch_id"]: x["received_volume_liters"] for x in r.json()["distillation_records"]}
    assert shares == {a["id"]: 30, b["id"]: 10}


async def test_cancel_restores_deducted_volume(client, make_batch):
    cider = await make_batch("Cancelled", volume=200)
    rec = (await _send(client, cider["id"], 150)).json()[0]

    r = await client.post(f"/distillation/{rec['id']}/cancel", json={"reason": "Distillery closed"})
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"
    assert r.json()["restored_volume_liters"] == 150
    assert (await client.get(f"/batches/{cider['id']}")).json()["current_volume_liters"] == 200

    again = await client.post(f"/distillation/{rec['id']}/cancel", json={})
    assert again.status_code == 400


async def test_list_stats_and_distilleries(client, make_batch):
    cider = await make_batch("Stats", volume=500, estimated_abv=7)
    sent = (await _send(client, cider["id"], 100)).json()[0]
    await _send(client, cider["id"], 50, distillery_name="Other Distillery")
    await client.post(f"/distillation/{sent['id']}/receive", json={"received_volume": 10, "received_abv": 70})

    pending = (await client.get("/distillation", params={"status": "sent"})).json()
    assert len(pending) == 1
    assert pending[0]["source_batch_name"] == "Stats"

    stats = (await client.get("/distillation/stats")).json()
    assert stats["total_records"] == 2
    assert stats["pending_records"] == 1
    assert stats["completed_records"] == 1
    assert stats["total_liters_sent"] == 150
    assert stats["total_liters_received"] == 10

    names = [d["name"] for d in (await client.get("/distillation/distilleries")).json()]
    assert names == ["Copper Still Co", "Other Distillery"]


async def test_create_pommeau_from_cider_and_brandy(client, make_batch):
    juice = await make_batch("Sweet Juice", volume=200, product_type="juice")
    await client.post(f"/batches/{juice['id']}/measurements", json={"specific_gravity": 1.05, "ph": 3.6})
    brandy = await make_batch("Brandy", volume=100, product_type="brandy", estimated_abv=70)

    r = await client.post("/distillation/pommeau", json={
        "cider_batch_id": juice["id"],
        "juice_volume": 75,
        "brandy_batch_id": brandy["id"],
        "brandy_volume": 25,
        "blend_date": "2025-05-01T10:00:00Z",
    })
    assert r.status_code == 200, r.text
    body = r.json()
    pommeau = body["pommeau_batch"]
    assert pommeau["product_type"] == "pommeau"
    assert pommeau["batch_number"] == "POM-20250501-0001"
    assert pommeau["current_volume_liters"] == 100
    assert body["resulting_abv"] == 17.5
    assert body["abv_warning"] is None
    assert body["blended_specific_gravity"] == pytest.approx(1.0007, abs=1e-4)
    assert body["blended_ph"] is not None

    assert (await client.get(f"/batches/{juice['id']}")).json()["current_volume_liters"] == 125
    assert (await client.get(f"/batches/{brandy['id']}")).json()["current_volume_liters"] == 75

    lineage = (await client.get(f"/batches/{pommeau['id']}/lineage")).json()
    assert sorted(s["id"] for s in lineage["sources"]) == sorted([juice["id"], brandy["id"]])


async def test_pommeau_outside_typical_range_warns(client, make_batch):
    brandy = await make_batch("Brandy", volume=100, product_type="brandy", estimated_abv=60)
    r = await client.post("/distillation/pommeau", json={
        "juice_volume": 90, "brandy_batch_id": brandy["id"], "brandy_volume": 10,
    })
    assert r.status_code == 200, r.text
    assert r.json()["resulting_abv"] == 6.0
    assert "outside the typical pommeau range" in r.json()["abv_warning"]


async def test_pommeau_requires_brandy_batch(client, make_batch):
    cider = await make_batch("Not Brandy", volume=100)
    r = await client.post("/distillation/pommeau", json={
        "juice_volume": 50, "brandy_batch_id": cider["id"], "brandy_volume": 10,
    })
    assert r.status_code == 400
