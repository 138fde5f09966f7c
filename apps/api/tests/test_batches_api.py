async def test_create_batch_allocates_number_and_fills_vessel(client, make_vessel, make_batch):
    tank = await make_vessel("Tank A", capacity=1000)
    b = await make_batch("Kingston Black 2025", volume=800, vessel_id=tank["id"])

    assert b["batch_number"] == "BATCH-20250305-0001"
    assert b["current_volume_liters"] == 800
    assert b["status"] == "fermentation"

    vessel = (await client.get(f"/vessels/{tank['id']}")).json()
    assert vessel["status"] == "in_use"

    trace = (await client.get(f"/batches/{b['id']}/volume-trace")).json()
    assert [e["move_type"] for e in trace["entries"]] == ["production"]
    assert trace["summary"]["discrepancy_liters"] == 0


async def test_create_batch_rejects_busy_or_small_vessel(client, make_vessel, make_batch):
    tank = await make_vessel("Tank B", capacity=100)
    r = await client.post("/batches", json={"name": "Too big", "initial_volume": 150, "vessel_id": tank["id"]})
    assert r.status_code == 400

    await make_batch("First", volume=50, vessel_id=tank["id"])
    r = await client.post("/batches", json={"name": "Second", "initial_volume": 20, "vessel_id": tank["id"]})
    assert r.status_code == 400
    assert "not available" in r.json()["detail"]


async def test_gallon_input_is_stored_in_liters(make_batch):
    b = await make_batch("Gallons", volume=10, initial_volume_unit="gal")
    assert b["current_volume_liters"] == 37.854


async def test_list_filters_and_pages(client, make_batch):
    await make_batch("Alpha", product_type="cider")
    await make_batch("Bravo", product_type="perry")
    await make_batch("Charlie", product_type="cider")

    r = (await client.get("/batches", params={"product_type": "cider", "sort_by": "name", "sort_order": "asc"})).json()
    assert [b["name"] for b in r["items"]] == ["Alpha", "Charlie"]
    assert r["total"] == 2

    page = (await client.get("/batches", params={"limit": 2})).json()
    assert len(page["items"]) == 2
    assert page["has_more"]

    assert (await client.get("/batches", params={"limit": 101})).status_code == 422

    found = (await client.get("/batches", params={"search": "brav"})).json()
    assert [b["name"] for b in found["items"]] == ["Bravo"]


async def test_missing_batch_is_404(client):
    r = await client.get("/batches/999")
    assert r.status_code == 404
    assert r.json()["detail"] == "Batch 999 not found"


async def test_closing_a_batch_frees_its_vessel(client, make_vessel, make_batch):
    tank = await make_vessel("Tank C")
    b = await make_batch("Done", volume=100, vessel_id=tank["id"])

    r = await client.patch(f"/batches/{b['id']}", json={"status": "completed"})
    assert r.status_code == 200
    assert r.json()["end_date"] is not None
    assert (await client.get(f"/vessels/{tank['id']}")).json()["status"] == "available"

    events = (await client.get(f"/batches/{b['id']}/activity")).json()
    assert events[0]["event_type"] == "status:completed"


async def test_soft_delete_hides_batch(client, make_batch):
    b = await make_batch("Gone")
    assert (await client.delete(f"/batches/{b['id']}")).status_code == 200
    assert (await client.get(f"/batches/{b['id']}")).status_code == 404

    listed = (await client.get("/batches", params={"include_deleted": True})).json()
    assert listed["items"][0]["deleted_at"] is not None


async def test_measurement_ranges_are_validated(client, make_batch):
    b = await make_batch("Measured")
    for bad in ({"specific_gravity": 1.3}, {"abv": 25}, {"ph": 1.5}, {"total_acidity": 21}, {"temperature_c": 45}):
        r = await client.post(f"/batches/{b['id']}/measurements", json=bad)
        assert r.status_code == 422, bad


async def test_measurement_updates_abv_and_recorded_volume_only(client, make_batch):
    b = await make_batch("Measured", volume=500)
    r = await client.post(f"/batches/{b['id']}/measurements", json={"abv": 6.5, "ph": 3.4, "volume": 490})
    assert r.status_code == 200

    detail = (await client.get(f"/batches/{b['id']}")).json()
    assert detail["actual_abv"] == 6.5
    assert detail["current_volume_liters"] == 490
    assert detail["ledger_volume_liters"] == 500
    assert len(detail["measurements"]) == 1

    trace = (await client.get(f"/batches/{b['id']}/volume-trace")).json()
    assert trace["summary"]["discrepancy_liters"] == -10


async def test_measurement_update_and_delete(client, make_batch):
    b = await make_batch("Measured")
    m = (await client.post(f"/batches/{b['id']}/measurements", json={"specific_gravity": 1.050})).json()

    r = await client.patch(f"/batches/{b['id']}/measurements/{m['id']}", json={"specific_gravity": 1.010})
    assert r.json()["specific_gravity"] == 1.01

    assert (await client.delete(f"/batches/{b['id']}/measurements/{m['id']}")).status_code == 200
    assert (await client.delete(f"/batches/{b['id']}/measurements/{m['id']}")).status_code == 404


async def test_additives(client, make_batch):
    b = await make_batch("Dosed")
    a = await client.post(f"/batches/{b['id']}/additives", json={
        "additive_type": "nutrient", "additive_name": "Fermaid K", "amount": 25, "unit": "g",
    })
    assert a.status_code == 200
    aid = a.json()["id"]

    r = await client.patch(f"/batches/{b['id']}/additives/{aid}", json={"amount": 30})
    assert r.json()["amount"] == 30

    r = await client.post(f"/batches/{b['id']}/additives", json={
        "additive_type": "nutrient", "additive_name": "DAP", "amount": 0, "unit": "g",
    })
    assert r.status_code == 422

    assert (await client.delete(f"/batches/{b['id']}/additives/{aid}")).status_code == 200
    assert (await client.get(f"/batches/{b['id']}")).json()["additives"] == []
