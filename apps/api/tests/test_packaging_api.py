async def test_packaging_run_records_packaged_and_loss(client, make_batch):
    batch = await make_batch("Bottled", volume=100)
    r = await client.post("/packaging", json={
        "batch_id": batch["id"], "package_type": "bottle", "package_size_ml": 750,
        "units_produced": 120, "loss": 1.5, "material_cost": 60,
    })
    assert r.status_code == 200, r.text
    run = r.json()
    assert run["packaged_liters"] == 90
    assert run["volume_taken_liters"] == 91.5
    assert run["cost_per_unit"] == 0.5
    assert run["remaining_volume_liters"] == 8.5

    types = [e["move_type"] for e in (await client.get(f"/batches/{batch['id']}/volume-trace")).json()["entries"]]
    assert types == ["production", "packaged", "loss:packaging"]


async def test_packaging_more_than_batch_is_rejected(client, make_batch):
    batch = await make_batch("Small", volume=10)
    r = await client.post("/packaging", json={
        "batch_id": batch["id"], "package_type": "can", "package_size_ml": 355, "units_produced": 30,
    })
    assert r.status_code == 400


async def test_zero_units_cost_per_unit_is_guarded(client, make_batch):
    batch = await make_batch("Dumped", volume=10)
    r = await client.post("/packaging", json={
        "batch_id": batch["id"], "package_type": "keg", "package_size_ml": 19500,
        "units_produced": 0, "loss": 2, "material_cost": 10,
    })
    assert r.status_code == 200
    assert r.json()["cost_per_unit"] == 0


async def test_packaging_out_completes_batch_and_frees_vessel(client, make_vessel, make_batch):
    tank = await make_vessel("Tank P")
    batch = await make_batch("Last Drop", volume=15, vessel_id=tank["id"])
    r = await client.post("/packaging", json={
        "batch_id": batch["id"], "package_type": "bottle", "package_size_ml": 750,
        "units_produced": 20, "complete_batch": True,
    })
    assert r.status_code == 200
    assert (await client.get(f"/batches/{batch['id']}")).json()["status"] == "completed"
    assert (await client.get(f"/vessels/{tank['id']}")).json()["status"] == "available"

    runs = (await client.get("/packaging", params={"batch_id": batch["id"]})).json()
    assert runs[0]["batch_name"] == "Last Drop"
