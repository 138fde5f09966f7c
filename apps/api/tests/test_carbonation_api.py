from cidery_core.carbonation_api import carbonation_level


def test_carbonation_levels():
    assert carbonation_level(0.5) == "still"
    assert carbonation_level(2.0) == "petillant"
    assert carbonation_level(2.5) == "sparkling"


async def _start(client, batch_id, **extra):
    body = {
        "batch_id": batch_id,
        "process": "headspace",
        "target_co2_volumes": 2.6,
        "pressure_applied_psi": 20,
        "starting_temperature_c": 2,
        "started_at": "2025-03-10T10:00:00Z",
    }
    return await client.post("/carbonation/start", json=body | extra)


async def test_start_and_complete(client, make_vessel, make_batch):
    tank = await make_vessel("Brite Tank", max_pressure_psi=40)
    batch = await make_batch("Sparkling", volume=500, vessel_id=tank["id"])

    r = await _start(client, batch["id"])
    assert r.status_code == 200, r.text
    op = r.json()
    assert op["carbonation_level"] == "sparkling"
    assert op["starting_volume_liters"] == 500

    active = (await client.get("/carbonation/active")).json()
    assert [a["id"] for a in active] == [op["id"]]

    r = await client.post(f"/carbonation/{op['id']}/complete", json={
        "final_co2_volumes": 2.5, "final_volume": 498, "completed_at": "2025-03-12T10:00:00Z",
    })
    assert r.status_code == 200, r.text
    done = r.json()
    assert done["target_met"]
    assert done["final_carbonation_level"] == "sparkling"
    assert (await client.get(f"/batches/{batch['id']}")).json()["current_volume_liters"] == 498

    assert (await client.get("/carbonation/active")).json() == []
    assert len((await client.get(f"/carbonation/batch/{batch['id']}")).json()) == 1

    again = await client.post(f"/carbonation/{op['id']}/complete", json={"final_co2_volumes": 2.5})
    assert again.status_code == 409


async def test_one_active_operation_per_batch(client, make_batch):
    batch = await make_batch("Busy")
    assert (await _start(client, batch["id"])).status_code == 200
    assert (await _start(client, batch["id"])).status_code == 409


async def test_pressure_limit_uses_vessel_or_default(client, make_vessel, make_batch):
    rated = await make_vessel("Rated", max_pressure_psi=15)
    batch = await make_batch("Pressured", vessel_id=rated["id"])
    r = await _start(client, batch["id"], pressure_applied_psi=20)
    assert r.status_code == 400
    assert "exceeds safe limit" in r.json()["detail"]

    unrated = await make_vessel("Unrated")
    other = await make_batch("Default Limit", vessel_id=unrated["id"])
    assert (await _start(client, other["id"], pressure_applied_psi=35)).status_code == 400
    assert (await _start(client, other["id"], pressure_applied_psi=25)).status_code == 200


async def test_bottle_conditioning_skips_vessel_limit(client, make_vessel, make_batch):
    rated = await make_vessel("Rated", max_pressure_psi=15)
    batch = await make_batch("Bottled", vessel_id=rated["id"])
    r = await _start(client, batch["id"], process="bottle_conditioning", pressure_applied_psi=45)
    assert r.status_code == 200


async def test_input_ranges(client, make_batch):
    batch = await make_batch("Ranges")
    assert (await _start(client, batch["id"], starting_temperature_c=30)).status_code == 422
    assert (await _start(client, batch["id"], target_co2_volumes=6)).status_code == 422


async def test_complete_cannot_precede_start(client, make_batch):
    batch = await make_batch("Early")
    op = (await _start(client, batch["id"])).json()
    r = await client.post(f"/carbonation/{op['id']}/complete", json={
        "final_co2_volumes": 2.0, "completed_at": "2025-03-09T10:00:00Z",
    })
    assert r.status_code == 400


async def test_final_volume_loss_is_against_current_volume(client, make_batch):
    batch = await make_batch("Half Kegged", volume=100)
    op = (await _start(client, batch["id"])).json()
    r = await client.post("/packaging", json={
        "batch_id": batch["id"], "package_type": "keg", "package_size_ml": 1000, "units_produced": 50,
    })
    assert r.status_code == 200, r.text

    too_much = await client.post(f"/carbonation/{op['id']}/complete", json={
        "final_co2_volumes": 2.5, "final_volume": 60,
    })
    assert too_much.status_code == 400

    r = await client.post(f"/carbonation/{op['id']}/complete", json={
        "final_co2_volumes": 2.5, "final_volume": 45,
    })
    assert r.status_code == 200, r.text
    assert (await client.get(f"/batches/{batch['id']}")).json()["current_volume_liters"] == 45

    entries = (await client.get(f"/batches/{batch['id']}/volume-trace")).json()["entries"]
    assert [(e["move_type"], e["volume_liters"]) for e in entries[-1:]] == [("loss:other", 5)]
