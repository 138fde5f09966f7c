import pytest


async def test_press_run_creates_batch(client, make_variety):
    dab = await make_variety("Dabinett")
    kb = await make_variety("Kingston Black")
    r = await client.post("/press-runs", json={
        "name": "Press 1",
        "date_completed": "2025-10-02",
        "loads": [
            {"variety_id": dab["id"], "fruit_weight": 1000, "juice_volume": 650},
            {"variety_id": kb["id"], "fruit_weight": 500, "juice_volume": 300},
        ],
        "create_batch": {"product_type": "cider"},
    })
    assert r.status_code == 200, r.text
    run = r.json()
    assert run["total_fruit_kg"] == 1500
    assert run["total_juice_liters"] == 950
    assert run["extraction_rate"] == pytest.approx(63.33)
    assert run["batch"]["current_volume_liters"] == 950
    assert run["batch"]["press_run_id"] == run["id"]

    detail = (await client.get(f"/press-runs/{run['id']}")).json()
    assert len(detail["loads"]) == 2
    assert [b["id"] for b in detail["batches"]] == [run["batch"]["id"]]


async def test_press_run_rejects_unknown_variety(client):
    r = await client.post("/press-runs", json={
        "name": "Bad", "date_completed": "2025-10-02",
        "loads": [{"variety_id": 42, "fruit_weight": 10, "juice_volume": 5}],
    })
    assert r.status_code == 400


async def test_yield_analysis(client, make_variety):
    dab = await make_variety("Dabinett")
    for day, fruit, juice in (("2025-10-01", 1000, 600), ("2025-10-05", 1000, 700), ("2025-11-01", 500, 300)):
        r = await client.post("/press-runs", json={
            "name": f"Press {day}", "date_completed": day,
            "loads": [{"variety_id": dab["id"], "fruit_weight": fruit, "juice_volume": juice}],
        })
        assert r.status_code == 200

    y = (await client.get("/production-reports/yield-analysis",
                          params={"start_date": "2025-10-01", "end_date": "2025-10-31"})).json()
    assert y["totals"]["press_run_count"] == 2
    assert y["totals"]["total_fruit_kg"] == 2000
    assert y["totals"]["average_extraction_rate"] == 65.0
    assert y["by_variety"][0]["variety_name"] == "Dabinett"
    assert y["by_variety"][0]["load_count"] == 2


async def test_yield_analysis_without_fruit_is_zero(client):
    y = (await client.get("/production-reports/yield-analysis",
                          params={"start_date": "2025-01-01", "end_date": "2025-01-31"})).json()
    assert y["totals"]["average_extraction_rate"] == 0
    assert y["press_runs"] == []
