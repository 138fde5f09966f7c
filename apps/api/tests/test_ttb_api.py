import pytest

MARCH = {"period_start": "2025-03-01", "period_end": "2025-03-31"}


@pytest.fixture
async def march_activity(client, make_batch):
    """Cider moving through March 2025, with one packaging run after the period."""
    a = await make_batch("Estate Cider", volume=1000, start_date="2025-02-10T10:00:00Z", estimated_abv=6.5)
    b = await make_batch("Second Press", volume=200, estimated_abv=6.5)

    r = await client.post("/packaging", json={
        "batch_id": a["id"], "package_type": "bottle", "package_size_ml": 750, "units_produced": 100,
        "loss": 2, "packaged_at": "2025-03-15T10:00:00Z",
    })
    assert r.status_code == 200, r.text

    r = await client.post("/distillation/send", json={
        "batches": [{"batch_id": b["id"], "volume": 100}],
        "distillery_name": "Copper Still Co",
        "sent_at": "2025-03-10T09:00:00Z",
    })
    assert r.status_code == 200, r.text

    r = await client.post("/cellar/blend", json={
        "target_batch_id": a["id"], "sources": [{"batch_id": b["id"], "volume": 50}],
        "performed_at": "2025-03-20T10:00:00Z",
    })
    assert r.status_code == 200, r.text

    r = await client.post("/packaging", json={
        "batch_id": a["id"], "package_type": "can", "package_size_ml": 750, "units_produced": 10,
        "packaged_at": "2025-04-05T10:00:00Z",
    })
    assert r.status_code == 200, r.text
    return a, b


async def test_trace_report_balances_cider(client, march_activity):
    r = await client.get("/ttb/batch-trace", params=MARCH)
    assert r.status_code == 200, r.text
    report = r.json()

    cider = report["summaries"]["cider"]
    assert cider["batch_count"] == 2
    assert cider["opening_balance_liters"] == 1000
    assert cider["production_liters"] == 200
    assert cider["blended_in_liters"] == 50
    assert cider["packaged_liters"] == 75
    assert cider["distilled_liters"] == 100
    assert cider["blended_out_liters"] == 50
    assert cider["losses_liters"] == 2
    # April packaging is rolled back out of the ending balance
    assert cider["ending_balance_liters"] == 1023
    assert cider["discrepancy_liters"] == 0
    assert cider["is_balanced"]

    assert report["combined"]["cider_perry"]["production_liters"] == 200
    assert report["grand_summary"]["is_balanced"]
    assert report["discrepancies"] == []

    ops = report["distillery_operations"]
    assert ops["cider_sent_liters"] == 100
    assert len(ops["pending_returns"]) == 1


async def test_trace_report_rejects_inverted_period(client):
    r = await client.get("/ttb/batch-trace", params={"period_start": "2025-03-31", "period_end": "2025-03-01"})
    assert r.status_code == 400


async def test_trace_report_lists_discrepancies(client, make_batch):
    cider = await make_batch("Drifted", volume=300)
    await client.post(f"/batches/{cider['id']}/measurements", json={
        "volume": 280, "measured_at": "2025-03-06T10:00:00Z",
    })
    await make_batch("Unmeasured Brandy", volume=40, product_type="brandy")

    report = (await client.get("/ttb/batch-trace", params=MARCH)).json()
    kinds = {(d["batch_name"], d["type"]) for d in report["discrepancies"]}
    assert ("Drifted", "volume_mismatch") in kinds
    assert ("Unmeasured Brandy", "missing_abv") in kinds
    assert not report["summaries"]["cider"]["is_balanced"]


async def test_configured_opening_balance_rolls_forward(client, march_activity):
    r = await client.put("/ttb/opening-balances", json={"balance_date": "2025-01-01", "balances": {"cider": 500}})
    assert r.status_code == 200
    assert r.json()["balances"]["cider"] == 500
    assert r.json()["balances"]["perry"] == 0

    cider = (await client.get("/ttb/batch-trace", params=MARCH)).json()["summaries"]["cider"]
    # 500 configured + 1000 produced in February
    assert cider["opening_balance_liters"] == 1500
    assert not cider["is_balanced"]


async def test_exports(client, march_activity):
    csv = await client.get("/ttb/batch-trace/export", params=MARCH | {"format": "csv"})
    assert csv.status_code == 200
    assert csv.headers["content-type"].startswith("text/csv")
    assert "TTB Batch Trace Report" in csv.text
    assert "Estate Cider" in csv.text

    pdf = await client.get("/ttb/batch-trace/export", params=MARCH | {"format": "pdf"})
    assert pdf.status_code == 200
    assert pdf.content.startswith(b"%PDF")


async def test_form_5120_17(client, march_activity):
    r = await client.get("/ttb/form-5120-17", params={"period_type": "monthly", "year": 2025, "period_number": 3})
    assert r.status_code == 200, r.text
    form = r.json()

    assert form["reporting_period"]["label"] == "March 2025"
    assert form["beginning_inventory"]["gallons"] == pytest.approx(264.172, abs=0.001)
    assert form["tax_paid_removals"]["gallons"] == pytest.approx(19.813, abs=0.001)
    assert form["other_removals"]["distilled"] == pytest.approx(26.417, abs=0.001)
    assert form["reconciliation"]["balanced"]
    assert form["tax_summary"]["taxable_gallons"] == pytest.approx(19.813, abs=0.001)
    assert form["distillery_operations"]["pending_returns"] == 1


async def test_form_rejects_bad_period(client):
    r = await client.get("/ttb/form-5120-17", params={"period_type": "monthly", "year": 2025, "period_number": 13})
    assert r.status_code == 400


async def test_snapshots_lock_once_finalized(client, march_activity):
    body = {"period_type": "monthly", "year": 2025, "period_number": 3}
    first = await client.post("/ttb/snapshots", json=body)
    assert first.status_code == 200, first.text
    assert first.json()["status"] == "draft"

    redo = await client.post("/ttb/snapshots", json=body | {"notes": "recalculated"})
    assert redo.status_code == 200
    assert redo.json()["id"] == first.json()["id"]

    listed = (await client.get("/ttb/snapshots", params={"year": 2025})).json()
    assert len(listed) == 1

    sid = first.json()["id"]
    assert (await client.post(f"/ttb/snapshots/{sid}/finalize")).json()["status"] == "finalized"
    assert (await client.post(f"/ttb/snapshots/{sid}/finalize")).status_code == 409
    assert (await client.post("/ttb/snapshots", json=body)).status_code == 409
