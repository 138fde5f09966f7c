import pytest


@pytest.fixture
async def purchases(client, make_vendor, make_variety):
    zed = await make_vendor("Zed Orchards")
    acme = await make_vendor("Acme Apples")
    dab = await make_variety("Dabinett")
    kb = await make_variety("Kingston Black")

    r = await client.post("/purchases", json={
        "vendor_id": zed["id"], "purchase_date": "2025-09-20", "invoice_number": "Z-1",
        "items": [
            {"variety_id": dab["id"], "quantity": 1000, "unit": "lb", "price_per_unit": 0.25},
            {"variety_id": kb["id"], "quantity": 200, "total_cost": 150},
        ],
    })
    assert r.status_code == 200, r.text
    r = await client.post("/purchases", json={
        "vendor_id": acme["id"], "purchase_date": "2025-09-25",
        "items": [{"variety_id": kb["id"], "quantity": 500, "price_per_unit": 0.6}],
    })
    assert r.status_code == 200, r.text
    return zed, acme


async def test_purchase_converts_to_kg_and_prices_items(client, purchases):
    zed, _ = purchases
    [p] = (await client.get("/purchases", params={"vendor_id": zed["id"]})).json()
    dab, kb = p["items"]
    assert dab["quantity_kg"] == pytest.approx(453.593, abs=0.001)
    assert dab["total_cost"] == 250
    assert kb["total_cost"] == 150
    assert p["total_cost"] == 400


async def test_purchase_validation(client, make_vendor, make_variety):
    vendor = await make_vendor()
    variety = await make_variety()
    r = await client.post("/purchases", json={
        "vendor_id": 999, "purchase_date": "2025-09-20", "items": [{"variety_id": variety["id"], "quantity": 1}],
    })
    assert r.status_code == 400

    r = await client.post("/purchases", json={
        "vendor_id": vendor["id"], "purchase_date": "2025-09-20", "items": [{"variety_id": 999, "quantity": 1}],
    })
    assert r.status_code == 400

    await client.delete(f"/vendors/{vendor['id']}")
    r = await client.post("/purchases", json={
        "vendor_id": vendor["id"], "purchase_date": "2025-09-20", "items": [{"variety_id": variety["id"], "quantity": 1}],
    })
    assert r.status_code == 400
    assert "inactive" in r.json()["detail"]


async def test_deleted_purchase_drops_out(client, purchases):
    listed = (await client.get("/purchases")).json()
    pid = listed[0]["id"]
    assert (await client.delete(f"/purchases/{pid}")).status_code == 200
    assert (await client.delete(f"/purchases/{pid}")).status_code == 404
    assert len((await client.get("/purchases")).json()) == 1


async def test_duplicate_vendor_names_conflict(client, make_vendor):
    await make_vendor("Hillside")
    r = await client.post("/vendors", json={"name": "hillside"})
    assert r.status_code == 409


async def test_vendor_report_groups_by_vendor(client, purchases):
    r = await client.get("/reports/vendor-apple-purchases", params={"start_date": "2025-09-01", "end_date": "2025-09-30"})
    assert r.status_code == 200
    report = r.json()
    assert [v["vendor_name"] for v in report["vendors"]] == ["Acme Apples", "Zed Orchards"]
    assert report["purchase_count"] == 2
    assert report["vendors"][0]["total_cost"] == 300
    assert report["grand_total_cost"] == 700
    assert report["grand_total_kg"] == pytest.approx(1153.593, abs=0.001)


async def test_vendor_report_exports(client, purchases):
    params = {"start_date": "2025-09-01", "end_date": "2025-09-30"}
    csv = await client.get("/reports/vendor-apple-purchases", params=params | {"format": "csv"})
    assert "Zed Orchards total" in csv.text
    assert "Grand total" in csv.text

    pdf = await client.get("/reports/vendor-apple-purchases", params=params | {"format": "pdf"})
    assert pdf.headers["content-type"] == "application/pdf"
    assert pdf.content.startswith(b"%PDF")


async def test_vendor_report_rejects_inverted_range(client):
    r = await client.get("/reports/vendor-apple-purchases", params={"start_date": "2025-09-30", "end_date": "2025-09-01"})
    assert r.status_code == 400
