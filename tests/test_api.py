from __future__ import annotations

import pytest
from httpx import AsyncClient

from conftest import THEORETICAL_CSV


def _scan(sync_id: str, quantity: float, barcode: str = "9300000000011") -> dict:
    return {
        "sync_id": sync_id,
        "source": "scan",
        "barcode": barcode,
        "quantity": quantity,
        "location": "Cellar",
        "recorded_by": "alice",
        "recorded_at": "2026-10-01T09:00:00Z",
    }


async def test_health_check(client: AsyncClient) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "environment": "test"}


async def test_no_current_stocktake(client: AsyncClient) -> None:
    response = await client.get("/stocktakes/current")
    assert response.status_code == 404


async def test_create_and_fetch_current(client: AsyncClient, created_stocktake: dict) -> None:
    assert created_stocktake["status"] == "active"
    assert created_stocktake["name"] == "October count"

    response = await client.get("/stocktakes/current")
    assert response.status_code == 200
    assert response.json()["id"] == created_stocktake["id"]


async def test_second_create_conflicts(client: AsyncClient, created_stocktake: dict) -> None:
    response = await client.post(
        "/stocktakes",
        data={"created_by": "manager"},
        files={"theoretical_file": ("theoretical.csv", THEORETICAL_CSV, "text/csv")},
    )
    assert response.status_code == 409


async def test_unreadable_import_creates_nothing(client: AsyncClient) -> None:
    response = await client.post(
        "/stocktakes",
        data={"created_by": "manager"},
        files={"theoretical_file": ("theoretical.xlsx", b"PK\x03\x04", "application/zip")},
    )
    assert response.status_code == 422
    assert (await client.get("/stocktakes/current")).status_code == 404


async def test_snapshot_contents(client: AsyncClient, created_stocktake: dict) -> None:
    response = await client.get(f"/stocktakes/{created_stocktake['id']}/snapshot")
    assert response.status_code == 200
    payload = response.json()
    assert [item["product_code"] for item in payload["theoretical"]] == [
        "1001",
        "1002",
        "2001",
        "2002",
    ]
    assert {"product_code": "2001", "barcode": "9300000000028"} in payload["barcode_mapping"]
    assert payload["adjustments"] == []


async def test_push_counts_is_idempotent(client: AsyncClient, created_stocktake: dict) -> None:
    url = f"/stocktakes/{created_stocktake['id']}/counts"
    body = {"events": [_scan("s1", 3), _scan("s2", 4)]}

    first = await client.post(url, json=body)
    assert first.status_code == 200
    assert [ack["status"] for ack in first.json()["acknowledged"]] == ["created", "created"]

    second = await client.post(url, json=body)
    assert [ack["status"] for ack in second.json()["acknowledged"]] == ["unchanged", "unchanged"]

    variance = await client.get(f"/stocktakes/{created_stocktake['id']}/variance")
    item = next(i for i in variance.json()["items"] if i["product_code"] == "1001")
    assert item["counted_qty"] == 7


async def test_scan_without_barcode_is_invalid(
    client: AsyncClient, created_stocktake: dict
) -> None:
    event = _scan("s1", 3)
    event["barcode"] = "  "
    response = await client.post(
        f"/stocktakes/{created_stocktake['id']}/counts", json={"events": [event]}
    )
    assert response.status_code == 422


async def test_counts_filtered_by_user(client: AsyncClient, created_stocktake: dict) -> None:
    url = f"/stocktakes/{created_stocktake['id']}/counts"
    manual = {
        "sync_id": "m1",
        "source": "manual",
        "product_name": "Jim Beam 700ml",
        "quantity": 2,
        "recorded_by": "bob",
        "recorded_at": "2026-10-01T09:05:00Z",
    }
    await client.post(url, json={"events": [_scan("s1", 3), manual]})

    response = await client.get(url, params={"recorded_by": "bob"})
    assert response.status_code == 200
    assert [event["sync_id"] for event in response.json()] == ["m1"]

    response = await client.get(url)
    assert len(response.json()) == 2


async def test_delete_counts(client: AsyncClient, created_stocktake: dict) -> None:
    base = f"/stocktakes/{created_stocktake['id']}"
    await client.post(f"{base}/counts", json={"events": [_scan("s1", 3)]})

    response = await client.post(f"{base}/counts/delete", json={"sync_ids": ["s1"]})
    assert response.status_code == 200
    assert response.json()["deleted"] == ["s1"]
    assert (await client.get(f"{base}/counts")).json() == []


async def test_adjustments_override_counts(client: AsyncClient, created_stocktake: dict) -> None:
    base = f"/stocktakes/{created_stocktake['id']}"
    await client.post(f"{base}/counts", json={"events": [_scan("s1", 3), _scan("s2", 4)]})

    response = await client.post(
        f"{base}/adjustments",
        json={"product_code": "1001", "new_count": 12, "user": "admin", "reason": "recount"},
    )
    assert response.status_code == 201
    assert response.json()["old_count"] == 7

    listed = await client.get(f"{base}/adjustments")
    assert [entry["new_count"] for entry in listed.json()] == [12]

    variance = (await client.get(f"{base}/variance")).json()
    item = next(i for i in variance["items"] if i["product_code"] == "1001")
    assert item["counted_qty"] == 12
    assert item["manually_entered"] is True
    summary = variance["summary"]
    assert (
        summary["positive_variances"] + summary["negative_variances"] + summary["zero_variances"]
        == summary["total_items"]
    )


async def test_adjustment_unknown_product(client: AsyncClient, created_stocktake: dict) -> None:
    response = await client.post(
        f"/stocktakes/{created_stocktake['id']}/adjustments",
        json={"product_code": "9999", "new_count": 1, "user": "admin"},
    )
    assert response.status_code == 404


async def test_finish_locks_stocktake(client: AsyncClient, created_stocktake: dict) -> None:
    base = f"/stocktakes/{created_stocktake['id']}"
    response = await client.post(f"{base}/finish", json={"completed_by": "manager"})
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    rejected = await client.post(f"{base}/counts", json={"events": [_scan("s9", 1)]})
    assert rejected.status_code == 409
    assert (await client.get(f"{base}/counts")).json() == []

    adjustment = await client.post(
        f"{base}/adjustments", json={"product_code": "1001", "new_count": 1, "user": "admin"}
    )
    assert adjustment.status_code == 409

    again = await client.post(f"{base}/finish", json={"completed_by": "manager"})
    assert again.status_code == 409

    history = await client.get("/stocktakes/history")
    assert [entry["id"] for entry in history.json()] == [created_stocktake["id"]]


@pytest.mark.parametrize(
    "path", ["variance", "snapshot", "export/dat", "counts", "adjustments"]
)
async def test_unknown_stocktake_is_404(client: AsyncClient, path: str) -> None:
    response = await client.get(f"/stocktakes/missing/{path}")
    assert response.status_code == 404


async def test_dat_export(client: AsyncClient, created_stocktake: dict) -> None:
    base = f"/stocktakes/{created_stocktake['id']}"
    await client.post(
        f"{base}/counts",
        json={"events": [_scan("s1", 3), _scan("s2", 4), _scan("s3", 2, "9300000000028")]},
    )
    response = await client.get(f"{base}/export/dat")
    assert response.status_code == 200
    assert "attachment" in response.headers["content-disposition"]
    assert response.text == "9300000000011   7.0\n9300000000028   2.0\n"


async def test_variance_workbook_export(client: AsyncClient, created_stocktake: dict) -> None:
    response = await client.get(f"/stocktakes/{created_stocktake['id']}/export/variance")
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/vnd.ms-excel"
    assert response.content[:4] == b"\xd0\xcf\x11\xe0"


async def test_manual_entry_export(client: AsyncClient, created_stocktake: dict) -> None:
    response = await client.get(f"/stocktakes/{created_stocktake['id']}/export/manual")
    assert response.status_code == 200
    assert "Great Northern Keg" in response.text
    assert "Carlton Draught" not in response.text
    assert "Total items requiring manual entry: 2" in response.text
