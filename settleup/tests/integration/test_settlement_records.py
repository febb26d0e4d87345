"""
tests/integration/test_settlement_records.py — Integration tests for the
settlement record lifecycle.

Endpoints covered:
  POST  /groups/:id/settlement-records            → 201
  GET   /groups/:id/settlement-records[?status=]  → 200
  PATCH /settlement-records/:id/payment-status    → 200 / 409 / 404
  POST  /settlement-records/:id/cancel            → 200 / 409
"""

from __future__ import annotations

from settleup.app.extensions import CACHE_EXTENSION_KEY

from .conftest import accept, debt, optimize

PLAN = [
    {"from": "A", "to": "C", "amount": "30.00", "currency": "USD"},
    {"from": "B", "to": "C", "amount": "20.00", "currency": "USD"},
]


def _accept_one(client, group_id: int = 1) -> dict:
    resp = accept(client, group_id, PLAN[:1])
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["data"][0]


def _set_payment(client, record_id: int, payment_status: str):
    return client.patch(
        f"/api/v1/settlement-records/{record_id}/payment-status",
        json={"payment_status": payment_status},
    )


# ═══════════════════════════════════════════════════════════════════════════
# Accept / list
# ═══════════════════════════════════════════════════════════════════════════

def test_accept_creates_pending_records(client):
    resp = accept(client, 1, PLAN, notes="March trip")

    assert resp.status_code == 201
    records = resp.get_json()["data"]
    assert [(r["from"], r["to"], r["amount"], r["currency"]) for r in records] == [
        ("A", "C", "30.00", "USD"),
        ("B", "C", "20.00", "USD"),
    ]
    for r in records:
        assert r["status"] == "pending"
        assert r["payment_status"] == "pending"
        assert r["group_id"] == 1
        assert r["created_by"] == "alice"
        assert r["notes"] == "March trip"
        assert r["completed_at"] is None


def test_accept_computed_plan_round_trip(client):
    plan = optimize(client, 2, [debt("A", "C", "30"), debt("B", "C", "20")]).get_json()["data"]["settlements"]
    resp = accept(client, 2, plan)
    assert resp.status_code == 201
    assert len(resp.get_json()["data"]) == 2


def test_accept_invalidates_group_cache(app, client):
    optimize(client, 3, [debt("A", "C", "30"), debt("B", "C", "20")])
    optimize(client, 4, [debt("A", "C", "30"), debt("B", "C", "20")])
    store = app.extensions[CACHE_EXTENSION_KEY].store
    assert len(store) == 2

    accept(client, 3, PLAN)

    assert len(store) == 1


def test_accept_requires_settlements(client):
    resp = accept(client, 1, [])
    assert resp.status_code == 400
    assert resp.get_json()["error"]["field"] == "settlements"


def test_accept_rejects_self_settlement(client):
    resp = accept(client, 1, [{"from": "A", "to": "A", "amount": "1.00", "currency": "USD"}])
    assert resp.status_code == 422
    assert resp.get_json()["error"]["code"] == "INVALID_DEBT"


def test_list_is_scoped_to_group_and_filterable(client):
    accept(client, 1, PLAN)
    accept(client, 2, PLAN[:1])

    resp = client.get("/api/v1/groups/1/settlement-records")
    assert resp.status_code == 200
    records = resp.get_json()["data"]
    assert len(records) == 2
    assert all(r["group_id"] == 1 for r in records)

    client.post(f"/api/v1/settlement-records/{records[0]['id']}/cancel")

    pending = client.get("/api/v1/groups/1/settlement-records?status=pending").get_json()["data"]
    cancelled = client.get("/api/v1/groups/1/settlement-records?status=cancelled").get_json()["data"]
    assert len(pending) == 1
    assert [r["id"] for r in cancelled] == [records[0]["id"]]


def test_list_rejects_unknown_status(client):
    resp = client.get("/api/v1/groups/1/settlement-records?status=lost")
    assert resp.status_code == 400
    assert resp.get_json()["error"]["code"] == "INVALID_STATUS"


# ═══════════════════════════════════════════════════════════════════════════
# Payment status
# ═══════════════════════════════════════════════════════════════════════════

def test_full_payment_lifecycle(client):
    record = _accept_one(client)

    resp = _set_payment(client, record["id"], "processing")
    assert resp.status_code == 200
    assert resp.get_json()["data"]["payment_status"] == "processing"
    assert resp.get_json()["data"]["status"] == "pending"

    resp = _set_payment(client, record["id"], "completed")
    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["payment_status"] == "completed"
    assert data["status"] == "completed"
    assert data["completed_at"] is not None


def test_failed_payment_can_be_retried(client):
    record = _accept_one(client)
    _set_payment(client, record["id"], "processing")
    assert _set_payment(client, record["id"], "failed").status_code == 200

    resp = _set_payment(client, record["id"], "processing")
    assert resp.status_code == 200
    assert resp.get_json()["data"]["payment_status"] == "processing"


def test_skipping_processing_is_a_conflict(client):
    record = _accept_one(client)

    resp = _set_payment(client, record["id"], "completed")

    assert resp.status_code == 409
    error = resp.get_json()["error"]
    assert error["code"] == "INVALID_STATUS_TRANSITION"
    assert error["field"] == "payment_status"


def test_unknown_payment_status_value(client):
    record = _accept_one(client)
    resp = _set_payment(client, record["id"], "refunded")
    assert resp.status_code == 400
    assert resp.get_json()["error"]["code"] == "INVALID_STATUS"


def test_payment_status_on_missing_record(client):
    resp = _set_payment(client, 99999, "processing")
    assert resp.status_code == 404
    assert resp.get_json()["error"]["code"] == "SETTLEMENT_RECORD_NOT_FOUND"


# ═══════════════════════════════════════════════════════════════════════════
# Cancel
# ═══════════════════════════════════════════════════════════════════════════

def test_cancel_pending_record(client):
    record = _accept_one(client)

    resp = client.post(f"/api/v1/settlement-records/{record['id']}/cancel")

    assert resp.status_code == 200
    assert resp.get_json()["data"]["status"] == "cancelled"


def test_cancel_twice_is_a_conflict(client):
    record = _accept_one(client)
    client.post(f"/api/v1/settlement-records/{record['id']}/cancel")

    resp = client.post(f"/api/v1/settlement-records/{record['id']}/cancel")

    assert resp.status_code == 409


def test_cancel_while_processing_is_a_conflict(client):
    record = _accept_one(client)
    _set_payment(client, record["id"], "processing")

    resp = client.post(f"/api/v1/settlement-records/{record['id']}/cancel")

    assert resp.status_code == 409
    assert resp.get_json()["error"]["code"] == "INVALID_STATUS_TRANSITION"


def test_cancelled_record_rejects_payment_updates(client):
    record = _accept_one(client)
    client.post(f"/api/v1/settlement-records/{record['id']}/cancel")

    assert _set_payment(client, record["id"], "processing").status_code == 409
