"""
tests/integration/conftest.py — Fixtures and helpers for all integration tests.

Design:
  - The app is created once per session using create_app("testing"), which
    points at in-memory SQLite unless TEST_DATABASE_URL names a real database.
  - All tables are created once via db.create_all() at session start.
  - Between tests, all rows are deleted and the optimisation cache is
    emptied so tests are isolated.

Helper functions (not fixtures) are provided for common operations:
  - debt(...)            → one debt record in wire format
  - optimize(client,...) → HTTP response
  - accept(client, ...)  → HTTP response
"""

from __future__ import annotations

import pytest
from sqlalchemy import text

from settleup.app import create_app
from settleup.app.extensions import CACHE_EXTENSION_KEY
from settleup.app.extensions import db as _db


# ═══════════════════════════════════════════════════════════════════════════
# Session-scoped app fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="session")
def app():
    flask_app = create_app("testing")

    with flask_app.app_context():
        _db.create_all()

    yield flask_app

    with flask_app.app_context():
        _db.drop_all()


# ═══════════════════════════════════════════════════════════════════════════
# Function-scoped test isolation
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def clean_tables(app):
    """Deletes all rows and cached plans after every test."""
    yield  # run the test

    with app.app_context():
        _db.session.rollback()  # discard any uncommitted state from a failed test

        with _db.engine.connect() as conn:
            conn.execute(text("DELETE FROM settlement_records"))
            conn.commit()

    app.extensions[CACHE_EXTENSION_KEY].store.delete_pattern("*")


# ═══════════════════════════════════════════════════════════════════════════
# Client fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def client(app):
    """Flask test client. Each test gets a fresh client (function-scoped)."""
    return app.test_client()


# ═══════════════════════════════════════════════════════════════════════════
# Shared helper functions (not fixtures)
# ═══════════════════════════════════════════════════════════════════════════

def debt(frm, to, amount: str, currency: str = "USD") -> dict:
    return {"from": frm, "to": to, "amount": amount, "currency": currency}


def optimize(client, group_id: int, debts: list[dict], **body):
    """POSTs to the optimize endpoint and returns the HTTP response."""
    return client.post(
        f"/api/v1/groups/{group_id}/settlements/optimize",
        json={"debts": debts, **body},
    )


def accept(client, group_id: int, settlements: list[dict], created_by: str = "alice", **body):
    """Accepts a computed plan and returns the HTTP response."""
    return client.post(
        f"/api/v1/groups/{group_id}/settlement-records",
        json={"settlements": settlements, "created_by": created_by, **body},
    )
