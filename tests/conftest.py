"""Pytest configuration and fixtures for the reservation bot tests."""

from datetime import date, timedelta
from itertools import count

import pytest
from fastapi.testclient import TestClient

import config
import database
import whatsapp


# ============================================================================
# Fake Supabase client
# ============================================================================


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    """Just enough of the PostgREST fluent builder for database.py."""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.op = "select"
        self.columns = "*"
        self.payload = None
        self.filters: list[tuple[str, object]] = []
        self.order_by = None
        self.row_limit = None
        self.on_conflict = None

    def select(self, columns="*"):
        self.op = "select"
        self.columns = columns
        return self

    def insert(self, payload):
        self.op = "insert"
        self.payload = payload
        return self

    def update(self, payload):
        self.op = "update"
        self.payload = payload
        return self

    def upsert(self, payload, on_conflict=None):
        self.op = "upsert"
        self.payload = payload
        self.on_conflict = on_conflict
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def limit(self, n):
        self.row_limit = n
        return self

    def _matches(self, row):
        # PostgREST compares filter values as text
        return all(str(row.get(col)) == str(value) for col, value in self.filters)

    def execute(self):
        self.db.calls.append((self.table, self.op, list(self.filters), self.payload))
        if self.db.error is not None:
            raise self.db.error

        rows = self.db.tables.setdefault(self.table, [])

        if self.op == "select":
            result = [dict(r) for r in rows if self._matches(r)]
            if self.order_by:
                column, desc = self.order_by
                result.sort(key=lambda r: r.get(column), reverse=desc)
            if self.row_limit is not None:
                result = result[: self.row_limit]
            if self.columns != "*":
                keys = [c.strip() for c in self.columns.split(",")]
                result = [{k: r.get(k) for k in keys} for r in result]
            return FakeResponse(result)

        if self.op == "insert":
            row = dict(self.payload)
            row.setdefault("id", next(self.db.ids))
            rows.append(row)
            return FakeResponse([dict(row)])

        if self.op == "update":
            updated = []
            for row in rows:
                if self._matches(row):
                    row.update(self.payload)
                    updated.append(dict(row))
            return FakeResponse(updated)

        if self.op == "upsert":
            key = self.on_conflict
            for row in rows:
                if row.get(key) == self.payload.get(key):
                    row.update(self.payload)
                    return FakeResponse([dict(row)])
            rows.append(dict(self.payload))
            return FakeResponse([dict(self.payload)])

        raise AssertionError(f"unsupported op {self.op}")


class FakeRPC:
    def __init__(self, db: "FakeSupabase", name: str, params: dict):
        self.db = db
        self.name = name
        self.params = params

    def execute(self):
        self.db.rpc_calls.append((self.name, self.params))
        if self.db.error is not None:
            raise self.db.error
        result = self.db.rpc_results.get(self.name)
        if callable(result):
            result = result(self.params)
        return FakeResponse(result)


class FakeSupabase:
    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.rpc_results: dict[str, object] = {}
        self.calls: list = []
        self.rpc_calls: list = []
        self.error: Exception | None = None
        self.ids = count(100)

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params):
        return FakeRPC(self, name, params)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def future_day():
    """An ISO date a few days ahead."""
    return (date.today() + timedelta(days=3)).isoformat()


@pytest.fixture
def fake_db(monkeypatch, future_day):
    """Fake Supabase seeded with two restaurants, all slots available."""
    db = FakeSupabase()
    db.tables["restaurants"] = [
        {"id": 1, "name": "Deli Club", "code": "deliclub", "capacity_max": 40},
        {"id": 2, "name": "Bistro Azul", "code": "azul", "capacity_max": 8},
    ]
    db.rpc_results["check_availability"] = [{"ok": True, "reason": None, "remaining": 12}]
    db.rpc_results["suggest_alternatives"] = [
        {"service_date": future_day, "service": "LUNCH", "remaining": 6},
    ]
    monkeypatch.setattr(database, "supabase", db)
    return db


@pytest.fixture
def no_db(monkeypatch):
    monkeypatch.setattr(database, "supabase", None)


@pytest.fixture
def whatsapp_config(monkeypatch):
    monkeypatch.setattr(config, "WHATSAPP_VERIFY_TOKEN", "verify-me")
    monkeypatch.setattr(config, "WHATSAPP_APP_SECRET", None)
    monkeypatch.setattr(config, "WHATSAPP_TOKEN", "test-token")
    monkeypatch.setattr(config, "WHATSAPP_PHONE_NUMBER_ID", "123456")


@pytest.fixture
def sent_messages(monkeypatch):
    """Capture replies instead of calling the Graph API."""
    sent: list[tuple[str, str]] = []

    async def fake_send_text(to, body):
        sent.append((to, body))
        return {"messages": [{"id": "wamid.test"}]}

    monkeypatch.setattr(whatsapp, "send_text", fake_send_text)
    return sent


@pytest.fixture
def client(whatsapp_config):
    import main

    return TestClient(main.app)


def text_notification(wa_id: str, body: str, name: str = "Ana") -> dict:
    """Minimal WhatsApp Cloud API notification carrying one text message."""
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA_ID",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"phone_number_id": "123456"},
                            "contacts": [{"wa_id": wa_id, "profile": {"name": name}}],
                            "messages": [
                                {
                                    "from": wa_id,
                                    "id": "wamid.ABC",
                                    "timestamp": "1760000000",
                                    "type": "text",
                                    "text": {"body": body},
                                }
                            ],
                        },
                    }
                ],
            }
        ],
    }
