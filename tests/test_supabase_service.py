"""Tests for SupabaseService query construction and variant replacement."""
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from uuid import uuid4

import pytest
from postgrest.exceptions import APIError

from square_reconciler.models.database import Variant
from square_reconciler.services.supabase_service import SupabaseService, UniqueConstraintError


class RecordingQuery:
    """Chainable stand-in for a PostgREST request builder."""

    def __init__(self, table: "RecordingTable"):
        self.table = table
        self.op = "select"
        self.payload = None
        self.filters = []
        self.limit_value = None

    def select(self, columns="*"):
        self.op = "select"
        return self

    def insert(self, rows):
        self.op = "insert"
        self.payload = rows if isinstance(rows, list) else [rows]
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(("eq", column, value))
        return self

    def gte(self, column, value):
        self.filters.append(("gte", column, value))
        return self

    def is_(self, column, value):
        self.filters.append(("is", column, value))
        return self

    def order(self, column, desc=False):
        return self

    def limit(self, count):
        self.limit_value = count
        return self

    def execute(self):
        return self.table.run(self)


class RecordingTable:
    def __init__(self):
        self.rows = []
        self.queries = []
        self.insert_errors = []

    def _matches(self, row, query):
        return all(row.get(col) == value for op, col, value in query.filters if op == "eq")

    def run(self, query: RecordingQuery):
        self.queries.append(query)
        if query.op == "insert":
            if self.insert_errors:
                raise self.insert_errors.pop(0)
            inserted = [dict(row) for row in query.payload]
            self.rows.extend(inserted)
            return SimpleNamespace(data=inserted)
        matching = [row for row in self.rows if self._matches(row, query)]
        if query.op == "delete":
            self.rows = [row for row in self.rows if row not in matching]
        return SimpleNamespace(data=[dict(row) for row in matching])


class RecordingClient:
    def __init__(self):
        self.tables = {}

    def table(self, name):
        return RecordingQuery(self.tables.setdefault(name, RecordingTable()))


def _variant_conflict() -> APIError:
    return APIError(
        {
            "message": 'duplicate key value violates unique constraint "variants_square_variant_id_key"',
            "code": "23505",
            "details": "Key (square_variant_id)=(MOVED-V) already exists.",
            "hint": None,
        }
    )


@pytest.fixture
def client() -> RecordingClient:
    return RecordingClient()


def test_replace_variants_swaps_the_variant_set(client):
    product_id = uuid4()
    client.table("variants").table.rows = [
        {"id": str(uuid4()), "product_id": str(product_id), "name": "Dozen", "price": "24", "square_variant_id": "V1"}
    ]

    replaced = SupabaseService(client=client).replace_variants(
        product_id, [Variant(name="Half Dozen", price=12, square_variant_id="V2")]
    )

    rows = client.tables["variants"].rows
    assert [r["square_variant_id"] for r in rows] == ["V2"]
    assert [v.square_variant_id for v in replaced] == ["V2"]


def test_failed_variant_insert_restores_previous_variants(client):
    product_id = uuid4()
    previous = {
        "id": str(uuid4()),
        "product_id": str(product_id),
        "name": "Dozen",
        "price": "24",
        "square_variant_id": "V1",
    }
    variants = client.table("variants").table
    variants.rows = [dict(previous)]
    variants.insert_errors = [_variant_conflict()]

    with pytest.raises(UniqueConstraintError) as exc_info:
        SupabaseService(client=client).replace_variants(
            product_id, [Variant(name="Dozen", square_variant_id="MOVED-V")]
        )

    assert exc_info.value.is_variant_conflict
    assert variants.rows == [previous]


def test_orders_without_payments_filters_in_postgrest(client):
    order_id = uuid4()
    orders = client.table("orders").table
    orders.rows = [
        {
            "id": str(order_id),
            "square_order_id": "sq-order-1",
            "payment_status": "PENDING",
            "created_at": datetime.now(timezone.utc).isoformat(),
            "payments": [],
        }
    ]

    found = SupabaseService(client=client).find_orders_without_payments(
        datetime.now(timezone.utc) - timedelta(hours=1), limit=50
    )

    query = orders.queries[-1]
    assert ("is", "payments", "null") in query.filters
    assert query.limit_value == 50
    assert [o.id for o in found] == [order_id]
    assert found[0].square_order_id == "sq-order-1"
