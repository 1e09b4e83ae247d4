"""Tests for the payment sync service and its scheduled/emergency wrappers."""
from decimal import Decimal

import httpx
import pytest

from fakes import FakeSquareClient, make_payment
from square_reconciler.models.database import Payment, PaymentStatus
from square_reconciler.models.sync import PaymentSyncRequest, SyncType
from square_reconciler.workers import payment_sync
from square_reconciler.workers.payment_sync import (
    PROCESSED,
    SKIPPED,
    PaymentSyncService,
    emergency_payment_sync,
    map_square_payment_status,
    scheduled_payment_sync,
    sync_recent_payments,
)


def _service(fake_db, fake_alerts, square_client, environment="production", **kwargs):
    return PaymentSyncService(
        environment=environment,
        square_client=square_client,
        supabase_service=fake_db,
        alert_service=fake_alerts,
        batch_delay_seconds=0,
        **kwargs,
    )


@pytest.mark.parametrize(
    "square_status,expected",
    [
        ("COMPLETED", PaymentStatus.PAID),
        ("PENDING", PaymentStatus.PENDING),
        ("FAILED", PaymentStatus.FAILED),
        ("CANCELED", PaymentStatus.FAILED),
        ("APPROVED", PaymentStatus.PENDING),
        (None, PaymentStatus.PENDING),
    ],
)
def test_map_square_payment_status(square_status, expected):
    assert map_square_payment_status(square_status) == expected


@pytest.mark.anyio
async def test_second_run_without_new_payments_processes_nothing(fake_db, fake_alerts):
    orders = [fake_db.add_order(f"order-{i}") for i in range(3)]
    square = FakeSquareClient(payments=[make_payment(f"pay-{i}", f"order-{i}") for i in range(3)])
    service = _service(fake_db, fake_alerts, square)

    first = await service.sync_payments(PaymentSyncRequest())
    second = await service.sync_payments(PaymentSyncRequest())

    assert first.success is True
    assert first.payments_processed == 3
    assert second.payments_found == 3
    assert second.payments_processed == 0
    assert second.payments_skipped == 3
    assert second.success is True
    assert all(fake_db.orders[o.id].payment_status == PaymentStatus.PAID for o in orders)
    assert fake_db.payments["pay-0"].amount == Decimal("12.50")


@pytest.mark.anyio
async def test_hundred_payments_all_attempted_in_batches_of_twenty(fake_db, fake_alerts):
    payments = [make_payment(f"pay-{i}", f"order-{i}") for i in range(100)]
    for i in range(60):
        fake_db.add_order(f"order-{i}")
    fake_db.failing_payment_ids = {f"pay-{i}" for i in range(50, 60)}
    square = FakeSquareClient(payments=payments, page_size=30)
    service = _service(fake_db, fake_alerts, square)

    result = await service.sync_payments(PaymentSyncRequest(batch_size=20))

    assert square.list_calls == 4
    assert result.payments_found == 100
    assert result.payments_processed == 50
    assert result.payments_failed == 10
    assert result.payments_skipped == 40
    assert result.payments_processed + result.payments_failed + result.payments_skipped == 100
    assert result.success is True
    assert fake_db.sync_status[result.sync_id]["payments_failed"] == 10


@pytest.mark.anyio
async def test_missing_local_order_is_skipped_not_failed(fake_db, fake_alerts):
    square = FakeSquareClient(payments=[make_payment("pay-1", "unknown-order"), make_payment("pay-2")])
    service = _service(fake_db, fake_alerts, square)

    result = await service.sync_payments(PaymentSyncRequest())

    assert result.payments_skipped == 2
    assert result.errors == []
    assert fake_db.payments == {}


@pytest.mark.anyio
async def test_force_sync_refreshes_status_but_keeps_local_notes(fake_db, fake_alerts):
    order = fake_db.add_order("order-1")
    fake_db.payments["pay-1"] = Payment(
        square_payment_id="pay-1",
        order_id=order.id,
        amount=Decimal("12.50"),
        status=PaymentStatus.PENDING,
        notes="called customer",
    )
    square = FakeSquareClient(payments=[make_payment("pay-1", "order-1", status="COMPLETED")])
    service = _service(fake_db, fake_alerts, square)

    result = await service.sync_payments(PaymentSyncRequest(force_sync=True))

    assert result.payments_processed == 1
    assert fake_db.payments["pay-1"].status == PaymentStatus.PAID
    assert fake_db.payments["pay-1"].notes == "called customer"
    assert fake_db.payments["pay-1"].raw_data["source_type"] == "CARD"


@pytest.mark.anyio
async def test_orphaned_order_is_relinked_after_failed_first_attempt(fake_db, fake_alerts):
    order = fake_db.add_order("order-1")
    fake_db.flaky_payment_ids = {"pay-1"}
    square = FakeSquareClient(payments=[make_payment("pay-1", "order-1")])
    service = _service(fake_db, fake_alerts, square)

    result = await service.sync_payments(PaymentSyncRequest())

    assert result.payments_processed == 1
    assert result.payments_failed == 0
    assert len(result.errors) == 1
    assert fake_db.payments["pay-1"].order_id == order.id


@pytest.mark.anyio
async def test_pagination_stops_at_page_ceiling(fake_db, fake_alerts):
    square = FakeSquareClient(payments=[make_payment(f"pay-{i}") for i in range(500)], page_size=100)
    service = _service(fake_db, fake_alerts, square, max_pages=2)

    result = await service.sync_payments(PaymentSyncRequest())

    assert square.list_calls == 2
    assert result.payments_found == 200


@pytest.mark.anyio
async def test_pipeline_failure_returns_failed_result_and_alerts(fake_db, fake_alerts):
    square = FakeSquareClient(error=httpx.ConnectError("connection refused"))
    service = _service(fake_db, fake_alerts, square)

    result = await service.sync_payments(PaymentSyncRequest())

    assert result.success is False
    assert result.errors[-1].payment_id == "sync_error"
    assert fake_alerts.severities() == ["high"]
    assert "sync_error" in fake_db.sync_status[result.sync_id]["error_details"]


@pytest.mark.anyio
async def test_scheduled_sync_combines_results_when_production_is_down(fake_db, fake_alerts):
    fake_db.add_order("order-1")
    fake_db.add_order("order-2")
    clients = {
        "production": FakeSquareClient("production", error=httpx.ConnectError("unreachable")),
        "sandbox": FakeSquareClient(
            "sandbox", payments=[make_payment("pay-1", "order-1"), make_payment("pay-2", "order-2")]
        ),
    }

    def factory(environment):
        return _service(fake_db, fake_alerts, clients[environment], environment=environment)

    result = await scheduled_payment_sync(service_factory=factory, alert_service=fake_alerts)

    assert result.sync_id.startswith("combined_")
    assert result.success is False
    assert result.payments_found == 2
    assert result.payments_processed == 2
    assert any(e.error.startswith("[production]") for e in result.errors)
    assert clients["sandbox"].list_calls == 1


@pytest.mark.anyio
async def test_scheduled_sync_survives_service_construction_failure(fake_db, fake_alerts):
    sandbox = FakeSquareClient("sandbox")

    def factory(environment):
        if environment == "production":
            raise RuntimeError("missing production token")
        return _service(fake_db, fake_alerts, sandbox, environment="sandbox")

    result = await scheduled_payment_sync(service_factory=factory, alert_service=fake_alerts)

    assert result.success is False
    assert "medium" in fake_alerts.severities()
    assert sandbox.list_calls == 1


@pytest.mark.anyio
async def test_emergency_sync_uses_wide_lookback_and_escalates_failure(fake_db, fake_alerts):
    square = FakeSquareClient("sandbox", error=httpx.ReadTimeout("timed out"))
    service = _service(fake_db, fake_alerts, square, environment="sandbox")

    result = await emergency_payment_sync("evt-1", "sandbox", service=service, alert_service=fake_alerts)

    assert result.success is False
    assert result.metadata.sync_type == SyncType.WEBHOOK_FALLBACK
    status = fake_db.sync_status[result.sync_id]
    assert status["metadata"]["lookback_minutes"] == 120
    assert status["metadata"]["force_sync"] is True
    assert fake_alerts.severities() == ["high", "critical"]


@pytest.mark.anyio
async def test_record_payment_event_creates_then_updates(fake_db, fake_alerts):
    fake_db.add_order("order-1")
    service = _service(fake_db, fake_alerts, FakeSquareClient())

    assert await service.record_payment_event(make_payment("pay-1", "order-1", status="PENDING")) == PROCESSED
    assert await service.record_payment_event(make_payment("pay-1", "order-1", status="CANCELED")) == PROCESSED
    assert fake_db.payments["pay-1"].status == PaymentStatus.FAILED
    assert await service.record_payment_event(make_payment("pay-9", "order-9")) == SKIPPED


@pytest.mark.anyio
async def test_orphaned_order_links_newest_payment(fake_db, fake_alerts):
    order = fake_db.add_order("order-1")
    fake_db.flaky_payment_ids = {"pay-new", "pay-old"}
    square = FakeSquareClient(
        payments=[
            make_payment("pay-new", "order-1", status="COMPLETED"),
            make_payment("pay-old", "order-1", status="FAILED"),
        ]
    )

    await _service(fake_db, fake_alerts, square).sync_payments(PaymentSyncRequest())

    assert list(fake_db.payments) == ["pay-new"]
    assert fake_db.orders[order.id].payment_status == PaymentStatus.PAID


class _UnbuildableService:
    def __init__(self, environment):
        raise RuntimeError("supabase_url is required")


@pytest.mark.anyio
async def test_emergency_sync_escalates_when_service_cannot_start(monkeypatch, fake_alerts):
    monkeypatch.setattr(payment_sync, "PaymentSyncService", _UnbuildableService)

    result = await emergency_payment_sync("evt-1", "sandbox", alert_service=fake_alerts)

    assert result.success is False
    assert result.metadata.sync_type == SyncType.WEBHOOK_FALLBACK
    assert "supabase_url is required" in result.errors[0].error
    assert fake_alerts.severities() == ["critical"]


@pytest.mark.anyio
async def test_manual_sync_returns_failed_result_when_service_cannot_start(monkeypatch, fake_alerts):
    monkeypatch.setattr(payment_sync, "PaymentSyncService", _UnbuildableService)
    monkeypatch.setattr(payment_sync, "get_alert_service", lambda: fake_alerts)

    result = await sync_recent_payments(environment="sandbox")

    assert result.success is False
    assert result.metadata.environment == "sandbox"
    assert fake_alerts.severities() == ["high"]
