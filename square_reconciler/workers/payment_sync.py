"""
Payment sync service - fallback recovery for missed Square webhooks.

Pulls recent payments from Square, diffs them against local payment records,
creates what is missing, optionally re-verifies what exists and relinks local
orders that never got a payment attached. Safe to run repeatedly and
concurrently with webhook processing.
"""
import asyncio
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence
from uuid import uuid4

import structlog

from square_reconciler.config import settings
from square_reconciler.integrations.square.models import SquarePayment
from square_reconciler.models.database import (
    Payment,
    PaymentStatus,
    PaymentSyncStatus,
)
from square_reconciler.models.sync import (
    PaymentSyncError,
    PaymentSyncMetadata,
    PaymentSyncRequest,
    PaymentSyncResult,
    SyncType,
)
from square_reconciler.models.webhook import SquareEnvironment
from square_reconciler.services.slack_service import AlertService, get_alert_service
from square_reconciler.services.square_client import SquareClient
from square_reconciler.services.supabase_service import SupabaseService, UniqueConstraintError
from square_reconciler.utils.logger import bind_sync_context, clear_sync_context

logger = structlog.get_logger()

PROCESSED = "processed"
FAILED = "failed"
SKIPPED = "skipped"

ENVIRONMENTS: Sequence[SquareEnvironment] = ("production", "sandbox")


def map_square_payment_status(square_status: Optional[str]) -> PaymentStatus:
    """Map a Square payment status onto the local PaymentStatus enum."""
    normalized = (square_status or "").upper()
    if normalized == "COMPLETED":
        return PaymentStatus.PAID
    if normalized == "PENDING":
        return PaymentStatus.PENDING
    if normalized in ("FAILED", "CANCELED"):
        return PaymentStatus.FAILED
    logger.warning("Unknown Square payment status, defaulting to PENDING", square_status=square_status)
    return PaymentStatus.PENDING


def generate_sync_id(sync_type: SyncType) -> str:
    return f"sync_{sync_type.value}_{int(time.time() * 1000)}_{uuid4().hex[:6]}"


class PaymentSyncService:
    """Reconciles local payment state against Square's payment ledger."""

    def __init__(
        self,
        environment: SquareEnvironment = "production",
        square_client: Optional[SquareClient] = None,
        supabase_service: Optional[SupabaseService] = None,
        alert_service: Optional[AlertService] = None,
        max_pages: Optional[int] = None,
        batch_delay_seconds: Optional[float] = None,
    ):
        self.environment = environment
        self._owns_client = square_client is None
        self.square_client = square_client or SquareClient.for_environment(environment)
        self.supabase_service = supabase_service or SupabaseService()
        self.alert_service = alert_service or get_alert_service()
        self.max_pages = max_pages or settings.payment_sync_max_pages
        self.batch_delay_seconds = (
            batch_delay_seconds
            if batch_delay_seconds is not None
            else settings.payment_sync_batch_delay_seconds
        )

    async def close(self):
        if self._owns_client:
            await self.square_client.close()

    async def _db(self, fn: Callable, *args, **kwargs):
        """Run a blocking Supabase call off the event loop."""
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def sync_payments(self, request: PaymentSyncRequest) -> PaymentSyncResult:
        """
        Execute one payment sync run.

        Never raises: a failure anywhere in the pipeline is recorded on the
        sync status row, alerted at high severity and returned as a failed result.
        """
        sync_id = generate_sync_id(request.sync_type)
        start_time = datetime.now(timezone.utc)
        started = time.perf_counter()
        bind_sync_context(sync_id, request.sync_type.value, self.environment)

        result = PaymentSyncResult(
            sync_id=sync_id,
            start_time=start_time,
            end_time=start_time,
            metadata=PaymentSyncMetadata(
                environment=self.environment,
                sync_type=request.sync_type,
                merchant_id=request.merchant_id,
            ),
        )
        dispositions: Dict[str, str] = {}

        logger.info(
            "Starting payment sync",
            lookback_minutes=request.lookback_minutes,
            merchant_id=request.merchant_id,
            force_sync=request.force_sync,
        )

        try:
            # Start marker goes in before any remote call so a crash is still visible
            await self._db(
                self.supabase_service.create_payment_sync_status,
                PaymentSyncStatus(
                    sync_id=sync_id,
                    sync_type=request.sync_type.value,
                    merchant_id=request.merchant_id,
                    start_time=start_time,
                    metadata={
                        "environment": self.environment,
                        "lookback_minutes": request.lookback_minutes,
                        "force_sync": request.force_sync,
                        "batch_size": request.batch_size,
                    },
                ),
            )

            since = start_time - timedelta(minutes=request.lookback_minutes)
            square_payments = await self.fetch_recent_payments(since)
            result.payments_found = len(square_payments)

            missing_ids, existing = await self._db(
                self.supabase_service.find_missing_payments,
                [p.id for p in square_payments],
            )
            missing_set = set(missing_ids)
            existing_set = {p.square_payment_id for p in existing}
            logger.info(
                "Payment diff computed",
                found=len(square_payments),
                existing=len(existing_set),
                missing=len(missing_set),
            )

            await self._process_missing_payments(
                [p for p in square_payments if p.id in missing_set],
                request.batch_size,
                dispositions,
                result.errors,
            )

            existing_payments = [p for p in square_payments if p.id in existing_set]
            if request.force_sync:
                await self._update_existing_payments(existing_payments, dispositions, result.errors)
            else:
                for payment in existing_payments:
                    dispositions[payment.id] = SKIPPED

            orphans = await self._db(
                self.supabase_service.find_orders_without_payments, since, 50
            )
            if orphans:
                logger.info("Found orders without payment records", count=len(orphans))
                await self._process_orphaned_orders(orphans, square_payments, dispositions, result.errors)

            self._tally(result, dispositions)
            result.success = not result.errors or result.payments_processed > result.payments_failed
            result.end_time = datetime.now(timezone.utc)
            result.duration = (time.perf_counter() - started) * 1000

            await self._db(
                self.supabase_service.update_payment_sync_status,
                sync_id,
                {
                    "end_time": result.end_time,
                    "payments_found": result.payments_found,
                    "payments_processed": result.payments_processed,
                    "payments_failed": result.payments_failed,
                    "error_details": (
                        {"errors": [e.model_dump() for e in result.errors]} if result.errors else None
                    ),
                },
            )

            await self._safe_metric(result)
            logger.info(
                "Payment sync completed",
                success=result.success,
                found=result.payments_found,
                processed=result.payments_processed,
                failed=result.payments_failed,
                skipped=result.payments_skipped,
                duration_ms=round(result.duration, 1),
            )
            return result

        except Exception as e:
            self._tally(result, dispositions)
            result.success = False
            result.end_time = datetime.now(timezone.utc)
            result.duration = (time.perf_counter() - started) * 1000
            result.errors.append(PaymentSyncError(payment_id="sync_error", error=str(e)))

            logger.error("Payment sync failed", error=str(e), error_type=type(e).__name__)

            try:
                await self._db(
                    self.supabase_service.update_payment_sync_status,
                    sync_id,
                    {
                        "end_time": result.end_time,
                        "payments_found": result.payments_found,
                        "payments_processed": result.payments_processed,
                        "payments_failed": result.payments_failed + 1,
                        "error_details": {
                            "sync_error": str(e),
                            "errors": [err.model_dump() for err in result.errors],
                        },
                    },
                )
            except Exception as status_error:
                logger.error("Could not record payment sync failure", error=str(status_error))

            await self._safe_alert(
                severity="high",
                title="Payment Sync Failed",
                message=f"Payment sync operation {sync_id} failed",
                details={
                    "sync_id": sync_id,
                    "environment": self.environment,
                    "error": str(e),
                    "duration_ms": round(result.duration, 1),
                },
            )
            return result
        finally:
            clear_sync_context()

    async def fetch_recent_payments(self, since: datetime) -> List[SquarePayment]:
        """
        Fetch every Square payment created since `since`.
        Follows cursors for at most max_pages pages.
        """
        payments: Dict[str, SquarePayment] = {}
        cursor: Optional[str] = None
        page = 0

        while True:
            page_payments, cursor = await self.square_client.list_payments(begin_time=since, cursor=cursor)
            page += 1
            for payment in page_payments:
                payments.setdefault(payment.id, payment)
            if not cursor:
                break
            if page >= self.max_pages:
                logger.warning(
                    "Payment pagination stopped at page ceiling",
                    max_pages=self.max_pages,
                    fetched=len(payments),
                )
                break

        logger.info("Fetched payments from Square", count=len(payments), pages=page)
        return list(payments.values())

    async def _process_missing_payments(
        self,
        missing: List[SquarePayment],
        batch_size: int,
        dispositions: Dict[str, str],
        errors: List[PaymentSyncError],
    ) -> None:
        logger.info("Processing missing payments", count=len(missing), batch_size=batch_size)

        for start in range(0, len(missing), batch_size):
            for payment in missing[start:start + batch_size]:
                try:
                    dispositions[payment.id] = await self.process_single_payment(payment)
                except Exception as e:
                    dispositions[payment.id] = FAILED
                    errors.append(PaymentSyncError(payment_id=payment.id, error=str(e)))
                    logger.error("Failed to process payment", payment_id=payment.id, error=str(e))

            if start + batch_size < len(missing) and self.batch_delay_seconds:
                await asyncio.sleep(self.batch_delay_seconds)

    async def process_single_payment(self, payment: SquarePayment) -> str:
        """
        Create the local record for one Square payment.

        Returns:
            PROCESSED when a record was created, SKIPPED when there is nothing to
            link it to (no order id, no local order) or it was recorded concurrently
        """
        if not payment.order_id:
            logger.warning("Square payment has no order id", payment_id=payment.id)
            return SKIPPED

        local_order = await self._db(
            self.supabase_service.find_order_by_square_order_id, payment.order_id
        )
        if not local_order:
            logger.warning(
                "No local order for Square payment",
                payment_id=payment.id,
                square_order_id=payment.order_id,
            )
            return SKIPPED

        status = map_square_payment_status(payment.status)
        amount = (
            Decimal(payment.amount_money.amount) / 100 if payment.amount_money else Decimal("0")
        )

        try:
            await self._db(
                self.supabase_service.create_payment_from_square_data,
                Payment(
                    square_payment_id=payment.id,
                    order_id=local_order.id,
                    amount=amount,
                    status=status,
                    raw_data=payment.snapshot(),
                ),
            )
        except UniqueConstraintError:
            # A webhook recorded it between our diff and this insert
            logger.info("Payment recorded concurrently", payment_id=payment.id)
            return SKIPPED

        if local_order.payment_status != status:
            await self._db(self.supabase_service.update_order_payment_status, local_order.id, status)

        logger.info("Recorded missing payment", payment_id=payment.id, status=status.value)
        return PROCESSED

    async def record_payment_event(self, payment: SquarePayment) -> str:
        """Apply a payment pushed by a webhook: refresh it if known, create it otherwise."""
        _, existing = await self._db(self.supabase_service.find_missing_payments, [payment.id])
        if not existing:
            return await self.process_single_payment(payment)

        await self._db(
            self.supabase_service.update_payment_from_square_data,
            payment.id,
            map_square_payment_status(payment.status),
            payment.snapshot(),
        )
        return PROCESSED

    async def _update_existing_payments(
        self,
        payments: List[SquarePayment],
        dispositions: Dict[str, str],
        errors: List[PaymentSyncError],
    ) -> None:
        for payment in payments:
            try:
                await self._db(
                    self.supabase_service.update_payment_from_square_data,
                    payment.id,
                    map_square_payment_status(payment.status),
                    payment.snapshot(),
                )
                dispositions[payment.id] = PROCESSED
            except Exception as e:
                dispositions[payment.id] = FAILED
                errors.append(PaymentSyncError(payment_id=payment.id, error=str(e)))
                logger.error("Failed to refresh existing payment", payment_id=payment.id, error=str(e))

    async def _process_orphaned_orders(
        self,
        orders,
        square_payments: List[SquarePayment],
        dispositions: Dict[str, str],
        errors: List[PaymentSyncError],
    ) -> None:
        # Payments arrive newest first; the newest payment for an order wins
        by_order_id: Dict[str, SquarePayment] = {}
        for p in square_payments:
            if p.order_id:
                by_order_id.setdefault(p.order_id, p)

        for order in orders:
            if not order.square_order_id:
                continue
            payment = by_order_id.get(order.square_order_id)
            if payment is None:
                logger.warning("No Square payment for orphaned order", order_id=str(order.id))
                continue
            if dispositions.get(payment.id) == PROCESSED:
                continue

            try:
                outcome = await self.process_single_payment(payment)
                if outcome == PROCESSED:
                    dispositions[payment.id] = PROCESSED
                    logger.info(
                        "Linked orphaned order",
                        order_id=str(order.id),
                        payment_id=payment.id,
                    )
            except Exception as e:
                errors.append(PaymentSyncError(payment_id=str(order.id), error=str(e)))
                logger.error("Failed to link orphaned order", order_id=str(order.id), error=str(e))

    @staticmethod
    def _tally(result: PaymentSyncResult, dispositions: Dict[str, str]) -> None:
        outcomes = list(dispositions.values())
        result.payments_processed = outcomes.count(PROCESSED)
        result.payments_failed = outcomes.count(FAILED)
        result.payments_skipped = outcomes.count(SKIPPED)

    async def _safe_alert(self, **kwargs) -> None:
        try:
            await self.alert_service.send_webhook_alert(**kwargs)
        except Exception as e:
            logger.warning("Alert delivery failed", error=str(e))

    async def _safe_metric(self, result: PaymentSyncResult) -> None:
        try:
            await self.alert_service.track_metric(
                type="payment_sync",
                environment=self.environment,
                valid=result.success,
                duration=result.duration,
            )
        except Exception as e:
            logger.warning("Metric tracking failed", error=str(e))


ServiceFactory = Callable[[SquareEnvironment], PaymentSyncService]


def _failed_result(environment: SquareEnvironment, sync_type: SyncType, error: str) -> PaymentSyncResult:
    now = datetime.now(timezone.utc)
    return PaymentSyncResult(
        success=False,
        sync_id=generate_sync_id(sync_type),
        errors=[PaymentSyncError(payment_id="sync_error", error=error)],
        start_time=now,
        end_time=now,
        metadata=PaymentSyncMetadata(environment=environment, sync_type=sync_type),
    )


async def sync_recent_payments(
    lookback_minutes: Optional[int] = None,
    environment: SquareEnvironment = "production",
    sync_type: SyncType = SyncType.MANUAL,
    force_sync: bool = False,
    service: Optional[PaymentSyncService] = None,
) -> PaymentSyncResult:
    """Run one payment sync for an environment (admin/API entry point)."""
    owned = service is None
    try:
        service = service or PaymentSyncService(environment)
    except Exception as e:
        logger.error("Could not start payment sync", environment=environment, error=str(e))
        result = _failed_result(environment, sync_type, str(e))
        try:
            await get_alert_service().send_webhook_alert(
                severity="high",
                title="Payment Sync Failed",
                message=f"Payment sync for {environment} could not start",
                details={"environment": environment, "error": str(e)},
            )
        except Exception as alert_error:
            logger.warning("Alert delivery failed", error=str(alert_error))
        return result

    try:
        return await service.sync_payments(
            PaymentSyncRequest(
                lookback_minutes=lookback_minutes or settings.payment_sync_lookback_minutes,
                sync_type=sync_type,
                force_sync=force_sync,
            )
        )
    finally:
        if owned:
            await service.close()


async def scheduled_payment_sync(
    environments: Sequence[SquareEnvironment] = ENVIRONMENTS,
    service_factory: Optional[ServiceFactory] = None,
    alert_service: Optional[AlertService] = None,
) -> PaymentSyncResult:
    """
    Sync every Square environment with a short lookback and combine the results.
    A failing environment never stops the others from running or being reported.
    """
    logger.info("Starting scheduled payment sync", environments=list(environments))
    factory = service_factory or PaymentSyncService
    alerts = alert_service or get_alert_service()
    results: List[PaymentSyncResult] = []

    for environment in environments:
        service = None
        try:
            service = factory(environment)
            results.append(
                await service.sync_payments(
                    PaymentSyncRequest(
                        lookback_minutes=15,
                        sync_type=SyncType.SCHEDULED,
                        force_sync=False,
                        batch_size=20,
                    )
                )
            )
        except Exception as e:
            logger.error("Scheduled sync failed", environment=environment, error=str(e))
            results.append(_failed_result(environment, SyncType.SCHEDULED, str(e)))
            try:
                await alerts.send_webhook_alert(
                    severity="medium",
                    title=f"Scheduled Payment Sync Failed ({environment})",
                    message=f"Scheduled payment sync failed for {environment} environment",
                    details={"environment": environment, "error": str(e)},
                )
            except Exception as alert_error:
                logger.warning("Alert delivery failed", error=str(alert_error))
        finally:
            if service is not None:
                try:
                    await service.close()
                except Exception as close_error:
                    logger.warning("Failed to close Square client", error=str(close_error))

    return combine_results(results, SyncType.SCHEDULED)


def combine_results(results: List[PaymentSyncResult], sync_type: SyncType) -> PaymentSyncResult:
    now = datetime.now(timezone.utc)
    errors: List[PaymentSyncError] = []
    for r in results:
        errors.extend(
            PaymentSyncError(payment_id=e.payment_id, error=f"[{r.metadata.environment}] {e.error}")
            for e in r.errors
        )

    return PaymentSyncResult(
        success=bool(results) and all(r.success for r in results),
        sync_id=f"combined_{int(time.time() * 1000)}",
        payments_found=sum(r.payments_found for r in results),
        payments_processed=sum(r.payments_processed for r in results),
        payments_failed=sum(r.payments_failed for r in results),
        payments_skipped=sum(r.payments_skipped for r in results),
        errors=errors,
        duration=max((r.duration for r in results), default=0.0),
        start_time=min((r.start_time for r in results), default=now),
        end_time=max((r.end_time for r in results), default=now),
        metadata=PaymentSyncMetadata(
            environment=results[0].metadata.environment if results else "production",
            sync_type=sync_type,
        ),
    )


async def emergency_payment_sync(
    event_id: str,
    environment: SquareEnvironment,
    merchant_id: Optional[str] = None,
    service: Optional[PaymentSyncService] = None,
    alert_service: Optional[AlertService] = None,
) -> PaymentSyncResult:
    """
    Last line of defence after a webhook processing failure: wide lookback,
    forced re-verification, critical alert if this run fails too.
    """
    logger.warning("Emergency payment sync triggered", event_id=event_id, environment=environment)
    owned = service is None
    try:
        service = service or PaymentSyncService(environment)
    except Exception as e:
        logger.error("Could not start emergency payment sync", event_id=event_id, error=str(e))
        service = None
        result = _failed_result(environment, SyncType.WEBHOOK_FALLBACK, str(e))
    else:
        try:
            result = await service.sync_payments(
                PaymentSyncRequest(
                    lookback_minutes=120,
                    merchant_id=merchant_id,
                    sync_type=SyncType.WEBHOOK_FALLBACK,
                    force_sync=True,
                    batch_size=50,
                )
            )
        finally:
            if owned:
                try:
                    await service.close()
                except Exception as close_error:
                    logger.warning("Failed to close Square client", error=str(close_error))

    if not result.success:
        try:
            alerts = alert_service or (service.alert_service if service else get_alert_service())
            await alerts.send_webhook_alert(
                severity="critical",
                title="Emergency Payment Sync Failed",
                message=f"Emergency payment sync failed after webhook failure for event {event_id}",
                details={
                    "event_id": event_id,
                    "environment": environment,
                    "sync_id": result.sync_id,
                    "errors": len(result.errors),
                },
            )
        except Exception as e:
            logger.warning("Alert delivery failed", error=str(e))

    return result
