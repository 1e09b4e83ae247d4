"""
FastAPI router for Square webhook notifications.
Gate order: request security check, full signature validation, deduplication,
acknowledgment. Payment events are applied in the background; if that fails an
emergency payment sync runs instead.
"""
from typing import Callable, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from pydantic import ValidationError as PydanticValidationError

from square_reconciler.integrations.square.models import SquarePayment, SquareWebhookEvent
from square_reconciler.integrations.square.signature import (
    SignatureValidator,
    check_request_security,
)
from square_reconciler.models.webhook import SquareEnvironment, ValidationErrorKind
from square_reconciler.services.dedup_store import EventDedupStore
from square_reconciler.services.slack_service import AlertService, get_alert_service
from square_reconciler.workers.payment_sync import PaymentSyncService, emergency_payment_sync

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

PaymentServiceFactory = Callable[[SquareEnvironment], PaymentSyncService]

_validator: Optional[SignatureValidator] = None
_dedup_store: Optional[EventDedupStore] = None

ERROR_STATUS = {
    ValidationErrorKind.MISSING_SIGNATURE: status.HTTP_401_UNAUTHORIZED,
    ValidationErrorKind.INVALID_SIGNATURE: status.HTTP_401_UNAUTHORIZED,
    ValidationErrorKind.MISSING_SECRET: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ValidationErrorKind.EVENT_TOO_OLD: status.HTTP_400_BAD_REQUEST,
    ValidationErrorKind.MALFORMED_BODY: status.HTTP_400_BAD_REQUEST,
    ValidationErrorKind.INVALID_PAYLOAD: status.HTTP_400_BAD_REQUEST,
}


def get_validator() -> SignatureValidator:
    global _validator
    if _validator is None:
        _validator = SignatureValidator()
    return _validator


def get_dedup_store() -> EventDedupStore:
    global _dedup_store
    if _dedup_store is None:
        _dedup_store = EventDedupStore()
    return _dedup_store


async def close_dedup_store() -> None:
    global _dedup_store
    if _dedup_store is not None:
        await _dedup_store.close()
        _dedup_store = None


def get_payment_service_factory() -> PaymentServiceFactory:
    return PaymentSyncService


async def process_payment_event(
    event: SquareWebhookEvent,
    environment: SquareEnvironment,
    service_factory: PaymentServiceFactory,
    alert_service: AlertService,
    dedup_store: Optional[EventDedupStore] = None,
) -> None:
    """
    Apply a payment.* event; fall back to an emergency sync on any failure.

    When neither path succeeds the event's dedup claim is released so that
    Square's redelivery gets another attempt.
    """
    service: Optional[PaymentSyncService] = None
    handled = False
    try:
        service = service_factory(environment)
        raw_payment = (event.data.object or {}).get("payment")
        if not raw_payment:
            raise ValueError(f"Event {event.event_id} carries no payment object")
        payment = SquarePayment.model_validate(raw_payment)
        outcome = await service.record_payment_event(payment)
        logger.info(
            "Payment webhook applied",
            event_id=event.event_id,
            payment_id=payment.id,
            outcome=outcome,
        )
        handled = True
    except Exception as e:
        logger.error(
            "Payment webhook processing failed, running emergency sync",
            event_id=event.event_id,
            event_type=event.type,
            error=str(e),
        )
        result = await emergency_payment_sync(
            event.event_id,
            environment,
            merchant_id=event.merchant_id,
            service=service,
            alert_service=alert_service,
        )
        handled = result.success
    finally:
        if service is not None:
            try:
                await service.close()
            except Exception as close_error:
                logger.warning("Failed to close Square client", error=str(close_error))

    if not handled and dedup_store is not None:
        try:
            await dedup_store.release(event.event_id)
            logger.warning("Released dedup claim for unprocessed event", event_id=event.event_id)
        except Exception as e:
            logger.error("Failed to release dedup claim", event_id=event.event_id, error=str(e))


@router.post("/square")
async def square_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    validator: SignatureValidator = Depends(get_validator),
    dedup_store: EventDedupStore = Depends(get_dedup_store),
    alert_service: AlertService = Depends(get_alert_service),
    service_factory: PaymentServiceFactory = Depends(get_payment_service_factory),
):
    """
    Handle a Square webhook notification.

    Returns 200 for accepted and duplicate events; 4xx/5xx when the request
    fails the security gate or signature validation.
    """
    body = await request.body()

    is_safe, security_error = check_request_security(request.headers, len(body))
    if not is_safe:
        logger.warning("Webhook rejected by security check", reason=security_error)
        raise HTTPException(
            status_code=(
                status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
                if security_error == "Request body too large"
                else status.HTTP_401_UNAUTHORIZED
            ),
            detail=security_error,
        )

    result = validator.validate(request.headers, body)
    await alert_service.track_metric(
        type="webhook_validation",
        environment=result.environment,
        valid=result.valid,
        duration=result.metadata.processing_time_ms if result.metadata else 0.0,
        error_type=result.error_kind.value if result.error_kind else None,
    )

    if not result.valid:
        logger.warning(
            "Square webhook validation failed",
            environment=result.environment,
            error_type=result.error_kind.value if result.error_kind else None,
        )
        if result.error_kind == ValidationErrorKind.MISSING_SECRET:
            await alert_service.send_webhook_alert(
                severity="critical",
                title="Square Webhook Secret Missing",
                message=f"No webhook secret configured for {result.environment}",
                details={"environment": result.environment},
            )
        raise HTTPException(
            status_code=ERROR_STATUS.get(result.error_kind, status.HTTP_400_BAD_REQUEST),
            detail=result.error.model_dump(exclude_none=True) if result.error else "Invalid webhook",
        )

    event_id = result.event_id or ""
    # Only reached with a valid signature; a forged request never claims an event id
    try:
        claimed = await dedup_store.claim(event_id)
    except Exception as e:
        logger.error("Dedup store unavailable, processing event anyway", event_id=event_id, error=str(e))
        claimed = True

    if not claimed:
        logger.info("Duplicate Square webhook ignored", event_id=event_id, event_type=result.event_type)
        return {"status": "duplicate", "event_id": event_id}

    logger.info(
        "Square webhook accepted",
        event_id=event_id,
        event_type=result.event_type,
        environment=result.environment,
        webhook_id=result.metadata.webhook_id if result.metadata else None,
    )

    if result.event_type and result.event_type.startswith("payment."):
        try:
            event = SquareWebhookEvent.model_validate_json(body)
        except PydanticValidationError as e:
            logger.error("Could not re-read validated event", event_id=event_id, error=str(e))
        else:
            background_tasks.add_task(
                process_payment_event,
                event,
                result.environment,
                service_factory,
                alert_service,
                dedup_store,
            )

    return {
        "status": "accepted",
        "event_id": event_id,
        "environment": result.environment,
    }
