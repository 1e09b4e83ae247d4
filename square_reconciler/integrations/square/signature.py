"""
Square webhook signature validation.

Authenticates inbound Square notifications against the configured webhook
secrets, rejects stale events and reports every failure as a tagged
SignatureValidationResult instead of raising.
"""

import base64
import binascii
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional, Tuple, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from square_reconciler.config import settings
from square_reconciler.integrations.square.models import SquareWebhookEvent
from square_reconciler.models.webhook import (
    SignatureAlgorithm,
    SignatureValidationResult,
    SquareEnvironment,
    ValidationError,
    ValidationErrorKind,
    ValidationMetadata,
)

logger = structlog.get_logger()

SIGNATURE_HEADER_SHA256 = "x-square-hmacsha256-signature"
SIGNATURE_HEADER_SHA1 = "x-square-hmacsha1-signature"
ENVIRONMENT_HEADER = "square-environment"

_DIGESTS = {"sha256": hashlib.sha256, "sha1": hashlib.sha1}


def sanitize_secret(secret: Optional[str]) -> Optional[str]:
    """Strip surrounding whitespace (including stray newlines/tabs) from a secret."""
    if secret is None:
        return None
    cleaned = secret.strip()
    return cleaned or None


def calculate_signature(
    body: bytes, secret: str, algorithm: SignatureAlgorithm = "sha256"
) -> str:
    """Base64-encoded HMAC of the raw body."""
    digest = hmac.new(secret.encode("utf-8"), body, _DIGESTS[algorithm]).digest()
    return base64.b64encode(digest).decode("utf-8")


def signatures_match(received: str, expected: str) -> bool:
    """
    Constant-time comparison of two base64 signatures.
    Falls back to plain equality when the values can't be decoded for the
    constant-time primitive.
    """
    try:
        return hmac.compare_digest(
            base64.b64decode(received, validate=True),
            base64.b64decode(expected, validate=True),
        )
    except (binascii.Error, ValueError, TypeError):
        return received == expected


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}


def detect_environment(headers: Mapping[str, str]) -> SquareEnvironment:
    value = _lower_headers(headers).get(ENVIRONMENT_HEADER, "")
    return "sandbox" if value.strip().lower() == "sandbox" else "production"


def extract_signature(
    headers: Mapping[str, str],
) -> Tuple[Optional[str], Optional[SignatureAlgorithm]]:
    """Return (signature, algorithm), preferring SHA256 over SHA1."""
    lowered = _lower_headers(headers)
    if lowered.get(SIGNATURE_HEADER_SHA256):
        return lowered[SIGNATURE_HEADER_SHA256].strip(), "sha256"
    if lowered.get(SIGNATURE_HEADER_SHA1):
        return lowered[SIGNATURE_HEADER_SHA1].strip(), "sha1"
    return None, None


def check_request_security(
    headers: Mapping[str, str], content_length: Optional[int] = None
) -> Tuple[bool, Optional[str]]:
    """
    Cheap pre-validation gate: rejects oversized bodies and requests with no
    signature header at all.

    Returns:
        Tuple of (is_valid, error_message)
    """
    lowered = _lower_headers(headers)
    if content_length is None and lowered.get("content-length"):
        try:
            content_length = int(lowered["content-length"])
        except ValueError:
            return False, "Invalid content-length header"

    if content_length is not None and content_length > settings.webhook_max_body_bytes:
        return False, "Request body too large"

    user_agent = lowered.get("user-agent")
    if user_agent and "square" not in user_agent.lower():
        logger.warning("Webhook from non-Square user agent", user_agent=user_agent)

    if not (lowered.get(SIGNATURE_HEADER_SHA256) or lowered.get(SIGNATURE_HEADER_SHA1)):
        return False, "Missing signature headers"

    return True, None


def generate_webhook_id(event_id: str, timestamp_ms: Optional[int] = None) -> str:
    timestamp_ms = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    digest = hashlib.sha256(f"{event_id}-{timestamp_ms}".encode("utf-8")).hexdigest()
    return f"webhook_{digest[:16]}"


def _truncate(value: str, length: int = 20) -> str:
    return value[:length] + "..."


class SignatureValidator:
    """Validates Square webhook requests against the configured secrets."""

    def __init__(
        self,
        production_secret: Optional[str] = None,
        sandbox_secret: Optional[str] = None,
        max_event_age_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            production_secret: Overrides SQUARE_WEBHOOK_SECRET when given
            sandbox_secret: Overrides SQUARE_WEBHOOK_SECRET_SANDBOX when given
            max_event_age_seconds: Staleness threshold for event created_at
            clock: Returns the current UTC time (injectable for tests)
        """
        self._production_secret = production_secret
        self._sandbox_secret = sandbox_secret
        self.max_event_age_seconds = (
            max_event_age_seconds
            if max_event_age_seconds is not None
            else settings.webhook_max_event_age_seconds
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _configured_secrets(self) -> dict[str, Optional[str]]:
        production = (
            self._production_secret
            if self._production_secret is not None
            else settings.square_webhook_secret
        )
        sandbox = (
            self._sandbox_secret
            if self._sandbox_secret is not None
            else settings.square_webhook_secret_sandbox
        )
        # Sanitized on every read; a secret pasted with a trailing newline must still work
        return {
            "production": sanitize_secret(production),
            "sandbox": sanitize_secret(sandbox),
        }

    def select_secret(
        self, environment: SquareEnvironment
    ) -> Tuple[Optional[str], Optional[SquareEnvironment]]:
        """
        Pick the secret for an environment, falling back to whichever other
        secret is configured.

        Returns:
            Tuple of (secret, environment whose secret was used)
        """
        secrets = self._configured_secrets()
        fallback: SquareEnvironment = "production" if environment == "sandbox" else "sandbox"
        if secrets[environment]:
            return secrets[environment], environment
        if secrets[fallback]:
            logger.info(
                "Using fallback webhook secret",
                environment=environment,
                secret_used=fallback,
            )
            return secrets[fallback], fallback
        return None, None

    def quick_validate(
        self,
        headers: Mapping[str, str],
        body: Union[bytes, str],
        notification_url: Optional[str] = None,
    ) -> bool:
        """
        Signature-only check for fast acknowledgment.
        Skips payload parsing and event-age checks.

        Library API for callers that acknowledge before full processing; the
        /webhooks/square route always runs validate() so it can report the
        failure kind and record the validation metric.
        """
        try:
            raw = body.encode("utf-8") if isinstance(body, str) else body
            environment = detect_environment(headers)
            signature, algorithm = extract_signature(headers)
            if not signature or not algorithm:
                return False

            secret, _ = self.select_secret(environment)
            if not secret:
                return False

            expected = calculate_signature(self._signed_payload(raw, notification_url), secret, algorithm)
            return signatures_match(signature, expected)
        except Exception as e:
            logger.error("Quick webhook validation error", error=str(e))
            return False

    def validate(
        self,
        headers: Mapping[str, str],
        body: Union[bytes, str],
        notification_url: Optional[str] = None,
    ) -> SignatureValidationResult:
        """
        Full validation of a Square webhook request.

        Args:
            headers: Request headers (any casing)
            body: Raw request body exactly as received
            notification_url: When set, the URL is prepended to the body before
                hashing (Square's notification-URL signing mode)

        Returns:
            SignatureValidationResult; never raises
        """
        start = time.perf_counter()
        environment: SquareEnvironment = "production"

        try:
            raw = body.encode("utf-8") if isinstance(body, str) else body
            environment = detect_environment(headers)

            signature, algorithm = extract_signature(headers)
            if not signature or not algorithm:
                return self._failure(
                    environment,
                    ValidationError(
                        type=ValidationErrorKind.MISSING_SIGNATURE,
                        headers=sorted(_lower_headers(headers).keys()),
                    ),
                )

            secret, secret_used = self.select_secret(environment)
            if not secret or not secret_used:
                logger.error("No Square webhook secret configured", environment=environment)
                return self._failure(
                    environment,
                    ValidationError(
                        type=ValidationErrorKind.MISSING_SECRET,
                        environment=environment,
                    ),
                )

            try:
                payload = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                return self._failure(
                    environment,
                    ValidationError(type=ValidationErrorKind.MALFORMED_BODY, message=str(e)),
                )

            try:
                event = SquareWebhookEvent.model_validate(payload)
            except PydanticValidationError as e:
                missing = [
                    ".".join(str(p) for p in err["loc"]) for err in e.errors() if err["loc"]
                ]
                return self._failure(
                    environment,
                    ValidationError(
                        type=ValidationErrorKind.INVALID_PAYLOAD,
                        message="Webhook envelope failed validation",
                        missing_fields=missing or None,
                    ),
                )

            if self._is_too_old(event.created_at):
                logger.warning(
                    "Rejecting stale Square webhook",
                    event_id=event.event_id,
                    created_at=event.created_at.isoformat(),
                )
                return self._failure(
                    environment,
                    ValidationError(
                        type=ValidationErrorKind.EVENT_TOO_OLD,
                        event_time=event.created_at.isoformat(),
                        max_age_seconds=self.max_event_age_seconds,
                    ),
                    event=event,
                )

            expected = calculate_signature(self._signed_payload(raw, notification_url), secret, algorithm)
            metadata = ValidationMetadata(
                algorithm=algorithm,
                secret_used=secret_used,
                processing_time_ms=self._elapsed_ms(start),
                webhook_id=generate_webhook_id(event.event_id),
            )

            if not signatures_match(signature, expected):
                logger.warning(
                    "Invalid Square webhook signature",
                    event_id=event.event_id,
                    environment=environment,
                    algorithm=algorithm,
                )
                return SignatureValidationResult(
                    valid=False,
                    environment=environment,
                    error=ValidationError(
                        type=ValidationErrorKind.INVALID_SIGNATURE,
                        expected=_truncate(expected),
                        received=_truncate(signature),
                    ),
                    metadata=metadata,
                    event_id=event.event_id,
                    event_type=event.type,
                )

            return SignatureValidationResult(
                valid=True,
                environment=environment,
                metadata=metadata,
                event_id=event.event_id,
                event_type=event.type,
            )

        except Exception as e:
            logger.error(
                "Unexpected error in webhook validation",
                error=str(e),
                error_type=type(e).__name__,
            )
            return self._failure(
                environment,
                ValidationError(
                    type=ValidationErrorKind.MALFORMED_BODY,
                    message=f"Unexpected validation error: {e}",
                ),
            )

    @staticmethod
    def _signed_payload(raw: bytes, notification_url: Optional[str]) -> bytes:
        if notification_url:
            return notification_url.encode("utf-8") + raw
        return raw

    def _is_too_old(self, created_at: datetime) -> bool:
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        age = (self._clock() - created_at).total_seconds()
        return age > self.max_event_age_seconds

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return (time.perf_counter() - start) * 1000

    @staticmethod
    def _failure(
        environment: SquareEnvironment,
        error: ValidationError,
        event: Optional[SquareWebhookEvent] = None,
    ) -> SignatureValidationResult:
        return SignatureValidationResult(
            valid=False,
            environment=environment,
            error=error,
            event_id=event.event_id if event else None,
            event_type=event.type if event else None,
        )
