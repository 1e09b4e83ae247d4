"""
Pydantic models describing the outcome of Square webhook signature validation.
"""
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel

SquareEnvironment = Literal["sandbox", "production"]
SignatureAlgorithm = Literal["sha256", "sha1"]


class ValidationErrorKind(str, Enum):
    MISSING_SIGNATURE = "MISSING_SIGNATURE"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    MISSING_SECRET = "MISSING_SECRET"
    EVENT_TOO_OLD = "EVENT_TOO_OLD"
    MALFORMED_BODY = "MALFORMED_BODY"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"


class ValidationError(BaseModel):
    """Tagged failure reason plus the diagnostics relevant to that kind."""
    type: ValidationErrorKind
    message: Optional[str] = None
    headers: Optional[list[str]] = None  # MISSING_SIGNATURE
    environment: Optional[SquareEnvironment] = None  # MISSING_SECRET
    expected: Optional[str] = None  # INVALID_SIGNATURE, truncated
    received: Optional[str] = None  # INVALID_SIGNATURE, truncated
    event_time: Optional[str] = None  # EVENT_TOO_OLD
    max_age_seconds: Optional[int] = None  # EVENT_TOO_OLD
    missing_fields: Optional[list[str]] = None  # INVALID_PAYLOAD


class ValidationMetadata(BaseModel):
    algorithm: SignatureAlgorithm
    secret_used: SquareEnvironment
    processing_time_ms: float
    webhook_id: Optional[str] = None


class SignatureValidationResult(BaseModel):
    valid: bool
    environment: SquareEnvironment = "production"
    error: Optional[ValidationError] = None
    metadata: Optional[ValidationMetadata] = None
    event_id: Optional[str] = None
    event_type: Optional[str] = None

    @property
    def error_kind(self) -> Optional[ValidationErrorKind]:
        return self.error.type if self.error else None
