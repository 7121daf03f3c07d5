"""
Fulfillment Domain Models
=========================
Typed records that flow through the payment fulfillment pipeline.

- PaymentEvent: authenticated checkout completion from Stripe
- Submission: customer intake (images + description) for a paid session
- MediaAsset / ContentRecord: CMS-side artefacts
- FulfillmentRun: per-event state machine with transition history
- ErrorLogEntry: row written to the operator error log

pip install pydantic
"""

import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from zoneinfo import ZoneInfo

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    computed_field,
    field_validator,
    model_validator,
)

from errors import InvalidPayloadError


SESSION_ID_PATTERN = re.compile(r"^[\w\- ]+$")
MAX_DESCRIPTION_LENGTH = 2000
MAX_FILE_SIZE = 10 * 1024 * 1024
ALLOWED_CONTENT_TYPES = frozenset({
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/heic",
    "image/heif",
})
BULK_PREFIX = "bulk_"
LEDGER_TIMEZONE = ZoneInfo("Europe/Madrid")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _limit(info: ValidationInfo, name: str, default: int) -> int:
    """Read a size limit from the validation context, e.g. the service Settings."""
    context = info.context or {}
    return int(context.get(name) or default)


def format_ledger_time(moment: Optional[datetime] = None) -> str:
    """Render a timestamp the way the sheets show it (Madrid local time)."""
    moment = moment or utcnow()
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(LEDGER_TIMEZONE).strftime("%d/%m/%Y, %H:%M:%S")


# =============================================================================
# ENUMS
# =============================================================================

class PaymentMode(str, Enum):
    """Which Stripe account an event was authenticated against."""
    TEST = "Test"
    LIVE = "Live"


class AssetKey(str, Enum):
    MAIN = "main"
    SIGNATURE = "signature"
    AGE = "age"


class FulfillmentStatus(str, Enum):
    """Values of the pending-fulfillment `status` column, in order."""
    PENDING_INFO = "PENDING INFO"
    SUBMITTED = "SUBMITTED"
    GCS_SAVED = "GCS SAVED"
    MEDIA_UPLOADED = "MEDIA UPLOADED"


class ContentStatus(str, Enum):
    DRAFT = "draft"
    PUBLISH = "publish"


class Severity(str, Enum):
    CRITICAL = "Critical"
    ERROR = "Error"
    WARNING = "Warning"
    INFO = "Info"


class FulfillmentState(str, Enum):
    RECEIVED = "received"
    DEDUPLICATED = "deduplicated"
    VERIFIED = "verified"
    LEDGER_WRITTEN = "ledger_written"
    CONTENT_DRAFTED = "content_drafted"
    MEDIA_PROCESSING = "media_processing"
    CONTENT_FINALIZED = "content_finalized"
    NOTIFIED = "notified"
    PUBLISHED = "published"
    DONE = "done"
    ERRORED = "errored"


TERMINAL_STATES = frozenset({
    FulfillmentState.DEDUPLICATED,
    FulfillmentState.DONE,
    FulfillmentState.ERRORED,
})

# Payment webhooks skip the content states and go straight from the
# ledger write to notification.
ALLOWED_TRANSITIONS: dict[FulfillmentState, frozenset[FulfillmentState]] = {
    FulfillmentState.RECEIVED: frozenset({
        FulfillmentState.DEDUPLICATED,
        FulfillmentState.VERIFIED,
    }),
    # A submission whose pending-row write failed still goes on to drafting.
    FulfillmentState.VERIFIED: frozenset({
        FulfillmentState.LEDGER_WRITTEN,
        FulfillmentState.CONTENT_DRAFTED,
    }),
    FulfillmentState.LEDGER_WRITTEN: frozenset({
        FulfillmentState.CONTENT_DRAFTED,
        FulfillmentState.NOTIFIED,
    }),
    FulfillmentState.CONTENT_DRAFTED: frozenset({FulfillmentState.MEDIA_PROCESSING}),
    FulfillmentState.MEDIA_PROCESSING: frozenset({FulfillmentState.CONTENT_FINALIZED}),
    FulfillmentState.CONTENT_FINALIZED: frozenset({FulfillmentState.NOTIFIED}),
    FulfillmentState.NOTIFIED: frozenset({FulfillmentState.PUBLISHED}),
    FulfillmentState.PUBLISHED: frozenset({FulfillmentState.DONE}),
}


# =============================================================================
# PAYMENT EVENT
# =============================================================================

class Customer(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    name: str = ""
    external_id: str = ""


class PaymentEvent(BaseModel):
    """A completed checkout session, immutable once authenticated."""

    model_config = ConfigDict(frozen=True)

    id: str
    mode: PaymentMode
    customer: Customer
    amount_minor_units: int
    currency: str
    created_at: datetime = Field(default_factory=utcnow)
    product_ref: Optional[str] = None
    client_reference_id: Optional[str] = None
    payment_intent_id: str = ""
    payment_status: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    @computed_field
    @property
    def is_bulk(self) -> bool:
        return bool(self.client_reference_id and self.client_reference_id.startswith(BULK_PREFIX))

    @property
    def amount(self) -> float:
        """Amount in major currency units, rounded to two places."""
        return round(self.amount_minor_units / 100, 2)

    @classmethod
    def from_checkout_session(cls, session: dict, mode: PaymentMode) -> "PaymentEvent":
        """Build from a Stripe checkout.session object, rejecting incomplete ones."""
        if not session:
            raise InvalidPayloadError("Session is required")
        if not session.get("id"):
            raise InvalidPayloadError("Session ID is required")
        if not session.get("payment_intent"):
            raise InvalidPayloadError("Payment intent is required")

        details = session.get("customer_details") or {}
        if not details.get("email"):
            raise InvalidPayloadError("Customer email is required")

        amount = session.get("amount_total")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidPayloadError("Valid amount is required")
        if not session.get("currency"):
            raise InvalidPayloadError("Currency is required")

        created = session.get("created")
        return cls(
            id=session["id"],
            mode=mode,
            customer=Customer(
                email=details["email"],
                name=details.get("name") or "",
                external_id=session.get("customer") or "",
            ),
            amount_minor_units=amount,
            currency=session["currency"],
            created_at=(
                datetime.fromtimestamp(created, tz=timezone.utc)
                if isinstance(created, (int, float)) else utcnow()
            ),
            product_ref=session.get("payment_link"),
            client_reference_id=session.get("client_reference_id"),
            payment_intent_id=session["payment_intent"],
            payment_status=session.get("payment_status") or "",
            metadata=dict(session.get("metadata") or {}),
        )


# =============================================================================
# SUBMISSION
# =============================================================================

class UploadedFile(BaseModel):
    key: AssetKey
    content: bytes = Field(repr=False)
    filename: str = ""
    content_type: str = "image/jpeg"

    @property
    def size(self) -> int:
        return len(self.content)


class Submission(BaseModel):
    """Customer intake for a paid session: images plus an optional description."""

    session_id: str
    customer_email: str = ""
    customer_name: str = ""
    description: Optional[str] = None
    files: dict[AssetKey, UploadedFile] = Field(default_factory=dict)
    payment_ref: Optional[str] = None

    @field_validator("session_id")
    @classmethod
    def _session_id_format(cls, value: str) -> str:
        if not value:
            raise ValueError("Missing required field: session_id")
        if not SESSION_ID_PATTERN.match(value):
            raise ValueError("Invalid session_id format")
        return value

    @field_validator("description")
    @classmethod
    def _description_length(cls, value: Optional[str], info: ValidationInfo) -> Optional[str]:
        limit = _limit(info, "max_description_length", MAX_DESCRIPTION_LENGTH)
        if value and len(value) > limit:
            raise ValueError(f"Description exceeds maximum length of {limit} characters")
        return value

    @model_validator(mode="after")
    def _check_files(self, info: ValidationInfo) -> "Submission":
        max_size = _limit(info, "max_upload_bytes", MAX_FILE_SIZE)
        if AssetKey.MAIN not in self.files:
            raise ValueError("Main image is required")
        for key, upload in self.files.items():
            if upload.content_type not in ALLOWED_CONTENT_TYPES:
                raise ValueError(
                    f"Invalid file type for {key.value}. Allowed types: JPEG, PNG, WebP, HEIC"
                )
            if upload.size > max_size:
                raise ValueError(
                    f"File {key.value} exceeds maximum size of {max_size // (1024 * 1024)}MB"
                )
        return self


# =============================================================================
# MEDIA & CONTENT
# =============================================================================

class MediaAsset(BaseModel):
    key: AssetKey
    raw_bytes: bytes = Field(default=b"", repr=False)
    normalized_bytes: bytes = Field(default=b"", repr=False)
    cms_id: Optional[int] = None
    cms_url: Optional[str] = None
    backup_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def uploaded(self) -> bool:
        return self.cms_id is not None


class ContentRecord(BaseModel):
    id: int
    edit_url: str
    status: ContentStatus = ContentStatus.DRAFT
    meta_fields: dict[str, Any] = Field(default_factory=dict)
    initialized: bool = False


class BackupResult(BaseModel):
    """Where the original uploads were copied to."""
    folder_url: Optional[str] = None
    request_data_url: Optional[str] = None
    urls: dict[AssetKey, Optional[str]] = Field(default_factory=dict)


class PendingFulfillment(BaseModel):
    """One row of the pending-fulfillment sheet."""
    session_id: str
    customer_email: str
    customer_name: str = ""
    product_name: str = "Unknown Product"
    status: str = FulfillmentStatus.PENDING_INFO.value
    content_edit_url: str = ""
    description: str = ""
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# STATE MACHINE
# =============================================================================

class FulfillmentRun(BaseModel):
    """Tracks the state of one event's pass through the pipeline."""

    session_id: str
    state: FulfillmentState = FulfillmentState.RECEIVED
    history: list[FulfillmentState] = Field(
        default_factory=lambda: [FulfillmentState.RECEIVED]
    )

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition_to(self, new_state: FulfillmentState) -> "FulfillmentRun":
        if self.finished:
            raise ValueError(f"Run already finished in state {self.state.value}")
        if new_state != FulfillmentState.ERRORED and new_state not in ALLOWED_TRANSITIONS.get(
            self.state, frozenset()
        ):
            raise ValueError(f"Invalid transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)
        return self


class FulfillmentResult(BaseModel):
    session_id: str
    state: FulfillmentState
    content_id: Optional[int] = None
    edit_url: Optional[str] = None
    media: dict[AssetKey, Optional[str]] = Field(default_factory=dict)
    assets: dict[AssetKey, MediaAsset] = Field(default_factory=dict)
    backup: Optional[BackupResult] = None
    history: list[FulfillmentState] = Field(default_factory=list)

    @property
    def deduplicated(self) -> bool:
        return self.state == FulfillmentState.DEDUPLICATED


# =============================================================================
# ERROR LOG
# =============================================================================

class ErrorLogEntry(BaseModel):
    """Append-only operator log row."""

    timestamp: datetime = Field(default_factory=utcnow)
    severity: Severity = Severity.CRITICAL
    script_name: str = "Unknown"
    error_code: str = "N/A"
    message: str = "No message"
    stack_trace: Optional[str] = None
    user_id: Optional[str] = None
    request_id: Optional[str] = None
    environment: str = "Production"
    endpoint: Optional[str] = None
    additional_context: dict[str, Any] = Field(default_factory=dict)
    resolution_status: str = "Open"
    assigned_to: str = ""
    reference_link: str = ""
    resolution_link: str = ""

    def to_row(self, formatted_timestamp: str) -> list[str]:
        context = (
            json.dumps(self.additional_context, default=str)
            if self.additional_context else "N/A"
        )
        return [
            formatted_timestamp,
            self.severity.value,
            self.script_name,
            self.error_code,
            self.message,
            self.stack_trace or "No stack trace",
            self.user_id or "N/A",
            self.request_id or "N/A",
            self.environment,
            self.endpoint or "N/A",
            context,
            self.resolution_status,
            self.assigned_to,
            self.reference_link,
            self.resolution_link,
        ]
