"""
Domain models for outbound call scheduling.

Lightweight dataclasses describing customers as the scheduler sees them,
queue items, call log rows, and the typed results passed between the queue
processor and the voice provider adapter.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Literal

CallKind = Literal["welcome", "daily"]
QueueStatus = Literal["pending", "processing", "retrying", "completed", "failed"]
CallLogStatus = Literal["initiated", "completed", "no_answer", "failed"]
CallState = Literal["active", "paused", "disabled", "failed"]
PaymentState = Literal["Pending", "Paid", "Partner", "Refunded"]

ACTIVE_QUEUE_STATUSES: tuple[str, ...] = ("pending", "retrying", "processing")
CLAIMABLE_QUEUE_STATUSES: tuple[str, ...] = ("pending", "retrying")
BILLABLE_PAYMENT_STATES: tuple[str, ...] = ("Paid", "Partner")
BLOCKED_CALL_STATES: tuple[str, ...] = ("disabled", "paused")
RECONCILED_LOG_STATUSES: tuple[str, ...] = ("completed", "no_answer")


@dataclass(slots=True)
class CustomerSchedule:
    """Scheduling fields of a customers row."""

    id: int
    timezone: str | None
    call_time_description: str | None
    preferred_hour: int | None
    preferred_minute: int | None
    welcome_call_done: bool = False
    last_call_date: date | None = None
    next_call_at: datetime | None = None


@dataclass(slots=True)
class DueCandidate:
    """Raw row from the due-customer query, before fallback resolution."""

    customer_id: int
    name: str
    kind: CallKind
    scheduled_for: datetime | None
    timezone: str | None
    preferred_hour: int | None
    preferred_minute: int | None


@dataclass(slots=True)
class DueCustomer:
    """A customer who should be called now."""

    customer_id: int
    name: str
    kind: CallKind
    scheduled_for: datetime | None


@dataclass(slots=True)
class CallTarget:
    """Live customer record loaded right before dialing."""

    id: int
    name: str
    phone: str
    timezone: str | None
    goals: str | None
    payment_state: str
    phone_validated: bool
    call_state: str
    welcome_call_done: bool
    last_call_date: date | None
    consecutive_failures: int = 0
    last_call_id: str | None = None


@dataclass(slots=True)
class QueueItem:
    """Represents a call_queue row."""

    id: int
    customer_id: int
    kind: CallKind
    scheduled_for: datetime
    status: str
    attempts: int
    max_attempts: int
    error_message: str | None = None
    provider_call_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    processed_at: datetime | None = None


@dataclass(slots=True)
class CallLogEntry:
    """Represents a call_logs row."""

    id: int
    customer_id: int
    kind: CallKind
    provider_call_id: str | None
    status: str
    duration_seconds: int | None = None
    transcript: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_finalized(self) -> bool:
        """An end-of-call report was already applied to this call."""
        return self.status in RECONCILED_LOG_STATUSES or (
            bool(self.transcript) and bool(self.duration_seconds)
        )


@dataclass(slots=True)
class DailyCallReservation:
    """
    Outcome of stamping ``last_call_date`` before a daily dial.

    ``previous_date`` is what the column held before the stamp so a
    transient failure can put it back.
    """

    customer_id: int
    call_date: date
    previous_date: date | None


@dataclass(slots=True)
class ModelConfig:
    provider: str
    model: str
    temperature: float
    system_prompt: str


@dataclass(slots=True)
class VoiceConfig:
    provider: str
    voice_id: str


@dataclass(slots=True)
class CallSpec:
    """Everything the voice provider needs to place one outbound call."""

    customer_id: int
    customer_name: str
    kind: CallKind
    phone: str
    first_message: str
    model: ModelConfig
    voice: VoiceConfig
    max_duration_seconds: int
    callback_url: str
    silence_timeout_seconds: int = 30
    metadata: dict[str, Any] = field(default_factory=dict)


PlaceCallOutcome = Literal["accepted", "transient_failure", "permanent_failure"]


@dataclass(slots=True)
class PlaceCallResult:
    """Typed result of a dial request. The adapter never raises."""

    outcome: PlaceCallOutcome
    provider_call_id: str | None = None
    error: str | None = None
    status_code: int | None = None

    @property
    def accepted(self) -> bool:
        return self.outcome == "accepted" and bool(self.provider_call_id)

    @classmethod
    def ok(cls, provider_call_id: str, status_code: int | None = None) -> "PlaceCallResult":
        return cls("accepted", provider_call_id=provider_call_id, status_code=status_code)

    @classmethod
    def transient(cls, error: str, status_code: int | None = None) -> "PlaceCallResult":
        return cls("transient_failure", error=error, status_code=status_code)

    @classmethod
    def permanent(cls, error: str, status_code: int | None = None) -> "PlaceCallResult":
        return cls("permanent_failure", error=error, status_code=status_code)


ItemOutcome = Literal["completed", "skipped", "retrying", "failed"]


@dataclass(slots=True)
class ItemResult:
    """What happened to one queue item during a drain cycle."""

    queue_item_id: int
    customer_id: int
    kind: CallKind
    outcome: ItemOutcome
    provider_call_id: str | None = None
    error: str | None = None
    reason: str | None = None
    attempts: int = 0


@dataclass(slots=True)
class CallContext:
    """Structured signal extracted from one call transcript."""

    mood: str | None = None
    upcoming_events: list[dict[str, Any]] = field(default_factory=list)
    positive_signals: list[str] = field(default_factory=list)
    energy_level: str | None = None
    engagement_level: str | None = None
    progress_indicators: list[str] = field(default_factory=list)
    tone_preference: str | None = None
