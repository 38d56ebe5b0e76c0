from datetime import timedelta
from enum import StrEnum


class SubscriptionStatus(StrEnum):
    DRAFT = "draft"
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class Frequency(StrEnum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    BIMONTHLY = "bimonthly"
    QUARTERLY = "quarterly"
    SEMIANNUAL = "semiannual"
    ANNUAL = "annual"


class BillingModel(StrEnum):
    PREPAY = "prepay"
    PER_VISIT = "per_visit"
    HYBRID = "hybrid"


class ScheduleStatus(StrEnum):
    PENDING = "pending"
    JOB_CREATED = "job_created"
    SKIPPED = "skipped"
    PAUSED = "paused"


class ActorType(StrEnum):
    SYSTEM = "system"
    STAFF = "staff"
    CUSTOMER = "customer"


class EventType(StrEnum):
    CREATED = "created"
    ACTIVATED = "activated"
    PAUSED = "paused"
    RESUMED = "resumed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    PRICE_CHANGED = "price_changed"
    JOB_GENERATED = "job_generated"
    JOB_GENERATION_FAILED = "job_generation_failed"
    INVOICE_GENERATED = "invoice_generated"


TERMINAL_STATUSES = {SubscriptionStatus.CANCELLED, SubscriptionStatus.COMPLETED}

SUBSCRIPTION_TRANSITIONS: dict[SubscriptionStatus, set[SubscriptionStatus]] = {
    SubscriptionStatus.DRAFT: {
        SubscriptionStatus.PENDING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELLED,
    },
    SubscriptionStatus.PENDING: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED},
    SubscriptionStatus.ACTIVE: {
        SubscriptionStatus.PAUSED,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.COMPLETED,
    },
    SubscriptionStatus.PAUSED: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED},
    SubscriptionStatus.CANCELLED: set(),
    SubscriptionStatus.COMPLETED: set(),
}

SCHEDULE_TRANSITIONS: dict[ScheduleStatus, set[ScheduleStatus]] = {
    ScheduleStatus.PENDING: {ScheduleStatus.JOB_CREATED, ScheduleStatus.SKIPPED, ScheduleStatus.PAUSED},
    ScheduleStatus.PAUSED: {ScheduleStatus.PENDING, ScheduleStatus.SKIPPED},
    ScheduleStatus.JOB_CREATED: set(),
    ScheduleStatus.SKIPPED: set(),
}

# Fixed step per frequency: (days, months). Exactly one of the two is non-zero.
FREQUENCY_STEPS: dict[Frequency, tuple[int, int]] = {
    Frequency.WEEKLY: (7, 0),
    Frequency.BIWEEKLY: (14, 0),
    Frequency.MONTHLY: (0, 1),
    Frequency.BIMONTHLY: (0, 2),
    Frequency.QUARTERLY: (0, 3),
    Frequency.SEMIANNUAL: (0, 6),
    Frequency.ANNUAL: (0, 12),
}


def normalize_status(value: str) -> SubscriptionStatus:
    try:
        return SubscriptionStatus(value.lower())
    except ValueError as exc:
        raise ValueError("Invalid subscription status") from exc


def normalize_frequency(value: str) -> Frequency:
    try:
        return Frequency(value.lower())
    except ValueError as exc:
        raise ValueError("Invalid subscription frequency") from exc


def normalize_billing_model(value: str) -> BillingModel:
    try:
        return BillingModel(value.lower())
    except ValueError as exc:
        raise ValueError("Invalid billing model") from exc


def can_transition(current: str, target: SubscriptionStatus) -> bool:
    return target in SUBSCRIPTION_TRANSITIONS[SubscriptionStatus(current)]


def can_transition_schedule(current: str, target: ScheduleStatus) -> bool:
    return target in SCHEDULE_TRANSITIONS[ScheduleStatus(current)]


def schedule_sources(
    target: ScheduleStatus, among: tuple[ScheduleStatus, ...] | None = None
) -> list[ScheduleStatus]:
    """Statuses that may move to target, for use in bulk UPDATE filters."""

    candidates = among if among is not None else tuple(ScheduleStatus)
    return [status for status in candidates if target in SCHEDULE_TRANSITIONS[status]]


def step_for(frequency: str) -> tuple[timedelta, int]:
    days, months = FREQUENCY_STEPS[Frequency(frequency)]
    return timedelta(days=days), months
