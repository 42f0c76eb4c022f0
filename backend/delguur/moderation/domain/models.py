"""Domain records shared by the report, enforcement and appeal services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, NoReturn, Optional, TypeVar


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def assert_never(value: NoReturn) -> NoReturn:
    raise AssertionError(f"unhandled enum member: {value!r}")


class ViolationType(str, Enum):
    FOREIGN_PRODUCT = "foreign_product"
    COUNTERFEIT = "counterfeit"
    ILLEGAL_CONTENT = "illegal_content"
    SPAM = "spam"
    SCAM = "scam"
    WRONG_CATEGORY = "wrong_category"
    LOW_QUALITY = "low_quality"
    DUPLICATE = "duplicate"
    OTHER = "other"


class ViolationSeverity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"


class ModerationAction(str, Enum):
    DELETE = "delete"
    SUSPEND = "suspend"
    WARN = "warn"
    REQUEST_EDIT = "request_edit"
    APPROVE = "approve"


class RefundPolicy(str, Enum):
    NONE = "none"
    FULL = "full"
    PARTIAL = "partial"
    CREDIT = "credit"


class AppealStatus(str, Enum):
    """Appeal progress as mirrored on a moderation record."""

    NONE = "none"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AppealState(str, Enum):
    PENDING = "pending"
    REVIEWING = "reviewing"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_resolved(self) -> bool:
        return self in (AppealState.APPROVED, AppealState.REJECTED)


class ReportStatus(str, Enum):
    ACTIVE = "active"
    HIDDEN = "hidden"
    DELETED = "deleted"


class ReportReason(str, Enum):
    FOREIGN_PRODUCT = "foreign_product"
    COUNTERFEIT = "counterfeit"
    SCAM = "scam"
    INAPPROPRIATE = "inappropriate"
    WRONG_INFO = "wrong_info"
    SPAM = "spam"
    OTHER = "other"


class AdminDecision(str, Enum):
    SHOW = "show"
    DELETE = "delete"


class ListingStatus(str, Enum):
    ACTIVE = "active"
    HIDDEN = "hidden"
    SUSPENDED = "suspended"
    DELETED = "deleted"
    EXPIRED = "expired"
    SOLD = "sold"
    ARCHIVED = "archived"


class VisibilityTier(str, Enum):
    SOUM = "soum"
    AIMAG = "aimag"
    NATIONAL = "national"


@dataclass(frozen=True, slots=True)
class Location:
    aimag: str
    soum: Optional[str] = None


@dataclass(slots=True)
class SubscriptionUsage:
    """Paid listing plan the owner is part-way through."""

    price: int
    days_used: int
    total_days: int


@dataclass
class Listing:
    id: str
    title: str
    owner_id: str
    status: ListingStatus = ListingStatus.ACTIVE
    tier: VisibilityTier = VisibilityTier.SOUM
    location: Optional[Location] = None
    category: Optional[str] = None
    description: Optional[str] = None
    views: int = 0
    saves: int = 0
    call_clicks: int = 0
    chat_clicks: int = 0
    shares: int = 0
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None
    deletion_reason: Optional[str] = None
    suspended_at: Optional[datetime] = None
    restored_at: Optional[datetime] = None
    status_reason: Optional[str] = None
    status_changed_at: Optional[datetime] = None
    moderation_record_id: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    needs_edit: bool = False


@dataclass
class ModerationRecord:
    id: str
    listing_id: str
    listing_title_snapshot: str
    owner_id: str
    violation_type: ViolationType
    action_taken: ModerationAction
    refund_policy: RefundPolicy
    moderator_note: str
    created_at: datetime
    appeal_deadline: datetime
    refund_amount: Optional[int] = None
    moderator_id: Optional[str] = None
    appeal_status: AppealStatus = AppealStatus.NONE
    appeal_note: Optional[str] = None
    appeal_resolved_at: Optional[datetime] = None
    idempotency_key: Optional[str] = None


@dataclass
class Appeal:
    id: str
    moderation_record_id: str
    submitter_id: str
    reason: str
    submitted_at: datetime
    evidence: tuple[str, ...] = ()
    status: AppealState = AppealState.PENDING
    reviewer_id: Optional[str] = None
    reviewer_note: Optional[str] = None
    resolved_at: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class ReportEntry:
    reporter_id: str
    reason: ReportReason
    reported_at: datetime
    description: Optional[str] = None


@dataclass
class ReportRecord:
    product_id: str
    reports: list[ReportEntry] = field(default_factory=list)
    status: ReportStatus = ReportStatus.ACTIVE
    hidden_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    admin_decision: Optional[AdminDecision] = None
    _reporter_ids: set[str] = field(default_factory=set, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._reporter_ids = {entry.reporter_id for entry in self.reports}

    @property
    def total_reports(self) -> int:
        return len(self.reports)

    def has_reporter(self, reporter_id: str) -> bool:
        return reporter_id in self._reporter_ids

    def add_report(self, entry: ReportEntry) -> bool:
        """Append unless this reporter already reported; False for a duplicate."""
        if entry.reporter_id in self._reporter_ids:
            return False
        self._reporter_ids.add(entry.reporter_id)
        self.reports.append(entry)
        return True


T = TypeVar("T")


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Outcome of a user-facing operation; failures carry a stable code."""

    success: bool
    code: str
    message: str
    retryable: bool = False
    record: Optional[T] = None

    @classmethod
    def ok(cls, message: str, record: Any = None, *, code: str = "ok") -> "OperationResult[Any]":
        return cls(success=True, code=code, message=message, record=record)

    @classmethod
    def fail(
        cls, code: str, message: str, *, retryable: bool = False, record: Any = None
    ) -> "OperationResult[Any]":
        return cls(success=False, code=code, message=message, retryable=retryable, record=record)
