"""PostgreSQL-backed repositories for listings, reports, moderation records and system mode."""

from __future__ import annotations

import functools
import json
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, TypeVar

import asyncpg

from delguur.moderation.domain.models import (
    AdminDecision,
    Appeal,
    AppealState,
    AppealStatus,
    Listing,
    ListingStatus,
    Location,
    ModerationAction,
    ModerationRecord,
    RefundPolicy,
    ReportEntry,
    ReportReason,
    ReportRecord,
    ReportStatus,
    ViolationType,
    VisibilityTier,
)
from delguur.moderation.domain.moderators import Moderator, ModeratorLevel, ModeratorRepository
from delguur.moderation.domain.repository import (
    AuditEntry,
    ListingRepository,
    ModerationRepository,
    ReportRepository,
    StorageError,
)
from delguur.resilience.system_mode import SystemMode, SystemStatus, SystemStatusStore

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

_STORAGE_FAILURES = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def _storage_call(func: F) -> F:
    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return await func(*args, **kwargs)
        except _STORAGE_FAILURES as exc:
            raise StorageError(f"{func.__name__} failed: {exc}") from exc

    return wrapper  # type: ignore[return-value]


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as 'UPDATE 1' or 'INSERT 0 1'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


_LISTING_COLUMNS = (
    "id",
    "title",
    "owner_id",
    "status",
    "tier",
    "aimag",
    "soum",
    "category",
    "description",
    "views",
    "saves",
    "call_clicks",
    "chat_clicks",
    "shares",
    "created_at",
    "deleted_at",
    "deletion_reason",
    "suspended_at",
    "restored_at",
    "status_reason",
    "status_changed_at",
    "moderation_record_id",
    "warnings",
    "needs_edit",
)
_LISTING_SELECT = ", ".join(_LISTING_COLUMNS)
_LISTING_UPSERT = """
INSERT INTO listings ({columns})
VALUES ({placeholders})
ON CONFLICT (id) DO UPDATE SET {updates}
""".format(
    columns=_LISTING_SELECT,
    placeholders=", ".join(f"${i}" for i in range(1, len(_LISTING_COLUMNS) + 1)),
    updates=", ".join(f"{col} = EXCLUDED.{col}" for col in _LISTING_COLUMNS[1:]),
)

_RECORD_COLUMNS = """
id, listing_id, listing_title_snapshot, owner_id, violation_type, action_taken, refund_policy,
refund_amount, moderator_id, moderator_note, created_at, appeal_deadline, appeal_status,
appeal_note, appeal_resolved_at, idempotency_key
"""

_APPEAL_COLUMNS = """
id, moderation_record_id, submitter_id, reason, evidence, submitted_at, status,
reviewer_id, reviewer_note, resolved_at
"""


class PostgresModerationStore(ListingRepository, ReportRepository, ModerationRepository):
    """Persists listings, reports, moderation records, appeals and audit rows using asyncpg."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    # --- listings ---------------------------------------------------------

    @_storage_call
    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        row = await self.pool.fetchrow(f"SELECT {_LISTING_SELECT} FROM listings WHERE id = $1", listing_id)
        return _listing_from_record(row) if row else None

    @_storage_call
    async def save_listing(self, listing: Listing) -> None:
        await self.pool.execute(_LISTING_UPSERT, *_listing_params(listing))

    @_storage_call
    async def update_listing_status(
        self,
        listing_id: str,
        status: ListingStatus,
        *,
        reason: str,
        at: datetime,
        expected: Optional[Sequence[ListingStatus]] = None,
        expected_reason: Optional[str] = None,
    ) -> bool:
        result = await self.pool.execute(
            """
            UPDATE listings
            SET status = $2, status_reason = $3, status_changed_at = $4
            WHERE id = $1
              AND ($5::text[] IS NULL OR status = ANY($5::text[]))
              AND ($6::text IS NULL OR status_reason = $6::text)
            """,
            listing_id,
            status.value,
            reason,
            at,
            [item.value for item in expected] if expected is not None else None,
            expected_reason,
        )
        return _affected(result) > 0

    @_storage_call
    async def list_active_listings(self, *, category: Optional[str] = None) -> list[Listing]:
        rows = await self.pool.fetch(
            f"""
            SELECT {_LISTING_SELECT}
            FROM listings
            WHERE status = 'active' AND ($1::text IS NULL OR category = $1::text)
            """,
            category,
        )
        return [_listing_from_record(row) for row in rows]

    # --- reports ----------------------------------------------------------

    @_storage_call
    async def get_report(self, product_id: str) -> Optional[ReportRecord]:
        async with self.pool.acquire() as conn:
            return await _load_report(conn, product_id)

    @_storage_call
    async def append_report(self, product_id: str, entry: ReportEntry) -> tuple[ReportRecord, bool]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "INSERT INTO product_reports (product_id) VALUES ($1) ON CONFLICT (product_id) DO NOTHING",
                    product_id,
                )
                await conn.execute(
                    "SELECT product_id FROM product_reports WHERE product_id = $1 FOR UPDATE",
                    product_id,
                )
                result = await conn.execute(
                    """
                    INSERT INTO product_report_entries (product_id, reporter_id, reason, description, reported_at)
                    VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT (product_id, reporter_id) DO NOTHING
                    """,
                    product_id,
                    entry.reporter_id,
                    entry.reason.value,
                    entry.description,
                    entry.reported_at,
                )
                record = await _load_report(conn, product_id)
        assert record is not None
        return record, _affected(result) > 0

    @_storage_call
    async def transition_report(
        self,
        product_id: str,
        expected: ReportStatus,
        new: ReportStatus,
        *,
        at: datetime,
        decision: Optional[AdminDecision] = None,
    ) -> Optional[ReportRecord]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE product_reports
                    SET status = $3::text,
                        hidden_at = CASE WHEN $3::text = 'hidden' THEN $4 ELSE hidden_at END,
                        deleted_at = CASE WHEN $3::text = 'deleted' THEN $4 ELSE deleted_at END,
                        admin_decision = COALESCE($5::text, admin_decision),
                        reviewed_at = CASE WHEN $5::text IS NULL THEN reviewed_at ELSE $4 END
                    WHERE product_id = $1 AND status = $2
                    RETURNING product_id
                    """,
                    product_id,
                    expected.value,
                    new.value,
                    at,
                    decision.value if decision else None,
                )
                if row is None:
                    return None
                return await _load_report(conn, product_id)

    @_storage_call
    async def has_reporter(self, product_id: str, reporter_id: str) -> bool:
        row = await self.pool.fetchrow(
            "SELECT 1 FROM product_report_entries WHERE product_id = $1 AND reporter_id = $2 LIMIT 1",
            product_id,
            reporter_id,
        )
        return row is not None

    @_storage_call
    async def list_reports(self) -> list[ReportRecord]:
        async with self.pool.acquire() as conn:
            headers = await conn.fetch(
                "SELECT product_id, status, hidden_at, deleted_at, reviewed_at, admin_decision FROM product_reports"
            )
            entries = await conn.fetch(
                """
                SELECT product_id, reporter_id, reason, description, reported_at
                FROM product_report_entries
                ORDER BY reported_at ASC
                """
            )
        grouped: dict[str, list[ReportEntry]] = {}
        for row in entries:
            grouped.setdefault(str(row["product_id"]), []).append(_entry_from_record(row))
        return [_report_from_record(row, grouped.get(str(row["product_id"]), [])) for row in headers]

    # --- moderation records -----------------------------------------------

    @_storage_call
    async def get_record(self, record_id: str) -> Optional[ModerationRecord]:
        row = await self.pool.fetchrow(f"SELECT {_RECORD_COLUMNS} FROM moderation_records WHERE id = $1", record_id)
        return _record_from_record(row) if row else None

    @_storage_call
    async def get_record_by_key(self, idempotency_key: str) -> Optional[ModerationRecord]:
        row = await self.pool.fetchrow(
            f"SELECT {_RECORD_COLUMNS} FROM moderation_records WHERE idempotency_key = $1",
            idempotency_key,
        )
        return _record_from_record(row) if row else None

    @_storage_call
    async def list_records(self, *, listing_id: Optional[str] = None) -> list[ModerationRecord]:
        rows = await self.pool.fetch(
            f"""
            SELECT {_RECORD_COLUMNS}
            FROM moderation_records
            WHERE ($1::text IS NULL OR listing_id = $1::text)
            ORDER BY created_at DESC
            """,
            listing_id,
        )
        return [_record_from_record(row) for row in rows]

    @_storage_call
    async def apply_moderation(
        self, record: ModerationRecord, listing: Listing
    ) -> tuple[ModerationRecord, bool]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                inserted = await conn.fetchrow(
                    f"""
                    INSERT INTO moderation_records ({_RECORD_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
                    ON CONFLICT (idempotency_key) DO NOTHING
                    RETURNING {_RECORD_COLUMNS}
                    """,
                    record.id,
                    record.listing_id,
                    record.listing_title_snapshot,
                    record.owner_id,
                    record.violation_type.value,
                    record.action_taken.value,
                    record.refund_policy.value,
                    record.refund_amount,
                    record.moderator_id,
                    record.moderator_note,
                    record.created_at,
                    record.appeal_deadline,
                    record.appeal_status.value,
                    record.appeal_note,
                    record.appeal_resolved_at,
                    record.idempotency_key,
                )
                if inserted is None:
                    existing = await conn.fetchrow(
                        f"SELECT {_RECORD_COLUMNS} FROM moderation_records WHERE idempotency_key = $1",
                        record.idempotency_key,
                    )
                    assert existing is not None
                    return _record_from_record(existing), False
                await conn.execute(_LISTING_UPSERT, *_listing_params(listing))
        return _record_from_record(inserted), True

    # --- appeals ----------------------------------------------------------

    @_storage_call
    async def get_appeal(self, appeal_id: str) -> Optional[Appeal]:
        row = await self.pool.fetchrow(f"SELECT {_APPEAL_COLUMNS} FROM moderation_appeals WHERE id = $1", appeal_id)
        return _appeal_from_record(row) if row else None

    @_storage_call
    async def list_appeals(self, *, status: Optional[AppealState] = None) -> list[Appeal]:
        rows = await self.pool.fetch(
            f"""
            SELECT {_APPEAL_COLUMNS}
            FROM moderation_appeals
            WHERE ($1::text IS NULL OR status = $1::text)
            ORDER BY submitted_at ASC
            """,
            status.value if status else None,
        )
        return [_appeal_from_record(row) for row in rows]

    @_storage_call
    async def open_appeal(self, appeal: Appeal) -> bool:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                claimed = await conn.fetchrow(
                    """
                    UPDATE moderation_records
                    SET appeal_status = 'pending'
                    WHERE id = $1 AND appeal_status = 'none'
                    RETURNING id
                    """,
                    appeal.moderation_record_id,
                )
                if claimed is None:
                    return False
                await conn.execute(
                    f"""
                    INSERT INTO moderation_appeals ({_APPEAL_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    """,
                    appeal.id,
                    appeal.moderation_record_id,
                    appeal.submitter_id,
                    appeal.reason,
                    list(appeal.evidence),
                    appeal.submitted_at,
                    appeal.status.value,
                    appeal.reviewer_id,
                    appeal.reviewer_note,
                    appeal.resolved_at,
                )
        return True

    @_storage_call
    async def start_review(self, appeal_id: str, reviewer_id: Optional[str]) -> Optional[Appeal]:
        row = await self.pool.fetchrow(
            f"""
            UPDATE moderation_appeals
            SET status = 'reviewing', reviewer_id = $2
            WHERE id = $1 AND status = 'pending'
            RETURNING {_APPEAL_COLUMNS}
            """,
            appeal_id,
            reviewer_id,
        )
        return _appeal_from_record(row) if row else None

    @_storage_call
    async def finalize_appeal(
        self,
        appeal: Appeal,
        record_status: AppealStatus,
        listing: Optional[Listing],
    ) -> bool:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                updated = await conn.fetchrow(
                    """
                    UPDATE moderation_appeals
                    SET status = $2, reviewer_id = $3, reviewer_note = $4, resolved_at = $5
                    WHERE id = $1 AND status IN ('pending', 'reviewing')
                    RETURNING id
                    """,
                    appeal.id,
                    appeal.status.value,
                    appeal.reviewer_id,
                    appeal.reviewer_note,
                    appeal.resolved_at,
                )
                if updated is None:
                    return False
                await conn.execute(
                    """
                    UPDATE moderation_records
                    SET appeal_status = $2, appeal_note = $3, appeal_resolved_at = $4
                    WHERE id = $1
                    """,
                    appeal.moderation_record_id,
                    record_status.value,
                    appeal.reviewer_note,
                    appeal.resolved_at,
                )
                if listing is not None:
                    await conn.execute(_LISTING_UPSERT, *_listing_params(listing))
        return True

    # --- audit ------------------------------------------------------------

    @_storage_call
    async def audit(
        self,
        actor_id: Optional[str],
        action: str,
        subject_type: str,
        subject_id: str,
        meta: Mapping[str, Any],
    ) -> None:
        await self.pool.execute(
            """
            INSERT INTO moderation_audit (actor_id, action, subject_type, subject_id, meta)
            VALUES ($1, $2, $3, $4, $5::jsonb)
            """,
            actor_id,
            action,
            subject_type,
            subject_id,
            json.dumps(dict(meta), default=str),
        )

    @_storage_call
    async def list_audit(self, *, subject_id: Optional[str] = None) -> list[AuditEntry]:
        rows = await self.pool.fetch(
            """
            SELECT actor_id, action, subject_type, subject_id, meta, created_at
            FROM moderation_audit
            WHERE ($1::text IS NULL OR subject_id = $1::text)
            ORDER BY created_at ASC, id ASC
            """,
            subject_id,
        )
        return [_audit_from_record(row) for row in rows]


class PostgresModeratorRepository(ModeratorRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    @_storage_call
    async def get_moderator(self, user_id: str) -> Optional[Moderator]:
        row = await self.pool.fetchrow(
            """
            SELECT user_id, level, appointed_by, appointed_at, aimag, soum, is_active
            FROM community_moderators
            WHERE user_id = $1
            """,
            user_id,
        )
        if row is None:
            return None
        return Moderator(
            user_id=str(row["user_id"]),
            level=ModeratorLevel(row["level"]),
            appointed_by=str(row["appointed_by"]),
            appointed_at=row["appointed_at"],
            location=_location(row["aimag"], row["soum"]),
            is_active=bool(row["is_active"]),
        )

    @_storage_call
    async def upsert_moderator(self, moderator: Moderator) -> None:
        location = moderator.location
        await self.pool.execute(
            """
            INSERT INTO community_moderators (user_id, level, appointed_by, appointed_at, aimag, soum, is_active)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (user_id) DO UPDATE SET
                level = EXCLUDED.level,
                appointed_by = EXCLUDED.appointed_by,
                appointed_at = EXCLUDED.appointed_at,
                aimag = EXCLUDED.aimag,
                soum = EXCLUDED.soum,
                is_active = EXCLUDED.is_active
            """,
            moderator.user_id,
            moderator.level.value,
            moderator.appointed_by,
            moderator.appointed_at,
            location.aimag if location else None,
            location.soum if location else None,
            moderator.is_active,
        )


class PostgresSystemStatusStore(SystemStatusStore):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    @_storage_call
    async def get_active(self) -> Optional[SystemStatus]:
        row = await self.pool.fetchrow(
            """
            SELECT id, mode, message, enabled_at, enabled_by, scheduled_end, is_active
            FROM system_status
            WHERE is_active
            ORDER BY enabled_at DESC
            LIMIT 1
            """
        )
        return _status_from_record(row) if row else None

    @_storage_call
    async def activate(self, status: SystemStatus) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("UPDATE system_status SET is_active = FALSE WHERE is_active")
                await conn.execute(
                    """
                    INSERT INTO system_status (id, mode, message, enabled_at, enabled_by, scheduled_end, is_active)
                    VALUES ($1, $2, $3, $4, $5, $6, TRUE)
                    """,
                    status.id,
                    status.mode.value,
                    status.message,
                    status.enabled_at,
                    status.enabled_by,
                    status.scheduled_end,
                )

    @_storage_call
    async def history(self, limit: int = 20) -> list[SystemStatus]:
        rows = await self.pool.fetch(
            """
            SELECT id, mode, message, enabled_at, enabled_by, scheduled_end, is_active
            FROM system_status
            ORDER BY enabled_at DESC
            LIMIT $1
            """,
            limit,
        )
        return [_status_from_record(row) for row in rows]


async def _load_report(conn: asyncpg.Connection, product_id: str) -> Optional[ReportRecord]:
    header = await conn.fetchrow(
        """
        SELECT product_id, status, hidden_at, deleted_at, reviewed_at, admin_decision
        FROM product_reports
        WHERE product_id = $1
        """,
        product_id,
    )
    if header is None:
        return None
    entries = await conn.fetch(
        """
        SELECT product_id, reporter_id, reason, description, reported_at
        FROM product_report_entries
        WHERE product_id = $1
        ORDER BY reported_at ASC
        """,
        product_id,
    )
    return _report_from_record(header, [_entry_from_record(row) for row in entries])


def _optional_str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _location(aimag: Any, soum: Any) -> Optional[Location]:
    if not aimag:
        return None
    return Location(aimag=str(aimag), soum=_optional_str(soum))


def _listing_params(listing: Listing) -> tuple[Any, ...]:
    location = listing.location
    return (
        listing.id,
        listing.title,
        listing.owner_id,
        listing.status.value,
        listing.tier.value,
        location.aimag if location else None,
        location.soum if location else None,
        listing.category,
        listing.description,
        listing.views,
        listing.saves,
        listing.call_clicks,
        listing.chat_clicks,
        listing.shares,
        listing.created_at,
        listing.deleted_at,
        listing.deletion_reason,
        listing.suspended_at,
        listing.restored_at,
        listing.status_reason,
        listing.status_changed_at,
        listing.moderation_record_id,
        list(listing.warnings),
        listing.needs_edit,
    )


def _listing_from_record(record: asyncpg.Record) -> Listing:
    return Listing(
        id=str(record["id"]),
        title=str(record["title"]),
        owner_id=str(record["owner_id"]),
        status=ListingStatus(record["status"]),
        tier=VisibilityTier(record["tier"]),
        location=_location(record["aimag"], record["soum"]),
        category=_optional_str(record["category"]),
        description=_optional_str(record["description"]),
        views=int(record["views"]),
        saves=int(record["saves"]),
        call_clicks=int(record["call_clicks"]),
        chat_clicks=int(record["chat_clicks"]),
        shares=int(record["shares"]),
        created_at=record["created_at"],
        deleted_at=record["deleted_at"],
        deletion_reason=_optional_str(record["deletion_reason"]),
        suspended_at=record["suspended_at"],
        restored_at=record["restored_at"],
        status_reason=_optional_str(record["status_reason"]),
        status_changed_at=record["status_changed_at"],
        moderation_record_id=_optional_str(record["moderation_record_id"]),
        warnings=list(record["warnings"] or []),
        needs_edit=bool(record["needs_edit"]),
    )


def _entry_from_record(record: asyncpg.Record) -> ReportEntry:
    return ReportEntry(
        reporter_id=str(record["reporter_id"]),
        reason=ReportReason(record["reason"]),
        description=_optional_str(record["description"]),
        reported_at=record["reported_at"],
    )


def _report_from_record(record: asyncpg.Record, entries: list[ReportEntry]) -> ReportRecord:
    decision = record["admin_decision"]
    return ReportRecord(
        product_id=str(record["product_id"]),
        reports=entries,
        status=ReportStatus(record["status"]),
        hidden_at=record["hidden_at"],
        deleted_at=record["deleted_at"],
        reviewed_at=record["reviewed_at"],
        admin_decision=AdminDecision(decision) if decision else None,
    )


def _record_from_record(record: asyncpg.Record) -> ModerationRecord:
    return ModerationRecord(
        id=str(record["id"]),
        listing_id=str(record["listing_id"]),
        listing_title_snapshot=str(record["listing_title_snapshot"]),
        owner_id=str(record["owner_id"]),
        violation_type=ViolationType(record["violation_type"]),
        action_taken=ModerationAction(record["action_taken"]),
        refund_policy=RefundPolicy(record["refund_policy"]),
        refund_amount=record["refund_amount"],
        moderator_id=_optional_str(record["moderator_id"]),
        moderator_note=str(record["moderator_note"]),
        created_at=record["created_at"],
        appeal_deadline=record["appeal_deadline"],
        appeal_status=AppealStatus(record["appeal_status"]),
        appeal_note=_optional_str(record["appeal_note"]),
        appeal_resolved_at=record["appeal_resolved_at"],
        idempotency_key=_optional_str(record["idempotency_key"]),
    )


def _appeal_from_record(record: asyncpg.Record) -> Appeal:
    return Appeal(
        id=str(record["id"]),
        moderation_record_id=str(record["moderation_record_id"]),
        submitter_id=str(record["submitter_id"]),
        reason=str(record["reason"]),
        evidence=tuple(record["evidence"] or ()),
        submitted_at=record["submitted_at"],
        status=AppealState(record["status"]),
        reviewer_id=_optional_str(record["reviewer_id"]),
        reviewer_note=_optional_str(record["reviewer_note"]),
        resolved_at=record["resolved_at"],
    )


def _audit_from_record(record: asyncpg.Record) -> AuditEntry:
    meta = record["meta"]
    if isinstance(meta, str):
        try:
            meta_dict: Mapping[str, Any] = json.loads(meta)
        except json.JSONDecodeError:
            meta_dict = {}
    else:
        meta_dict = dict(meta or {})
    return AuditEntry(
        actor_id=_optional_str(record["actor_id"]),
        action=str(record["action"]),
        subject_type=str(record["subject_type"]),
        subject_id=str(record["subject_id"]),
        meta=meta_dict,
        created_at=record["created_at"],
    )


def _status_from_record(record: asyncpg.Record) -> SystemStatus:
    return SystemStatus(
        id=str(record["id"]),
        mode=SystemMode(record["mode"]),
        message=_optional_str(record["message"]),
        enabled_at=record["enabled_at"],
        enabled_by=str(record["enabled_by"]),
        scheduled_end=record["scheduled_end"],
        is_active=bool(record["is_active"]),
    )
