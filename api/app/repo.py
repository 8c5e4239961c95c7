from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update

from .models import Department, MatchingRound, MeetingFeedback, Pairing, User
from .services.errors import StateConflictError


def user_to_dict(row: User) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "tenant_id": row.tenant_id,
        "email": row.email,
        "display_name": row.display_name,
        "department_id": str(row.department_id) if row.department_id else None,
        "seniority_level": row.seniority_level,
        "is_active": bool(row.is_active),
        "is_opted_in": bool(row.is_opted_in),
        "opted_in_at": row.opted_in_at,
        "available_from": row.available_from,
        "override_department_exclusion": bool(row.override_department_exclusion),
        "skip_grace_period": bool(row.skip_grace_period),
    }


def department_to_dict(row: Department) -> dict[str, Any]:
    return {"id": str(row.id), "tenant_id": row.tenant_id, "name": row.name, "is_enabled": bool(row.is_enabled)}


def round_to_dict(row: MatchingRound) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "tenant_id": row.tenant_id,
        "name": row.name,
        "source": row.source,
        "idempotency_key": row.idempotency_key,
        "filters_snapshot": row.filters_snapshot or {},
        "options_snapshot": row.options_snapshot or {},
        "total_participants": int(row.total_participants or 0),
        "total_pairings": int(row.total_pairings or 0),
        "unpaired_user_id": str(row.unpaired_user_id) if row.unpaired_user_id else None,
        "created_at": row.created_at,
    }


def pairing_to_dict(row: Pairing) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "round_id": str(row.round_id),
        "user1_id": str(row.user1_id),
        "user2_id": str(row.user2_id),
        "score": row.score,
        "status": row.status,
        "meeting_scheduled_at": row.meeting_scheduled_at,
        "meeting_completed_at": row.meeting_completed_at,
        "cancelled_at": row.cancelled_at,
        "version": int(row.version),
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


def feedback_to_dict(row: MeetingFeedback) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "pairing_id": str(row.pairing_id),
        "user_id": str(row.user_id),
        "rating": int(row.rating),
        "comments": row.comments,
        "topics": list(row.topics or []),
        "submitted_at": row.submitted_at,
        "updated_at": row.updated_at,
    }


def list_users(db, tenant_id: str) -> list[dict[str, Any]]:
    rows = db.execute(select(User).where(User.tenant_id == tenant_id).order_by(User.email)).scalars().all()
    return [user_to_dict(r) for r in rows]


def get_user(db, user_id: str) -> dict[str, Any] | None:
    row = db.get(User, str(user_id))
    return user_to_dict(row) if row else None


def departments_by_id(db, tenant_id: str) -> dict[str, dict[str, Any]]:
    rows = db.execute(select(Department).where(Department.tenant_id == tenant_id)).scalars().all()
    return {str(r.id): department_to_dict(r) for r in rows}


def get_round(db, round_id: str, tenant_id: str) -> dict[str, Any] | None:
    row = db.execute(
        select(MatchingRound).where(MatchingRound.id == str(round_id), MatchingRound.tenant_id == tenant_id)
    ).scalar_one_or_none()
    return round_to_dict(row) if row else None


def get_round_by_idempotency_key(db, tenant_id: str, idempotency_key: str) -> dict[str, Any] | None:
    row = db.execute(
        select(MatchingRound).where(
            MatchingRound.tenant_id == tenant_id,
            MatchingRound.idempotency_key == idempotency_key,
        )
    ).scalar_one_or_none()
    return round_to_dict(row) if row else None


def list_rounds(db, tenant_id: str, limit: int = 20, offset: int = 0) -> tuple[list[dict[str, Any]], int]:
    total = db.execute(
        select(func.count()).select_from(MatchingRound).where(MatchingRound.tenant_id == tenant_id)
    ).scalar_one()
    rows = db.execute(
        select(MatchingRound)
        .where(MatchingRound.tenant_id == tenant_id)
        .order_by(MatchingRound.created_at.desc())
        .limit(limit)
        .offset(offset)
    ).scalars().all()
    return [round_to_dict(r) for r in rows], int(total or 0)


def list_round_pairings(db, round_id: str, statuses: set[str] | None = None) -> list[dict[str, Any]]:
    stmt = select(Pairing).where(Pairing.round_id == str(round_id))
    if statuses:
        stmt = stmt.where(Pairing.status.in_(sorted(statuses)))
    rows = db.execute(stmt.order_by(Pairing.created_at, Pairing.id)).scalars().all()
    return [pairing_to_dict(r) for r in rows]


def insert_round_with_pairings(
    db,
    *,
    tenant_id: str,
    name: str | None,
    source: str,
    idempotency_key: str,
    filters_snapshot: dict[str, Any],
    options_snapshot: dict[str, Any],
    total_participants: int,
    unpaired_user_id: str | None,
    pairings: list[dict[str, Any]],
    now: datetime,
) -> str:
    """Stage a round and its pairings on ``db``. The caller owns the commit."""
    round_row = MatchingRound(
        tenant_id=tenant_id,
        name=name,
        source=source,
        idempotency_key=idempotency_key,
        filters_snapshot=filters_snapshot,
        options_snapshot=options_snapshot,
        total_participants=total_participants,
        total_pairings=len(pairings),
        unpaired_user_id=unpaired_user_id,
        created_at=now,
    )
    db.add(round_row)
    db.flush()
    for p in pairings:
        db.add(
            Pairing(
                round_id=round_row.id,
                user1_id=p["user1_id"],
                user2_id=p["user2_id"],
                score=p.get("score"),
                status="pending",
                version=1,
                created_at=now,
                updated_at=now,
            )
        )
    db.flush()
    return str(round_row.id)


def get_pairing(db, pairing_id: str, tenant_id: str) -> dict[str, Any] | None:
    row = db.execute(
        select(Pairing)
        .join(MatchingRound, MatchingRound.id == Pairing.round_id)
        .where(Pairing.id == str(pairing_id), MatchingRound.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    return pairing_to_dict(row) if row else None


def compare_and_set_pairing(db, pairing_id: str, expected_version: int, values: dict[str, Any], now: datetime) -> int:
    res = db.execute(
        update(Pairing)
        .where(Pairing.id == str(pairing_id), Pairing.version == expected_version)
        .values(**values, version=expected_version + 1, updated_at=now)
    )
    if int(res.rowcount or 0) != 1:
        raise StateConflictError(f"Pairing {pairing_id} was modified concurrently; reload and retry")
    return expected_version + 1


def get_feedback(db, pairing_id: str, user_id: str) -> dict[str, Any] | None:
    row = db.execute(
        select(MeetingFeedback).where(
            MeetingFeedback.pairing_id == str(pairing_id),
            MeetingFeedback.user_id == str(user_id),
        )
    ).scalar_one_or_none()
    return feedback_to_dict(row) if row else None


def upsert_feedback(
    db,
    *,
    pairing_id: str,
    user_id: str,
    rating: int,
    comments: str | None,
    topics: list[str] | None,
    now: datetime,
) -> bool:
    """Insert or replace one participant's feedback. Returns True when created."""
    row = db.execute(
        select(MeetingFeedback).where(
            MeetingFeedback.pairing_id == str(pairing_id),
            MeetingFeedback.user_id == str(user_id),
        )
    ).scalar_one_or_none()
    if row is None:
        db.add(
            MeetingFeedback(
                pairing_id=str(pairing_id),
                user_id=str(user_id),
                rating=rating,
                comments=comments,
                topics=list(topics or []),
                submitted_at=now,
                updated_at=now,
            )
        )
        db.flush()
        return True
    row.rating = rating
    row.comments = comments
    row.topics = list(topics or [])
    row.updated_at = now
    db.flush()
    return False
