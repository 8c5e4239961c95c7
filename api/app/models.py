import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint

from .database import Base, UTCDateTime


def _uuid() -> str:
    return str(uuid.uuid4())


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class Department(Base):
    __tablename__ = "department"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    is_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False, default=_now_utc)


class User(Base):
    __tablename__ = "user_account"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String, nullable=False)
    email = Column(String(255), nullable=False)
    display_name = Column(String(200), nullable=True)
    department_id = Column(String(36), ForeignKey("department.id", ondelete="SET NULL"), nullable=True)
    seniority_level = Column(String(20), nullable=True, default="mid")
    is_active = Column(Boolean, nullable=False, default=True)
    is_opted_in = Column(Boolean, nullable=False, default=False)
    opted_in_at = Column(UTCDateTime, nullable=True)
    available_from = Column(UTCDateTime, nullable=True)
    override_department_exclusion = Column(Boolean, nullable=False, default=False)
    skip_grace_period = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False, default=_now_utc)

    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="uq_user_account_tenant_email"),
        Index("idx_user_account_tenant_id", "tenant_id"),
        Index("idx_user_account_department_id", "department_id"),
    )


class ScheduleConfig(Base):
    __tablename__ = "schedule_config"

    tenant_id = Column(String, primary_key=True)
    enabled = Column(Boolean, nullable=False, default=False)
    schedule_type = Column(String(20), nullable=False, default="monthly")
    next_run_date = Column(UTCDateTime, nullable=False)
    last_run_date = Column(UTCDateTime, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(UTCDateTime, nullable=False, default=_now_utc)


class MatchingRound(Base):
    __tablename__ = "matching_round"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String, nullable=False)
    name = Column(String(100), nullable=True)
    source = Column(String(20), nullable=False, default="manual")
    idempotency_key = Column(String(200), nullable=False)
    filters_snapshot = Column(JSON, nullable=True)
    options_snapshot = Column(JSON, nullable=True)
    total_participants = Column(Integer, nullable=False, default=0)
    total_pairings = Column(Integer, nullable=False, default=0)
    unpaired_user_id = Column(String(36), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=_now_utc)

    __table_args__ = (
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_matching_round_idempotency_key"),
        Index("idx_matching_round_tenant_created", "tenant_id", "created_at"),
    )


class Pairing(Base):
    __tablename__ = "pairing"

    id = Column(String(36), primary_key=True, default=_uuid)
    round_id = Column(String(36), ForeignKey("matching_round.id", ondelete="CASCADE"), nullable=False)
    user1_id = Column(String(36), nullable=False)
    user2_id = Column(String(36), nullable=False)
    score = Column(Float, nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    meeting_scheduled_at = Column(UTCDateTime, nullable=True)
    meeting_completed_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(UTCDateTime, nullable=False, default=_now_utc)
    updated_at = Column(UTCDateTime, nullable=False, default=_now_utc)

    __table_args__ = (
        Index("idx_pairing_round_id", "round_id"),
        Index("idx_pairing_users", "user1_id", "user2_id"),
        Index("idx_pairing_status", "status"),
    )


class MeetingFeedback(Base):
    __tablename__ = "meeting_feedback"

    id = Column(String(36), primary_key=True, default=_uuid)
    pairing_id = Column(String(36), ForeignKey("pairing.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), nullable=False)
    rating = Column(Integer, nullable=False)
    comments = Column(Text, nullable=True)
    topics = Column(JSON, nullable=True)
    submitted_at = Column(UTCDateTime, nullable=False, default=_now_utc)
    updated_at = Column(UTCDateTime, nullable=False, default=_now_utc)

    __table_args__ = (
        UniqueConstraint("pairing_id", "user_id", name="uq_meeting_feedback_pairing_user"),
    )


class NotificationQueue(Base):
    __tablename__ = "notification_queue"

    id = Column(String(36), primary_key=True, default=_uuid)
    kind = Column(String(30), nullable=False)
    pairing_id = Column(String(36), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="queued")
    created_at = Column(UTCDateTime, nullable=False, default=_now_utc)
