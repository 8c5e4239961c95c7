from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class MatchingFilters(BaseModel):
    department_ids: list[str] | None = None
    seniority_levels: list[str] | None = None
    user_ids: list[str] | None = None


class MatchingOptions(BaseModel):
    ignore_recent_history: bool = False
    reset_auto_schedule: bool = False
    include_grace_period: bool = False


class PreviewRequest(BaseModel):
    filters: MatchingFilters = Field(default_factory=MatchingFilters)
    options: MatchingOptions = Field(default_factory=MatchingOptions)


class RunRequest(PreviewRequest):
    name: str | None = None
    idempotency_key: str | None = None


class ScheduleUpdateRequest(BaseModel):
    schedule_type: str | None = None
    next_run_date: datetime | None = None
    expected_version: int | None = None


class ScheduleToggleRequest(BaseModel):
    enabled: bool
    expected_version: int | None = None


class MeetingScheduleRequest(BaseModel):
    meeting_scheduled_at: datetime


class FeedbackRequest(BaseModel):
    # range and type are checked by the coordinator so errors carry field="rating"
    rating: Any
    comments: str | None = None
    topics: list[str] | None = None
