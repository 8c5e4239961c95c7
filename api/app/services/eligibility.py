"""Participation status for coffee roulette users.

One ordered rule chain decides a user's status so admin lists, batch jobs and
the round builder all agree. The first matching rule wins; several source
flags can be true at once, so the order is part of the contract.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable

from .. import config


class ParticipationStatus(str, Enum):
    OPTED_IN = "opted_in"
    IN_GRACE_PERIOD = "in_grace_period"
    TEMPORARILY_EXCLUDED = "temporarily_excluded"
    DEPT_EXCLUDED = "dept_excluded"
    OPTED_OUT = "opted_out"
    INACTIVE = "inactive"


@dataclass(frozen=True)
class EligibilityPolicy:
    grace_period: timedelta
    grace_period_users_eligible: bool


def eligibility_policy_from_config(
    grace_period_hours: str | None = None,
    grace_period_users_eligible: bool | None = None,
) -> EligibilityPolicy:
    raw = grace_period_hours if grace_period_hours is not None else config.GRACE_PERIOD_HOURS
    if raw is None or not str(raw).strip():
        raise ValueError("GRACE_PERIOD_HOURS must be set; there is no default grace period")
    try:
        hours = float(raw)
    except (TypeError, ValueError):
        raise ValueError(f"GRACE_PERIOD_HOURS must be a number of hours, got {raw!r}")
    if hours < 0:
        raise ValueError("GRACE_PERIOD_HOURS must not be negative")
    eligible = config.GRACE_PERIOD_USERS_ELIGIBLE if grace_period_users_eligible is None else grace_period_users_eligible
    return EligibilityPolicy(grace_period=timedelta(hours=hours), grace_period_users_eligible=bool(eligible))


def _aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def evaluate(
    user: dict[str, Any],
    department: dict[str, Any] | None,
    now: datetime,
    policy: EligibilityPolicy,
) -> ParticipationStatus:
    now = _aware(now)
    if not user.get("is_active"):
        return ParticipationStatus.INACTIVE
    if department is None:
        return ParticipationStatus.DEPT_EXCLUDED
    if not department.get("is_enabled") and not user.get("override_department_exclusion"):
        return ParticipationStatus.DEPT_EXCLUDED
    if not user.get("is_opted_in"):
        return ParticipationStatus.OPTED_OUT

    available_from = _aware(user.get("available_from"))
    if available_from is not None and available_from > now:
        return ParticipationStatus.TEMPORARILY_EXCLUDED

    opted_in_at = _aware(user.get("opted_in_at"))
    if not user.get("skip_grace_period") and opted_in_at is not None and now < opted_in_at + policy.grace_period:
        return ParticipationStatus.IN_GRACE_PERIOD
    return ParticipationStatus.OPTED_IN


def is_pair_eligible(
    status: ParticipationStatus,
    policy: EligibilityPolicy,
    include_grace_period: bool = False,
) -> bool:
    if status is ParticipationStatus.OPTED_IN:
        return True
    if status is ParticipationStatus.IN_GRACE_PERIOD:
        return policy.grace_period_users_eligible or include_grace_period
    return False


def _as_set(values: Any) -> set[str] | None:
    if not values:
        return None
    return {str(v) for v in values}


def build_candidate_pool(
    users: Iterable[dict[str, Any]],
    departments_by_id: dict[str, dict[str, Any]],
    now: datetime,
    policy: EligibilityPolicy,
    filters: dict[str, Any] | None = None,
    include_grace_period: bool = False,
) -> list[dict[str, Any]]:
    filters = filters or {}
    department_ids = _as_set(filters.get("department_ids"))
    seniority_levels = _as_set(filters.get("seniority_levels"))
    user_ids = _as_set(filters.get("user_ids"))

    pool: list[dict[str, Any]] = []
    for user in users:
        dept_id = user.get("department_id")
        department = departments_by_id.get(str(dept_id)) if dept_id else None
        status = evaluate(user, department, now, policy)
        if not is_pair_eligible(status, policy, include_grace_period):
            continue
        if department_ids is not None and str(dept_id) not in department_ids:
            continue
        if seniority_levels is not None and str(user.get("seniority_level")) not in seniority_levels:
            continue
        if user_ids is not None and str(user["id"]) not in user_ids:
            continue
        pool.append(user)
    return pool


def summarize_statuses(statuses: Iterable[ParticipationStatus]) -> dict[str, int]:
    counts = Counter(s.value for s in statuses)
    return {s.value: int(counts.get(s.value, 0)) for s in ParticipationStatus}
