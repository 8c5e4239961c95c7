"""Round cadence: when the next automatic round runs, and the stored schedule row.

The calculator works on calendar dates in the configured timezone. A scheduled
round fires on the first check on or after its date, and advancing past missed
slots never produces more than one catch-up round. The stored row carries a
version that every write compares and bumps.
"""

from __future__ import annotations

import calendar
import logging
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from ..models import ScheduleConfig
from .errors import NotFoundError, StateConflictError, ValidationError

logger = logging.getLogger(__name__)


class ScheduleType(str, Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


def _parse_schedule_type(value: Any) -> ScheduleType:
    try:
        return ScheduleType(str(value or "").strip().lower())
    except ValueError:
        allowed = ", ".join(t.value for t in ScheduleType)
        raise ValidationError("schedule_type", f"Invalid schedule type: {value}. Must be one of: {allowed}")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int = 1) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class ScheduleCalculator:
    """Recurrence arithmetic for the automatic matching schedule.

    Wall-clock arithmetic happens in ``tz`` so a 09:00 run stays at 09:00
    local time across DST changes. Results are returned in UTC.
    """

    def __init__(self, tz: str = "UTC") -> None:
        self.tz = tz
        self._zone = timezone.utc if tz.upper() == "UTC" else ZoneInfo(tz)

    def _local(self, value: datetime) -> datetime:
        return _as_utc(value).astimezone(self._zone)

    def local_date(self, value: datetime) -> date:
        return self._local(value).date()

    def set_schedule_type(self, config: dict[str, Any], schedule_type: Any) -> dict[str, Any]:
        return {**config, "schedule_type": _parse_schedule_type(schedule_type).value}

    def validate_next_run_date(self, value: datetime, now: datetime) -> datetime:
        candidate = self._local(value)
        local_now = self._local(now)
        if candidate.date() < local_now.date():
            raise ValidationError("date", "Next scheduled run date must be today or later")
        if candidate.date() == local_now.date() and candidate <= local_now:
            raise ValidationError("time", "Next scheduled run time must be later than the current time")
        return _as_utc(value)

    def advance(self, previous: datetime, schedule_type: Any) -> datetime:
        kind = _parse_schedule_type(schedule_type)
        wall = self._local(previous).replace(tzinfo=None)
        if kind is ScheduleType.WEEKLY:
            nxt = wall + timedelta(days=7)
        elif kind is ScheduleType.BIWEEKLY:
            nxt = wall + timedelta(days=14)
        else:
            nxt = add_months(wall, 1)
        return nxt.replace(tzinfo=self._zone).astimezone(timezone.utc)

    def advance_past(self, previous: datetime, schedule_type: Any, now: datetime) -> datetime:
        nxt = self.advance(previous, schedule_type)
        now = _as_utc(now)
        while nxt <= now:
            nxt = self.advance(nxt, schedule_type)
        return nxt

    def is_due(self, config: dict[str, Any], now: datetime) -> bool:
        if not config.get("enabled"):
            return False
        next_run = config.get("next_run_date")
        if next_run is None:
            return False
        return _as_utc(now) >= _as_utc(next_run)


def schedule_config_to_dict(row: ScheduleConfig) -> dict[str, Any]:
    return {
        "tenant_id": row.tenant_id,
        "enabled": bool(row.enabled),
        "schedule_type": row.schedule_type,
        "next_run_date": row.next_run_date,
        "last_run_date": row.last_run_date,
        "version": int(row.version),
        "updated_at": row.updated_at,
    }


def get_schedule_config(db, tenant_id: str) -> dict[str, Any] | None:
    row = db.execute(
        select(ScheduleConfig)
        .where(ScheduleConfig.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    return schedule_config_to_dict(row) if row else None


def get_or_create_schedule_config(
    db,
    tenant_id: str,
    calculator: ScheduleCalculator,
    now: datetime,
    default_type: str = "monthly",
) -> dict[str, Any]:
    """Read the tenant's schedule row, inserting the disabled default if missing.

    Must be the first statement of its transaction: losing the insert race
    rolls the session back before re-reading the winner's row.
    """
    existing = get_schedule_config(db, tenant_id)
    if existing:
        return existing
    schedule_type = _parse_schedule_type(default_type).value
    db.add(
        ScheduleConfig(
            tenant_id=tenant_id,
            enabled=False,
            schedule_type=schedule_type,
            next_run_date=calculator.advance(now, schedule_type),
            last_run_date=None,
            version=1,
            updated_at=now,
        )
    )
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.info("schedule_config for tenant=%s created concurrently", tenant_id)
    created = get_schedule_config(db, tenant_id)
    if created is None:
        raise NotFoundError(f"Schedule configuration for tenant {tenant_id} not found")
    return created


def compare_and_set_schedule(db, tenant_id: str, expected_version: int, values: dict[str, Any], now: datetime) -> int:
    res = db.execute(
        update(ScheduleConfig)
        .where(ScheduleConfig.tenant_id == tenant_id, ScheduleConfig.version == expected_version)
        .values(**values, version=expected_version + 1, updated_at=now)
    )
    if int(res.rowcount or 0) != 1:
        logger.warning("schedule_config CAS lost tenant=%s expected_version=%s", tenant_id, expected_version)
        raise StateConflictError("Schedule configuration was changed concurrently; reload and retry")
    return expected_version + 1


def _check_expected_version(current: dict[str, Any], expected_version: int | None) -> None:
    if expected_version is not None and int(expected_version) != int(current["version"]):
        raise StateConflictError(
            f"Schedule configuration version is {current['version']}, expected {expected_version}"
        )


def update_schedule(
    db,
    tenant_id: str,
    calculator: ScheduleCalculator,
    now: datetime,
    schedule_type: str | None = None,
    next_run_date: datetime | None = None,
    expected_version: int | None = None,
    default_type: str = "monthly",
) -> dict[str, Any]:
    current = get_or_create_schedule_config(db, tenant_id, calculator, now, default_type=default_type)
    _check_expected_version(current, expected_version)

    values: dict[str, Any] = {}
    if schedule_type is not None:
        values["schedule_type"] = calculator.set_schedule_type(current, schedule_type)["schedule_type"]
    if next_run_date is not None:
        values["next_run_date"] = calculator.validate_next_run_date(next_run_date, now)
    if not values:
        return current

    compare_and_set_schedule(db, tenant_id, current["version"], values, now)
    logger.info(
        "schedule updated tenant=%s type=%s next_run=%s",
        tenant_id,
        values.get("schedule_type", current["schedule_type"]),
        values.get("next_run_date", current["next_run_date"]),
    )
    return get_schedule_config(db, tenant_id)


def set_schedule_enabled(
    db,
    tenant_id: str,
    calculator: ScheduleCalculator,
    enabled: bool,
    now: datetime,
    expected_version: int | None = None,
    default_type: str = "monthly",
) -> dict[str, Any]:
    current = get_or_create_schedule_config(db, tenant_id, calculator, now, default_type=default_type)
    _check_expected_version(current, expected_version)

    values: dict[str, Any] = {"enabled": bool(enabled)}
    if enabled and _as_utc(current["next_run_date"]) <= _as_utc(now):
        # resume the prior cadence rather than restarting from now
        values["next_run_date"] = calculator.advance_past(current["next_run_date"], current["schedule_type"], now)

    compare_and_set_schedule(db, tenant_id, current["version"], values, now)
    logger.info("auto-scheduling %s tenant=%s", "enabled" if enabled else "disabled", tenant_id)
    return get_schedule_config(db, tenant_id)
