"""Round lifecycle: preview, commit, reminders and per-pairing transitions.

A round is either a draft (``preview``; never persisted) or committed
(``run``). Committing writes the round, all of its pairings and the schedule
bookkeeping in one transaction guarded by a compare-and-set on
``schedule_config.version``. Pairing mutations compare-and-set on
``pairing.version``. Calls to the matching engine and the dispatcher go
through ``call_with_timeout`` and are never retried here.
"""

from __future__ import annotations

import calendar
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError

from .. import repo
from .eligibility import EligibilityPolicy, build_candidate_pool, evaluate, is_pair_eligible, summarize_statuses
from .errors import ExternalDependencyError, InvalidStateError, NotFoundError, StateConflictError, ValidationError
from .external import Dispatcher, MatchingEngine, MatchRequest, MatchResult, UserSummary, call_with_timeout
from .schedule import (
    ScheduleCalculator,
    compare_and_set_schedule,
    get_or_create_schedule_config,
    set_schedule_enabled,
    update_schedule,
)
from .state_machine import OPEN_STATUSES, transition_pairing

logger = logging.getLogger(__name__)

ROUND_SOURCES = {"manual", "scheduled", "legacy"}
FILTER_KEYS = ("department_ids", "seniority_levels", "user_ids")
OPTION_KEYS = ("ignore_recent_history", "reset_auto_schedule", "include_grace_period")
MAX_IDEMPOTENCY_KEY_LENGTH = 200
MAX_ROUND_NAME_LENGTH = 100


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def normalize_filters(filters: dict[str, Any] | None) -> dict[str, list[str]]:
    out: dict[str, list[str]] = {}
    for key in FILTER_KEYS:
        values = (filters or {}).get(key)
        if values is None:
            continue
        if not isinstance(values, (list, tuple, set)):
            raise ValidationError(key, f"{key} must be a list")
        cleaned = sorted({str(v).strip() for v in values if str(v).strip()})
        if cleaned:
            out[key] = cleaned
    return out


def normalize_options(options: dict[str, Any] | None) -> dict[str, bool]:
    return {key: bool((options or {}).get(key, False)) for key in OPTION_KEYS}


def check_match_result(candidates: list[UserSummary], result: MatchResult) -> None:
    pool = {c.id for c in candidates}
    seen: set[str] = set()
    for p in result.pairings:
        for uid in (p.user1.id, p.user2.id):
            if uid not in pool:
                raise ExternalDependencyError(f"matching engine paired user {uid} who is not in the candidate pool")
            if uid in seen:
                raise ExternalDependencyError(f"matching engine paired user {uid} more than once")
            seen.add(uid)
    odd = len(pool) % 2 == 1
    if odd and result.unpaired is None:
        raise ExternalDependencyError("matching engine did not designate an unpaired user for an odd pool")
    if not odd and result.unpaired is not None:
        raise ExternalDependencyError("matching engine designated an unpaired user for an even pool")
    if result.unpaired is not None:
        if result.unpaired.id not in pool or result.unpaired.id in seen:
            raise ExternalDependencyError("matching engine returned an invalid unpaired user")
        seen.add(result.unpaired.id)
    if seen != pool:
        raise ExternalDependencyError(
            f"matching engine left {len(pool - seen)} candidate(s) neither paired nor designated unpaired"
        )


class RoundCoordinator:
    def __init__(
        self,
        session_factory: Callable[[], Any],
        engine: MatchingEngine,
        dispatcher: Dispatcher,
        policy: EligibilityPolicy,
        calculator: ScheduleCalculator,
        tenant_id: str = "default",
        engine_timeout_seconds: float = 30.0,
        dispatcher_timeout_seconds: float = 10.0,
        default_schedule_type: str = "monthly",
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine
        self._dispatcher = dispatcher
        self.policy = policy
        self.calculator = calculator
        self.tenant_id = tenant_id
        self.engine_timeout_seconds = engine_timeout_seconds
        self.dispatcher_timeout_seconds = dispatcher_timeout_seconds
        self.default_schedule_type = default_schedule_type

    # -- eligibility ---------------------------------------------------

    def list_participants(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or _now_utc()
        with self._session_factory() as db:
            users = repo.list_users(db, self.tenant_id)
            departments = repo.departments_by_id(db, self.tenant_id)

        rows: list[dict[str, Any]] = []
        statuses = []
        for user in users:
            department = departments.get(user["department_id"]) if user["department_id"] else None
            status = evaluate(user, department, now, self.policy)
            statuses.append(status)
            rows.append(
                {
                    **UserSummary.from_user(user).to_dict(),
                    "department": department["name"] if department else None,
                    "participation_status": status.value,
                    "eligible": is_pair_eligible(status, self.policy),
                }
            )
        return {
            "data": rows,
            "counts": summarize_statuses(statuses),
            "eligible_count": sum(1 for r in rows if r["eligible"]),
        }

    # -- preview / run -------------------------------------------------

    def _load_pool(self, filters: dict[str, list[str]], options: dict[str, bool], now: datetime) -> list[UserSummary]:
        with self._session_factory() as db:
            users = repo.list_users(db, self.tenant_id)
            departments = repo.departments_by_id(db, self.tenant_id)
        pool = build_candidate_pool(
            users,
            departments,
            now,
            self.policy,
            filters=filters,
            include_grace_period=options["include_grace_period"],
        )
        if len(pool) < 2:
            raise ValidationError(
                "participants",
                f"Not enough eligible participants for matching (minimum 2 required, found {len(pool)})",
            )
        return [UserSummary.from_user(u) for u in pool]

    def _match(self, candidates: list[UserSummary], filters: dict[str, list[str]], options: dict[str, bool]) -> MatchResult:
        request = MatchRequest(
            candidates=candidates,
            exclude_recent_history=options["ignore_recent_history"],
            filters=filters,
        )
        result = call_with_timeout("matching engine", lambda: self._engine.match(request), self.engine_timeout_seconds)
        check_match_result(candidates, result)
        return result

    def preview(
        self,
        filters: dict[str, Any] | None = None,
        options: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now = now or _now_utc()
        filters = normalize_filters(filters)
        options = normalize_options(options)
        candidates = self._load_pool(filters, options, now)
        result = self._match(candidates, filters, options)
        logger.info(
            "preview tenant=%s participants=%s pairings=%s unpaired=%s",
            self.tenant_id,
            len(candidates),
            len(result.pairings),
            result.unpaired.id if result.unpaired else None,
        )
        return {
            "participants": [c.to_dict() for c in candidates],
            "pairings": [
                {"user1": p.user1.to_dict(), "user2": p.user2.to_dict(), "score": p.score} for p in result.pairings
            ],
            "unpaired": result.unpaired.to_dict() if result.unpaired else None,
            "total_participants": len(candidates),
            "total_pairings": len(result.pairings),
            "filters": filters,
            "options": options,
        }

    def _default_name(self, source: str, now: datetime) -> str:
        local = self.calculator.local_date(now)
        name = f"{calendar.month_name[local.month]} {local.year}"
        return f"{name} Coffee Roulette" if source == "scheduled" else name

    def _round_detail(self, db, round_row: dict[str, Any]) -> dict[str, Any]:
        unpaired = None
        if round_row["unpaired_user_id"]:
            user = repo.get_user(db, round_row["unpaired_user_id"])
            unpaired = UserSummary.from_user(user).to_dict() if user else {"id": round_row["unpaired_user_id"]}
        return {
            **round_row,
            "pairings": repo.list_round_pairings(db, round_row["id"]),
            "unpaired": unpaired,
        }

    def _replay(self, idempotency_key: str) -> dict[str, Any] | None:
        with self._session_factory() as db:
            existing = repo.get_round_by_idempotency_key(db, self.tenant_id, idempotency_key)
            if existing is None:
                return None
            logger.info("run replayed tenant=%s key=%s round_id=%s", self.tenant_id, idempotency_key, existing["id"])
            return {**self._round_detail(db, existing), "replayed": True, "notifications_queued": 0, "results": []}

    def run(
        self,
        idempotency_key: str,
        name: str | None = None,
        filters: dict[str, Any] | None = None,
        options: dict[str, Any] | None = None,
        source: str = "manual",
        now: datetime | None = None,
        schedule_snapshot: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        now = now or _now_utc()
        key = str(idempotency_key or "").strip()
        if not key:
            raise ValidationError("idempotency_key", "An idempotency key is required to run matching")
        if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise ValidationError("idempotency_key", f"Idempotency key must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters")
        if source not in ROUND_SOURCES:
            raise ValidationError("source", f"Invalid round source: {source}")
        if name is not None and len(name.strip()) > MAX_ROUND_NAME_LENGTH:
            raise ValidationError("name", f"Round name must be at most {MAX_ROUND_NAME_LENGTH} characters")

        replayed = self._replay(key)
        if replayed is not None:
            return replayed

        schedule = schedule_snapshot
        if schedule is None:
            with self._session_factory() as db:
                schedule = get_or_create_schedule_config(
                    db, self.tenant_id, self.calculator, now, default_type=self.default_schedule_type
                )
                db.commit()

        filters = normalize_filters(filters)
        options = normalize_options(options)
        candidates = self._load_pool(filters, options, now)
        result = self._match(candidates, filters, options)

        schedule_values: dict[str, Any] = {"last_run_date": now}
        if source == "scheduled":
            schedule_values["next_run_date"] = self.calculator.advance_past(
                schedule["next_run_date"], schedule["schedule_type"], now
            )
        elif options["reset_auto_schedule"]:
            schedule_values["next_run_date"] = self.calculator.advance(now, schedule["schedule_type"])

        pairings = [{"user1_id": p.user1.id, "user2_id": p.user2.id, "score": p.score} for p in result.pairings]
        with self._session_factory() as db:
            try:
                compare_and_set_schedule(db, self.tenant_id, schedule["version"], schedule_values, now)
                round_id = repo.insert_round_with_pairings(
                    db,
                    tenant_id=self.tenant_id,
                    name=(name or "").strip() or self._default_name(source, now),
                    source=source,
                    idempotency_key=key,
                    filters_snapshot=filters,
                    options_snapshot=options,
                    total_participants=len(candidates),
                    unpaired_user_id=result.unpaired.id if result.unpaired else None,
                    pairings=pairings,
                    now=now,
                )
                db.commit()
            except (IntegrityError, StateConflictError):
                db.rollback()
                replayed = self._replay(key)
                if replayed is not None:
                    return replayed
                raise StateConflictError("Another matching run or schedule change committed first; retry the request")

            committed = repo.get_round(db, round_id, self.tenant_id)
            detail = self._round_detail(db, committed)

        logger.info(
            "round committed tenant=%s round_id=%s source=%s pairings=%s unpaired=%s next_run=%s",
            self.tenant_id,
            round_id,
            source,
            len(pairings),
            committed["unpaired_user_id"],
            schedule_values.get("next_run_date", schedule["next_run_date"]),
        )
        outcomes = self._dispatch("pairing", [p["id"] for p in detail["pairings"]])
        queued = sum(1 for o in outcomes if o["outcome"] == "accepted")
        return {**detail, "replayed": False, "notifications_queued": queued, "results": outcomes}

    def run_if_due(self, now: datetime | None = None) -> dict[str, Any] | None:
        now = now or _now_utc()
        with self._session_factory() as db:
            schedule = get_or_create_schedule_config(
                db, self.tenant_id, self.calculator, now, default_type=self.default_schedule_type
            )
            db.commit()
        if not self.calculator.is_due(schedule, now):
            return None
        slot = schedule["next_run_date"].astimezone(timezone.utc).isoformat()
        logger.info("scheduled run due tenant=%s slot=%s", self.tenant_id, slot)
        # The commit is conditioned on the version that was judged due.
        return self.run(f"scheduled:{self.tenant_id}:{slot}", source="scheduled", now=now, schedule_snapshot=schedule)

    # -- notifications -------------------------------------------------

    def _dispatch(self, kind: str, pairing_ids: list[str]) -> list[dict[str, Any]]:
        outcomes: list[dict[str, Any]] = []
        for pairing_id in pairing_ids:
            try:
                accepted = call_with_timeout(
                    "notification dispatcher",
                    lambda pid=pairing_id: self._dispatcher.enqueue(kind, pid),
                    self.dispatcher_timeout_seconds,
                )
                outcomes.append({"pairing_id": pairing_id, "outcome": "accepted" if accepted else "rejected"})
            except ExternalDependencyError as exc:
                logger.warning("%s notification for pairing %s not queued: %s", kind, pairing_id, exc.message)
                outcomes.append({"pairing_id": pairing_id, "outcome": "error", "error": exc.to_dict()})
        return outcomes

    def send_reminders(self, round_id: str) -> dict[str, Any]:
        with self._session_factory() as db:
            if repo.get_round(db, round_id, self.tenant_id) is None:
                raise NotFoundError(f"Matching round {round_id} not found")
            open_pairings = repo.list_round_pairings(db, round_id, statuses=set(OPEN_STATUSES))

        outcomes = self._dispatch("reminder", [p["id"] for p in open_pairings])
        queued = sum(1 for o in outcomes if o["outcome"] == "accepted")
        logger.info("reminders round_id=%s queued %s of %s", round_id, queued, len(open_pairings))
        return {
            "round_id": str(round_id),
            "pairings_found": len(open_pairings),
            "notifications_queued": queued,
            "results": outcomes,
        }

    # -- pairing transitions -------------------------------------------

    def _transition(
        self,
        pairing_id: str,
        action: str,
        values: dict[str, Any],
        now: datetime,
        actor_user_id: str | None = None,
    ) -> dict[str, Any]:
        with self._session_factory() as db:
            pairing = repo.get_pairing(db, pairing_id, self.tenant_id)
            if pairing is None:
                raise NotFoundError(f"Pairing {pairing_id} not found")
            if actor_user_id is not None and str(actor_user_id) not in (pairing["user1_id"], pairing["user2_id"]):
                raise ValidationError("user", "You are not part of this pairing")
            new_status = transition_pairing(pairing["status"], action)
            repo.compare_and_set_pairing(db, pairing["id"], pairing["version"], {"status": new_status, **values}, now)
            db.commit()
            updated = repo.get_pairing(db, pairing["id"], self.tenant_id)
        logger.info("pairing %s %s -> %s", pairing_id, pairing["status"], new_status)
        return updated

    def schedule_meeting(self, pairing_id: str, scheduled_at: datetime, now: datetime | None = None) -> dict[str, Any]:
        if not isinstance(scheduled_at, datetime):
            raise ValidationError("meeting_scheduled_at", "Meeting time must be a timestamp")
        return self._transition(pairing_id, "schedule", {"meeting_scheduled_at": scheduled_at}, now or _now_utc())

    def confirm_meeting(self, pairing_id: str, actor_user_id: str | None = None, now: datetime | None = None) -> dict[str, Any]:
        now = now or _now_utc()
        return self._transition(pairing_id, "complete", {"meeting_completed_at": now}, now, actor_user_id=actor_user_id)

    def cancel_pairing(self, pairing_id: str, now: datetime | None = None) -> dict[str, Any]:
        now = now or _now_utc()
        return self._transition(pairing_id, "cancel", {"cancelled_at": now}, now)

    def get_pairing(self, pairing_id: str) -> dict[str, Any]:
        with self._session_factory() as db:
            pairing = repo.get_pairing(db, pairing_id, self.tenant_id)
        if pairing is None:
            raise NotFoundError(f"Pairing {pairing_id} not found")
        return pairing

    # -- feedback ------------------------------------------------------

    def submit_feedback(
        self,
        pairing_id: str,
        user_id: str,
        rating: Any,
        comments: str | None = None,
        topics: list[str] | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now = now or _now_utc()
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("rating", "Rating must be an integer between 1 and 5")
        if comments is not None and not isinstance(comments, str):
            raise ValidationError("comments", "Comments must be text")
        if topics is not None and (
            not isinstance(topics, (list, tuple)) or not all(isinstance(t, str) for t in topics)
        ):
            raise ValidationError("topics", "Topics must be a list of strings")

        with self._session_factory() as db:
            pairing = repo.get_pairing(db, pairing_id, self.tenant_id)
            if pairing is None:
                raise NotFoundError(f"Pairing {pairing_id} not found")
            if str(user_id) not in (pairing["user1_id"], pairing["user2_id"]):
                raise ValidationError("user", "You are not part of this pairing")
            if pairing["status"] != "completed":
                raise InvalidStateError(f"Feedback can only be submitted for completed meetings (status is {pairing['status']})")
            try:
                repo.compare_and_set_pairing(db, pairing["id"], pairing["version"], {}, now)
                created = repo.upsert_feedback(
                    db,
                    pairing_id=pairing["id"],
                    user_id=str(user_id),
                    rating=rating,
                    comments=comments,
                    topics=list(topics) if topics is not None else None,
                    now=now,
                )
                db.commit()
            except IntegrityError:
                db.rollback()
                raise StateConflictError(f"Feedback for pairing {pairing_id} was submitted concurrently; retry")
            feedback = repo.get_feedback(db, pairing["id"], str(user_id))
        logger.info("feedback %s pairing=%s user=%s rating=%s", "created" if created else "updated", pairing_id, user_id, rating)
        return {**feedback, "created": created}

    def get_feedback(self, pairing_id: str, user_id: str) -> dict[str, Any]:
        with self._session_factory() as db:
            if repo.get_pairing(db, pairing_id, self.tenant_id) is None:
                raise NotFoundError(f"Pairing {pairing_id} not found")
            feedback = repo.get_feedback(db, pairing_id, str(user_id))
        if feedback is None:
            raise NotFoundError(f"No feedback from user {user_id} for pairing {pairing_id}")
        return feedback

    # -- rounds --------------------------------------------------------

    def get_round(self, round_id: str) -> dict[str, Any]:
        with self._session_factory() as db:
            round_row = repo.get_round(db, round_id, self.tenant_id)
            if round_row is None:
                raise NotFoundError(f"Matching round {round_id} not found")
            return self._round_detail(db, round_row)

    def list_rounds(self, limit: int = 20, offset: int = 0) -> dict[str, Any]:
        if limit < 1 or limit > 200:
            raise ValidationError("limit", "limit must be between 1 and 200")
        if offset < 0:
            raise ValidationError("offset", "offset must not be negative")
        with self._session_factory() as db:
            rows, total = repo.list_rounds(db, self.tenant_id, limit=limit, offset=offset)
        return {"data": rows, "pagination": {"total": total, "limit": limit, "offset": offset}}

    # -- schedule ------------------------------------------------------

    def schedule_status(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or _now_utc()
        with self._session_factory() as db:
            schedule = get_or_create_schedule_config(
                db, self.tenant_id, self.calculator, now, default_type=self.default_schedule_type
            )
            db.commit()
        return {**schedule, "timezone": self.calculator.tz, "is_due": self.calculator.is_due(schedule, now)}

    def update_schedule(
        self,
        schedule_type: str | None = None,
        next_run_date: datetime | None = None,
        expected_version: int | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now = now or _now_utc()
        with self._session_factory() as db:
            schedule = update_schedule(
                db,
                self.tenant_id,
                self.calculator,
                now,
                schedule_type=schedule_type,
                next_run_date=next_run_date,
                expected_version=expected_version,
                default_type=self.default_schedule_type,
            )
            db.commit()
        return schedule

    def set_schedule_enabled(
        self,
        enabled: bool,
        expected_version: int | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now = now or _now_utc()
        with self._session_factory() as db:
            schedule = set_schedule_enabled(
                db,
                self.tenant_id,
                self.calculator,
                enabled,
                now,
                expected_version=expected_version,
                default_type=self.default_schedule_type,
            )
            db.commit()
        return schedule
