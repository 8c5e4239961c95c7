import time
from datetime import datetime, timedelta, timezone

import pytest
from conftest import NOW, TENANT, PairInOrderEngine, RecordingDispatcher, add_department, add_user, add_users

from app import repo
from app.services.errors import (
    ExternalDependencyError,
    InvalidStateError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from app.services.external import MatchResult, ProposedPairing
from app.services.rounds import RoundCoordinator
from app.services.schedule import ScheduleCalculator

UTC = timezone.utc


def _coordinator_with(session_factory, policy, engine, dispatcher=None, timeout=2.0):
    return RoundCoordinator(
        session_factory=session_factory,
        engine=engine,
        dispatcher=dispatcher or RecordingDispatcher(),
        policy=policy,
        calculator=ScheduleCalculator("UTC"),
        tenant_id=TENANT,
        engine_timeout_seconds=timeout,
        dispatcher_timeout_seconds=timeout,
    )


def _round_count(session_factory):
    with session_factory() as db:
        return repo.list_rounds(db, TENANT)[1]


def test_preview_odd_and_even_pools(session_factory, coordinator):
    add_users(session_factory, 7)
    preview = coordinator.preview(now=NOW)
    assert preview["total_participants"] == 7
    assert len(preview["pairings"]) == 3
    assert preview["unpaired"] is not None

    add_user(session_factory, "late@acme.test", department_id=add_department(session_factory, "Sales"))
    preview = coordinator.preview(now=NOW)
    assert len(preview["pairings"]) == 4
    assert preview["unpaired"] is None
    assert _round_count(session_factory) == 0


def test_preview_needs_two_candidates(session_factory, coordinator):
    add_users(session_factory, 1)
    with pytest.raises(ValidationError) as exc:
        coordinator.preview(now=NOW)
    assert exc.value.field == "participants"


def test_preview_forwards_options_and_filters(session_factory, coordinator, engine):
    dept = add_department(session_factory)
    add_user(session_factory, "a@acme.test", department_id=dept, seniority_level="senior")
    add_user(session_factory, "b@acme.test", department_id=dept, seniority_level="senior")
    add_user(session_factory, "c@acme.test", department_id=dept, seniority_level="junior")

    preview = coordinator.preview(
        filters={"seniority_levels": ["senior"]},
        options={"ignore_recent_history": True},
        now=NOW,
    )
    assert preview["total_participants"] == 2
    assert engine.requests[-1].exclude_recent_history is True
    assert engine.requests[-1].filters == {"seniority_levels": ["senior"]}


def test_grace_period_users_join_only_when_asked(session_factory, coordinator):
    dept = add_department(session_factory)
    add_user(session_factory, "a@acme.test", department_id=dept)
    add_user(session_factory, "b@acme.test", department_id=dept)
    add_user(session_factory, "new@acme.test", department_id=dept, opted_in_at=NOW - timedelta(hours=1))

    assert coordinator.preview(now=NOW)["total_participants"] == 2
    assert coordinator.preview(options={"include_grace_period": True}, now=NOW)["total_participants"] == 3


def test_unpaired_user_matches_between_preview_and_commit(session_factory, coordinator):
    add_users(session_factory, 5)
    preview = coordinator.preview(now=NOW)
    committed = coordinator.run("round-1", now=NOW)
    assert committed["unpaired"] == preview["unpaired"]
    assert committed["unpaired_user_id"] == preview["unpaired"]["id"]
    assert committed["total_pairings"] == 2
    assert committed["name"] == "January 2024"


def test_run_is_idempotent(session_factory, coordinator, dispatcher):
    add_users(session_factory, 8)
    first = coordinator.run("round-1", name="Kickoff", now=NOW)
    second = coordinator.run("round-1", name="Kickoff", now=NOW)

    assert first["replayed"] is False
    assert first["notifications_queued"] == 4
    assert second["replayed"] is True
    assert second["id"] == first["id"]
    assert _round_count(session_factory) == 1
    with session_factory() as db:
        assert len(repo.list_round_pairings(db, first["id"])) == 4
    assert [kind for kind, _ in dispatcher.calls] == ["pairing"] * 4


def test_run_requires_idempotency_key(session_factory, coordinator):
    add_users(session_factory, 4)
    with pytest.raises(ValidationError) as exc:
        coordinator.run("  ", now=NOW)
    assert exc.value.field == "idempotency_key"


def test_manual_run_records_last_run_and_optionally_resets_schedule(session_factory, coordinator):
    add_users(session_factory, 4)
    before = coordinator.schedule_status(now=NOW)

    coordinator.run("plain", now=NOW)
    after_plain = coordinator.schedule_status(now=NOW)
    assert after_plain["last_run_date"] == NOW
    assert after_plain["next_run_date"] == before["next_run_date"]

    later = NOW + timedelta(days=3)
    coordinator.run("reset", options={"reset_auto_schedule": True}, now=later)
    after_reset = coordinator.schedule_status(now=later)
    assert after_reset["last_run_date"] == later
    assert after_reset["next_run_date"] == datetime(2024, 2, 18, 9, 0, tzinfo=UTC)


def test_scheduled_monthly_run_advances_from_previous_slot(session_factory, coordinator):
    add_users(session_factory, 6)
    setup_time = datetime(2024, 1, 10, 12, 0, tzinfo=UTC)
    slot = datetime(2024, 1, 15, 9, 0, tzinfo=UTC)
    coordinator.update_schedule(schedule_type="monthly", next_run_date=slot, now=setup_time)
    coordinator.set_schedule_enabled(True, now=setup_time)

    assert coordinator.run_if_due(now=slot - timedelta(minutes=1)) is None

    result = coordinator.run_if_due(now=slot + timedelta(minutes=5))
    assert result["source"] == "scheduled"
    assert result["idempotency_key"] == "scheduled:acme:2024-01-15T09:00:00+00:00"
    assert result["name"] == "January 2024 Coffee Roulette"

    status = coordinator.schedule_status(now=slot + timedelta(minutes=5))
    assert status["next_run_date"] == datetime(2024, 2, 15, 9, 0, tzinfo=UTC)
    assert status["is_due"] is False
    assert coordinator.run_if_due(now=slot + timedelta(minutes=6)) is None
    assert _round_count(session_factory) == 1


def test_schedule_change_during_run_is_a_conflict(session_factory, policy):
    add_users(session_factory, 4)
    holder = {}

    class InterferingEngine(PairInOrderEngine):
        def match(self, request):
            holder["coordinator"].set_schedule_enabled(True, now=NOW)
            return super().match(request)

    coordinator = _coordinator_with(session_factory, policy, InterferingEngine())
    holder["coordinator"] = coordinator
    with pytest.raises(StateConflictError):
        coordinator.run("round-1", now=NOW)
    assert _round_count(session_factory) == 0
    assert coordinator.schedule_status(now=NOW)["last_run_date"] is None


def test_schedule_disabled_after_due_check_blocks_scheduled_run(monkeypatch, session_factory, coordinator):
    add_users(session_factory, 4)
    setup_time = datetime(2024, 1, 10, 12, 0, tzinfo=UTC)
    slot = datetime(2024, 1, 15, 9, 0, tzinfo=UTC)
    coordinator.update_schedule(schedule_type="monthly", next_run_date=slot, now=setup_time)
    coordinator.set_schedule_enabled(True, now=setup_time)

    is_due = coordinator.calculator.is_due
    edits = []

    def due_then_disabled(schedule, now):
        due = is_due(schedule, now)
        if due and not edits:
            edits.append(coordinator.set_schedule_enabled(False, now=now))
        return due

    monkeypatch.setattr(coordinator.calculator, "is_due", due_then_disabled)
    with pytest.raises(StateConflictError):
        coordinator.run_if_due(now=slot + timedelta(minutes=5))

    assert len(edits) == 1
    assert _round_count(session_factory) == 0
    status = coordinator.schedule_status(now=slot + timedelta(minutes=5))
    assert status["enabled"] is False
    assert status["next_run_date"] == slot
    assert status["last_run_date"] is None


def test_concurrent_insert_with_same_key_resolves_to_winner(session_factory, policy):
    users = add_users(session_factory, 4)
    holder = {}

    class RacingEngine(PairInOrderEngine):
        def match(self, request):
            with session_factory() as db:
                holder["winner"] = repo.insert_round_with_pairings(
                    db,
                    tenant_id=TENANT,
                    name="winner",
                    source="manual",
                    idempotency_key="round-1",
                    filters_snapshot={},
                    options_snapshot={},
                    total_participants=2,
                    unpaired_user_id=None,
                    pairings=[{"user1_id": users[0], "user2_id": users[1], "score": 1.0}],
                    now=NOW,
                )
                db.commit()
            return super().match(request)

    coordinator = _coordinator_with(session_factory, policy, RacingEngine())
    result = coordinator.run("round-1", now=NOW)
    assert result["replayed"] is True
    assert result["id"] == holder["winner"]
    assert result["name"] == "winner"
    assert _round_count(session_factory) == 1


def test_engine_timeout_commits_nothing(session_factory, policy):
    add_users(session_factory, 4)

    class SlowEngine(PairInOrderEngine):
        def match(self, request):
            time.sleep(0.5)
            return super().match(request)

    coordinator = _coordinator_with(session_factory, policy, SlowEngine(), timeout=0.05)
    with pytest.raises(ExternalDependencyError, match="timed out"):
        coordinator.run("round-1", now=NOW)
    assert _round_count(session_factory) == 0
    assert coordinator.schedule_status(now=NOW)["last_run_date"] is None


def test_engine_failure_and_bad_results_surface_as_external_errors(session_factory, policy):
    add_users(session_factory, 4)

    class BrokenEngine:
        def match(self, request):
            raise ConnectionError("engine unreachable")

    class DuplicatingEngine:
        def match(self, request):
            a, b = request.candidates[0], request.candidates[1]
            return MatchResult(
                pairings=[ProposedPairing(a, b, 1.0), ProposedPairing(a, request.candidates[2], 1.0)],
            )

    class IncompleteEngine:
        def match(self, request):
            a, b = request.candidates[0], request.candidates[1]
            return MatchResult(pairings=[ProposedPairing(a, b, 1.0)])

    for engine in (BrokenEngine(), DuplicatingEngine(), IncompleteEngine()):
        coordinator = _coordinator_with(session_factory, policy, engine)
        with pytest.raises(ExternalDependencyError):
            coordinator.run("round-1", now=NOW)
    assert _round_count(session_factory) == 0


def test_dispatch_failure_after_commit_keeps_round(session_factory, policy):
    add_users(session_factory, 4)

    class FlakyDispatcher(RecordingDispatcher):
        def enqueue(self, kind, pairing_id):
            self.calls.append((kind, pairing_id))
            if len(self.calls) == 1:
                raise RuntimeError("queue down")
            return True

    coordinator = _coordinator_with(session_factory, policy, PairInOrderEngine(), FlakyDispatcher())
    result = coordinator.run("round-1", now=NOW)
    assert result["notifications_queued"] == 1
    outcomes = {r["pairing_id"]: r["outcome"] for r in result["results"]}
    assert outcomes == {p["id"]: o for p, o in zip(result["pairings"], ("error", "accepted"))}
    assert "queue down" in result["results"][0]["error"]["message"]

    replay = coordinator.run("round-1", now=NOW)
    assert replay["replayed"] is True
    assert replay["results"] == []
    assert _round_count(session_factory) == 1


def _committed_round(coordinator, session_factory, n_users):
    add_users(session_factory, n_users)
    return coordinator.run("round-1", now=NOW)


def test_reminders_cover_open_pairings_only(session_factory, coordinator, dispatcher):
    committed = _committed_round(coordinator, session_factory, 14)
    pairings = committed["pairings"]
    assert len(pairings) == 7
    for p in pairings[:2]:
        coordinator.confirm_meeting(p["id"], now=NOW)
    coordinator.schedule_meeting(pairings[2]["id"], NOW + timedelta(days=2), now=NOW)
    dispatcher.calls.clear()

    report = coordinator.send_reminders(committed["id"])
    assert report["pairings_found"] == 5
    assert report["notifications_queued"] == 5
    assert {o["outcome"] for o in report["results"]} == {"accepted"}
    assert len(dispatcher.calls) == 5
    assert all(kind == "reminder" for kind, _ in dispatcher.calls)

    # reminders never mutate pairings
    with session_factory() as db:
        statuses = sorted(p["status"] for p in repo.list_round_pairings(db, committed["id"]))
    assert statuses == ["completed", "completed", "confirmed", "pending", "pending", "pending", "pending"]


def test_reminders_report_partial_acceptance(session_factory, policy):
    add_users(session_factory, 10)
    dispatcher = RecordingDispatcher()
    coordinator = _coordinator_with(session_factory, policy, PairInOrderEngine(), dispatcher)
    committed = coordinator.run("round-1", now=NOW)
    ids = [p["id"] for p in committed["pairings"]]
    dispatcher._reject = {ids[0]}
    dispatcher._fail = {ids[1]}

    report = coordinator.send_reminders(committed["id"])
    assert report["pairings_found"] == 5
    assert report["notifications_queued"] == 3
    outcomes = {o["pairing_id"]: o["outcome"] for o in report["results"]}
    assert outcomes[ids[0]] == "rejected"
    assert outcomes[ids[1]] == "error"


def test_reminders_for_unknown_round(coordinator):
    with pytest.raises(NotFoundError):
        coordinator.send_reminders("00000000-0000-0000-0000-000000000000")


def test_confirm_on_cancelled_pairing_is_rejected(session_factory, coordinator):
    committed = _committed_round(coordinator, session_factory, 4)
    pairing_id = committed["pairings"][0]["id"]
    cancelled = coordinator.cancel_pairing(pairing_id, now=NOW)
    assert cancelled["status"] == "cancelled"

    with pytest.raises(InvalidStateError):
        coordinator.confirm_meeting(pairing_id, now=NOW)
    after = coordinator.get_pairing(pairing_id)
    assert after["status"] == "cancelled"
    assert after["meeting_completed_at"] is None
    assert after["version"] == cancelled["version"]


def test_confirm_checks_actor_and_bumps_version(session_factory, coordinator):
    committed = _committed_round(coordinator, session_factory, 4)
    pairing = committed["pairings"][0]
    other = committed["pairings"][1]["user1_id"]

    with pytest.raises(ValidationError) as exc:
        coordinator.confirm_meeting(pairing["id"], actor_user_id=other, now=NOW)
    assert exc.value.field == "user"

    done = coordinator.confirm_meeting(pairing["id"], actor_user_id=pairing["user2_id"], now=NOW)
    assert done["status"] == "completed"
    assert done["meeting_completed_at"] == NOW
    assert done["version"] == pairing["version"] + 1


def test_stale_pairing_version_conflicts(session_factory, coordinator):
    committed = _committed_round(coordinator, session_factory, 4)
    pairing = committed["pairings"][0]
    coordinator.schedule_meeting(pairing["id"], NOW + timedelta(days=1), now=NOW)
    with session_factory() as db:
        with pytest.raises(StateConflictError):
            repo.compare_and_set_pairing(db, pairing["id"], pairing["version"], {"status": "cancelled"}, NOW)
    assert coordinator.get_pairing(pairing["id"])["status"] == "confirmed"


def _commit_between_read_and_write(monkeypatch, coordinator, interfere):
    """Run ``interfere`` after the coordinator's first pairing read, returning the pre-change row."""
    read_pairing = repo.get_pairing
    raced = []

    def racing_get_pairing(db, pairing_id, tenant_id):
        if raced:
            return read_pairing(db, pairing_id, tenant_id)
        raced.append(pairing_id)
        stale = coordinator.get_pairing(pairing_id)
        interfere(pairing_id)
        return stale

    monkeypatch.setattr(repo, "get_pairing", racing_get_pairing)
    return raced


def test_confirm_racing_a_cancel_does_not_overwrite_it(monkeypatch, session_factory, coordinator):
    committed = _committed_round(coordinator, session_factory, 4)
    pairing = committed["pairings"][0]

    raced = _commit_between_read_and_write(
        monkeypatch, coordinator, lambda pid: coordinator.cancel_pairing(pid, now=NOW)
    )
    with pytest.raises(StateConflictError):
        coordinator.confirm_meeting(pairing["id"], actor_user_id=pairing["user1_id"], now=NOW)

    assert raced == [pairing["id"]]
    current = coordinator.get_pairing(pairing["id"])
    assert current["status"] == "cancelled"
    assert current["meeting_completed_at"] is None
    assert current["version"] == pairing["version"] + 1


def test_feedback_racing_another_write_on_the_pairing_conflicts(monkeypatch, session_factory, coordinator):
    committed = _committed_round(coordinator, session_factory, 4)
    pairing = committed["pairings"][0]
    coordinator.confirm_meeting(pairing["id"], now=NOW)
    first, second = pairing["user1_id"], pairing["user2_id"]

    _commit_between_read_and_write(
        monkeypatch, coordinator, lambda pid: coordinator.submit_feedback(pid, second, 4, now=NOW)
    )
    with pytest.raises(StateConflictError):
        coordinator.submit_feedback(pairing["id"], first, 2, comments="late", now=NOW)

    assert coordinator.get_feedback(pairing["id"], second)["rating"] == 4
    with pytest.raises(NotFoundError):
        coordinator.get_feedback(pairing["id"], first)
    assert coordinator.get_pairing(pairing["id"])["version"] == pairing["version"] + 2


def test_feedback_lifecycle(session_factory, coordinator):
    committed = _committed_round(coordinator, session_factory, 4)
    pairing = committed["pairings"][0]
    user = pairing["user1_id"]

    with pytest.raises(InvalidStateError):
        coordinator.submit_feedback(pairing["id"], user, 3, now=NOW)

    coordinator.confirm_meeting(pairing["id"], now=NOW)
    for bad in (6, 0, True, "3", 3.5):
        with pytest.raises(ValidationError) as exc:
            coordinator.submit_feedback(pairing["id"], user, bad, now=NOW)
        assert exc.value.field == "rating"

    saved = coordinator.submit_feedback(pairing["id"], user, 3, comments="Great chat", topics=["hiking"], now=NOW)
    assert saved["created"] is True
    stored = coordinator.get_feedback(pairing["id"], user)
    assert (stored["rating"], stored["comments"], stored["topics"]) == (3, "Great chat", ["hiking"])

    replaced = coordinator.submit_feedback(pairing["id"], user, 5, now=NOW + timedelta(hours=1))
    assert replaced["created"] is False
    stored = coordinator.get_feedback(pairing["id"], user)
    assert (stored["rating"], stored["comments"], stored["topics"]) == (5, None, [])
    assert stored["id"] == saved["id"]


def test_feedback_from_outsider_or_missing(session_factory, coordinator):
    committed = _committed_round(coordinator, session_factory, 4)
    pairing = committed["pairings"][0]
    outsider = committed["pairings"][1]["user1_id"]
    coordinator.confirm_meeting(pairing["id"], now=NOW)

    with pytest.raises(ValidationError) as exc:
        coordinator.submit_feedback(pairing["id"], outsider, 4, now=NOW)
    assert exc.value.field == "user"
    with pytest.raises(NotFoundError):
        coordinator.get_feedback(pairing["id"], pairing["user2_id"])
    with pytest.raises(NotFoundError):
        coordinator.submit_feedback("00000000-0000-0000-0000-000000000000", outsider, 4, now=NOW)


def test_participants_and_round_listing(session_factory, coordinator):
    dept = add_department(session_factory)
    closed = add_department(session_factory, "Legal", is_enabled=False)
    add_user(session_factory, "a@acme.test", department_id=dept)
    add_user(session_factory, "b@acme.test", department_id=dept)
    add_user(session_factory, "c@acme.test", department_id=closed)
    add_user(session_factory, "d@acme.test", department_id=dept, is_active=False)

    participants = coordinator.list_participants(now=NOW)
    assert participants["eligible_count"] == 2
    assert participants["counts"]["dept_excluded"] == 1
    assert participants["counts"]["inactive"] == 1
    by_email = {p["email"]: p for p in participants["data"]}
    assert by_email["c@acme.test"]["department"] == "Legal"

    coordinator.run("round-1", now=NOW)
    coordinator.run("round-2", now=NOW + timedelta(days=30))
    listing = coordinator.list_rounds(limit=1)
    assert listing["pagination"]["total"] == 2
    assert len(listing["data"]) == 1
    assert listing["data"][0]["idempotency_key"] == "round-2"
    detail = coordinator.get_round(listing["data"][0]["id"])
    assert len(detail["pairings"]) == 1
    with pytest.raises(NotFoundError):
        coordinator.get_round("missing")
