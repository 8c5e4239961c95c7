import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app import models
from app.database import Base
from app.services.eligibility import EligibilityPolicy
from app.services.external import MatchResult, ProposedPairing
from app.services.rounds import RoundCoordinator
from app.services.schedule import ScheduleCalculator

TENANT = "acme"
NOW = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    yield factory
    engine.dispose()


class PairInOrderEngine:
    """Pairs candidates in the order given; the last one is left over when odd."""

    def __init__(self) -> None:
        self.requests = []

    def match(self, request):
        self.requests.append(request)
        c = list(request.candidates)
        pairings = [ProposedPairing(user1=c[i], user2=c[i + 1], score=100.0) for i in range(0, len(c) - 1, 2)]
        return MatchResult(pairings=pairings, unpaired=c[-1] if len(c) % 2 else None)


class RecordingDispatcher:
    def __init__(self, reject=None, fail=None) -> None:
        self.calls = []
        self._reject = set(reject or [])
        self._fail = set(fail or [])

    def enqueue(self, kind, pairing_id):
        self.calls.append((kind, pairing_id))
        if pairing_id in self._fail:
            raise RuntimeError("smtp relay unavailable")
        return pairing_id not in self._reject


@pytest.fixture
def engine():
    return PairInOrderEngine()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def policy():
    return EligibilityPolicy(grace_period=timedelta(hours=48), grace_period_users_eligible=False)


@pytest.fixture
def coordinator(session_factory, engine, dispatcher, policy):
    return RoundCoordinator(
        session_factory=session_factory,
        engine=engine,
        dispatcher=dispatcher,
        policy=policy,
        calculator=ScheduleCalculator("UTC"),
        tenant_id=TENANT,
        engine_timeout_seconds=2.0,
        dispatcher_timeout_seconds=2.0,
    )


def add_department(factory, name="Engineering", is_enabled=True) -> str:
    dept_id = str(uuid.uuid4())
    with factory() as db:
        db.add(models.Department(id=dept_id, tenant_id=TENANT, name=name, is_enabled=is_enabled, created_at=NOW))
        db.commit()
    return dept_id


def add_user(factory, email, department_id=None, seniority_level="mid", **overrides) -> str:
    user_id = str(uuid.uuid4())
    values = {
        "is_active": True,
        "is_opted_in": True,
        "opted_in_at": NOW - timedelta(days=30),
        "available_from": None,
        "override_department_exclusion": False,
        "skip_grace_period": False,
    }
    values.update(overrides)
    with factory() as db:
        db.add(
            models.User(
                id=user_id,
                tenant_id=TENANT,
                email=email,
                display_name=email.split("@")[0].title(),
                department_id=department_id,
                seniority_level=seniority_level,
                created_at=NOW,
                **values,
            )
        )
        db.commit()
    return user_id


def add_users(factory, n, department_id=None) -> list[str]:
    department_id = department_id or add_department(factory)
    return [add_user(factory, f"user{i:02d}@acme.test", department_id=department_id) for i in range(n)]
