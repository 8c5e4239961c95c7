import random
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, select

from app.models import Department, MatchingRound, MeetingFeedback, NotificationQueue, Pairing, ScheduleConfig, User

DEPARTMENTS = [
    ("Engineering", True),
    ("Product", True),
    ("Design", True),
    ("Sales", True),
    ("People", True),
    ("Legal", False),
]

SENIORITY_WEIGHTS = {"junior": 0.25, "mid": 0.35, "senior": 0.25, "lead": 0.1, "executive": 0.05}

FIRST_NAMES = ["Ada", "Ben", "Chen", "Dana", "Eli", "Fatima", "Goran", "Hana", "Ivan", "Jo", "Kemal", "Lina"]
LAST_NAMES = ["Okafor", "Schmidt", "Tanaka", "Rossi", "Novak", "Silva", "Berg", "Khan", "Moreau", "Lee"]


def _weighted_choice(rng: random.Random, weights: dict[str, float]) -> str:
    roll = rng.random() * sum(weights.values())
    acc = 0.0
    for key, weight in weights.items():
        acc += weight
        if roll <= acc:
            return key
    return next(reversed(weights))


def _reset_tenant(db, tenant_id: str) -> None:
    round_ids = select(MatchingRound.id).where(MatchingRound.tenant_id == tenant_id)
    pairing_ids = select(Pairing.id).where(Pairing.round_id.in_(round_ids))
    db.execute(delete(MeetingFeedback).where(MeetingFeedback.pairing_id.in_(pairing_ids)))
    db.execute(delete(NotificationQueue).where(NotificationQueue.pairing_id.in_(pairing_ids)))
    db.execute(delete(Pairing).where(Pairing.round_id.in_(round_ids)))
    db.execute(delete(MatchingRound).where(MatchingRound.tenant_id == tenant_id))
    db.execute(delete(ScheduleConfig).where(ScheduleConfig.tenant_id == tenant_id))
    db.execute(delete(User).where(User.tenant_id == tenant_id))
    db.execute(delete(Department).where(Department.tenant_id == tenant_id))


def seed_dummy_data(
    db,
    tenant_id: str,
    n_users: int = 40,
    reset: bool = False,
    seed: int = 42,
    email_domain: str = "example.com",
) -> dict[str, Any]:
    """Populate a tenant with departments and a mixed user directory.

    Most users are opted in; a minority are inactive, opted out, paused or
    freshly opted in so every participation status shows up in admin views.
    """
    rng = random.Random(seed)
    now = datetime.now(timezone.utc)

    if reset:
        _reset_tenant(db, tenant_id)
        db.flush()

    existing = {
        d.name: d for d in db.execute(select(Department).where(Department.tenant_id == tenant_id)).scalars().all()
    }
    departments: list[Department] = []
    for name, enabled in DEPARTMENTS:
        dept = existing.get(name)
        if dept is None:
            dept = Department(tenant_id=tenant_id, name=name, is_enabled=enabled, created_at=now)
            db.add(dept)
        departments.append(dept)
    db.flush()

    taken = set(db.execute(select(User.email).where(User.tenant_id == tenant_id)).scalars().all())
    shapes: Counter = Counter()
    seniority: Counter = Counter()
    created = 0
    idx = 0
    while created < n_users:
        idx += 1
        first, last = rng.choice(FIRST_NAMES), rng.choice(LAST_NAMES)
        email = f"{first}.{last}.{idx}@{email_domain}".lower()
        if email in taken:
            continue
        level = _weighted_choice(rng, SENIORITY_WEIGHTS)
        user = User(
            tenant_id=tenant_id,
            email=email,
            display_name=f"{first} {last}",
            department_id=rng.choice(departments).id,
            seniority_level=level,
            is_active=True,
            is_opted_in=True,
            opted_in_at=now - timedelta(days=rng.randint(7, 365)),
            created_at=now,
        )
        roll = rng.random()
        if roll < 0.05:
            user.is_active = False
            shapes["inactive"] += 1
        elif roll < 0.15:
            user.is_opted_in = False
            user.opted_in_at = None
            shapes["opted_out"] += 1
        elif roll < 0.20:
            user.available_from = now + timedelta(days=rng.randint(3, 30))
            shapes["paused"] += 1
        elif roll < 0.25:
            user.opted_in_at = now - timedelta(hours=rng.randint(1, 12))
            shapes["recently_opted_in"] += 1
        else:
            shapes["regular"] += 1
        db.add(user)
        taken.add(email)
        seniority[level] += 1
        created += 1
    db.flush()

    return {
        "tenant_id": tenant_id,
        "departments": len(departments),
        "users_created": created,
        "user_shapes": dict(shapes),
        "seniority_distribution": dict(seniority),
    }
