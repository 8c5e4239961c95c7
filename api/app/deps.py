import uuid

from fastapi import Header, HTTPException

from . import config
from .database import SessionLocal
from .services.eligibility import eligibility_policy_from_config
from .services.matching import GreedyMatchingEngine, fetch_recent_pairs
from .services.notifications import QueueDispatcher
from .services.rounds import RoundCoordinator
from .services.schedule import ScheduleCalculator

_coordinator: RoundCoordinator | None = None


def validate_admin_token(token: str | None, admin_token: str | None) -> None:
    if not admin_token or not token or token != admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def parse_actor_user_id(raw_actor_user_id: str | None) -> str | None:
    if not raw_actor_user_id:
        return None
    value = raw_actor_user_id.strip()
    if not value:
        return None
    try:
        return str(uuid.UUID(value))
    except ValueError:
        raise HTTPException(status_code=400, detail="X-Actor-User-Id must be a valid UUID")


def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
    validate_admin_token(x_admin_token, config.ADMIN_TOKEN)


def require_actor(x_actor_user_id: str | None = Header(default=None)) -> str:
    actor = parse_actor_user_id(x_actor_user_id)
    if actor is None:
        raise HTTPException(status_code=401, detail="X-Actor-User-Id header required")
    return actor


def build_coordinator(session_factory=SessionLocal) -> RoundCoordinator:
    def _recent_pairs() -> list[tuple[str, str]]:
        with session_factory() as db:
            return fetch_recent_pairs(db, config.TENANT_ID, config.LOOKBACK_ROUNDS)

    return RoundCoordinator(
        session_factory=session_factory,
        engine=GreedyMatchingEngine(recent_pairs_loader=_recent_pairs, cfg=config.DEFAULT_MATCHING_CONFIG),
        dispatcher=QueueDispatcher(session_factory),
        policy=eligibility_policy_from_config(),
        calculator=ScheduleCalculator(config.SCHEDULE_TIMEZONE),
        tenant_id=config.TENANT_ID,
        engine_timeout_seconds=config.MATCHING_ENGINE_TIMEOUT_SECONDS,
        dispatcher_timeout_seconds=config.DISPATCHER_TIMEOUT_SECONDS,
        default_schedule_type=config.DEFAULT_SCHEDULE_TYPE,
    )


def get_coordinator() -> RoundCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = build_coordinator()
    return _coordinator
