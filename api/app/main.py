import logging
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from . import models  # noqa: F401  registers tables on Base.metadata
from .config import LOG_LEVEL
from .database import Base, SessionLocal, engine
from .logging_config import setup_logging
from .routes import include_modular_routers
from .services.eligibility import eligibility_policy_from_config
from .services.errors import (
    ExternalDependencyError,
    InvalidStateError,
    NotFoundError,
    RouletteError,
    StateConflictError,
    ValidationError,
)

setup_logging(LOG_LEVEL)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    InvalidStateError: 409,
    StateConflictError: 409,
    ExternalDependencyError: 502,
}

app = FastAPI(title="Coffee Roulette Rounds API")
include_modular_routers(app)


def status_for_error(exc: RouletteError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status
    return 500


@app.exception_handler(RouletteError)
async def roulette_error_handler(request: Request, exc: RouletteError) -> JSONResponse:
    status = status_for_error(exc)
    trace_id = str(uuid.uuid4())
    log = logger.warning if status >= 500 else logger.info
    log("%s %s -> %s %s trace_id=%s: %s", request.method, request.url.path, status, exc.code, trace_id, exc.message)
    return JSONResponse(
        status_code=status,
        content={"detail": {"success": False, **exc.to_dict(), "trace_id": trace_id}},
    )


def wait_for_db(max_attempts: int = 20, delay_seconds: float = 1.5) -> None:
    last_err: Exception | None = None
    for _ in range(max_attempts):
        try:
            with SessionLocal() as db:
                db.execute(text("SELECT 1"))
                db.commit()
            return
        except OperationalError as exc:
            last_err = exc
            time.sleep(delay_seconds)
    if last_err:
        raise last_err


def check_required_settings() -> None:
    policy = eligibility_policy_from_config()
    logger.info(
        "eligibility grace_period=%s grace_period_users_eligible=%s",
        policy.grace_period,
        policy.grace_period_users_eligible,
    )


@app.on_event("startup")
def on_startup() -> None:
    check_required_settings()
    wait_for_db()
    Base.metadata.create_all(bind=engine)
    logger.info("schema ready")


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
