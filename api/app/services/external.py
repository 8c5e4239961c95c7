"""Contracts for the collaborators the rounds engine calls but does not own."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, TypeVar

from .errors import ExternalDependencyError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class UserSummary:
    id: str
    email: str | None = None
    display_name: str | None = None
    department_id: str | None = None
    seniority_level: str | None = None

    @classmethod
    def from_user(cls, user: dict[str, Any]) -> "UserSummary":
        return cls(
            id=str(user["id"]),
            email=user.get("email"),
            display_name=user.get("display_name"),
            department_id=str(user["department_id"]) if user.get("department_id") else None,
            seniority_level=user.get("seniority_level"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "department_id": self.department_id,
            "seniority_level": self.seniority_level,
        }


@dataclass(frozen=True)
class MatchRequest:
    candidates: list[UserSummary]
    exclude_recent_history: bool = False
    filters: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProposedPairing:
    user1: UserSummary
    user2: UserSummary
    score: float


@dataclass(frozen=True)
class MatchResult:
    pairings: list[ProposedPairing]
    unpaired: UserSummary | None = None


class MatchingEngine(Protocol):
    def match(self, request: MatchRequest) -> MatchResult:
        ...


class Dispatcher(Protocol):
    def enqueue(self, kind: str, pairing_id: str) -> bool:
        ...


def call_with_timeout(what: str, fn: Callable[[], T], timeout_seconds: float) -> T:
    """Run ``fn`` on its own worker thread and give up after ``timeout_seconds``.

    Each call gets a fresh single-worker pool so a hung collaborator only
    ever holds its own thread. The call is not retried. A timed-out call may
    still finish in the background; its result is discarded.
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="external-call")
    future = pool.submit(fn)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError:
        future.cancel()
        logger.warning("%s timed out after %.1fs", what, timeout_seconds)
        raise ExternalDependencyError(f"{what} timed out after {timeout_seconds:g}s")
    except ExternalDependencyError:
        raise
    except Exception as exc:
        logger.warning("%s failed: %s", what, exc)
        raise ExternalDependencyError(f"{what} failed: {exc}") from exc
    finally:
        pool.shutdown(wait=False)
