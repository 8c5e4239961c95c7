from __future__ import annotations

import logging
import random
from collections import Counter
from typing import Any, Callable

from sqlalchemy import select

from ..models import MatchingRound, Pairing
from .external import MatchRequest, MatchResult, ProposedPairing, UserSummary

logger = logging.getLogger(__name__)

BASE_SCORE = 100.0


def canonical_pair(user_a: str, user_b: str) -> tuple[str, str]:
    return tuple(sorted((user_a, user_b)))


def fetch_recent_pairs(db, tenant_id: str, lookback_rounds: int) -> list[tuple[str, str]]:
    if lookback_rounds <= 0:
        return []
    round_ids = db.execute(
        select(MatchingRound.id)
        .where(MatchingRound.tenant_id == tenant_id)
        .order_by(MatchingRound.created_at.desc())
        .limit(lookback_rounds)
    ).scalars().all()
    if not round_ids:
        return []
    rows = db.execute(select(Pairing.user1_id, Pairing.user2_id).where(Pairing.round_id.in_(round_ids))).all()
    return [canonical_pair(str(r.user1_id), str(r.user2_id)) for r in rows]


def score_pair(u: UserSummary, v: UserSummary, recent_counts: Counter, cfg: dict[str, Any]) -> float:
    score = BASE_SCORE
    score -= recent_counts.get(canonical_pair(u.id, v.id), 0) * float(cfg.get("REPEAT_PENALTY", 50))
    if u.department_id != v.department_id:
        score += float(cfg.get("CROSS_DEPARTMENT_WEIGHT", 20))
    if u.seniority_level != v.seniority_level:
        score += float(cfg.get("CROSS_SENIORITY_WEIGHT", 10))
    return score


def greedy_pairing(
    candidates: list[UserSummary],
    recent_pairs: list[tuple[str, str]],
    cfg: dict[str, Any],
    rng: random.Random,
) -> MatchResult:
    recent_counts = Counter(recent_pairs)
    shuffled = list(candidates)
    rng.shuffle(shuffled)

    used: set[str] = set()
    pairings: list[ProposedPairing] = []
    for i, u in enumerate(shuffled):
        if u.id in used:
            continue
        best: UserSummary | None = None
        best_score = float("-inf")
        for v in shuffled[i + 1 :]:
            if v.id in used:
                continue
            s = score_pair(u, v, recent_counts, cfg)
            if s > best_score:
                best, best_score = v, s
        if best is None:
            continue
        used.add(u.id)
        used.add(best.id)
        pairings.append(ProposedPairing(user1=u, user2=best, score=round(best_score, 6)))

    leftovers = [c for c in candidates if c.id not in used]
    return MatchResult(pairings=pairings, unpaired=leftovers[0] if leftovers else None)


class GreedyMatchingEngine:
    """Default engine: shuffle, then give each user their best-scoring free partner.

    Scores favour cross-department and cross-seniority pairs and penalise pairs
    that met within the last ``lookback_rounds`` rounds.
    """

    def __init__(
        self,
        recent_pairs_loader: Callable[[], list[tuple[str, str]]] | None = None,
        cfg: dict[str, Any] | None = None,
        seed: int | None = None,
    ) -> None:
        self._recent_pairs_loader = recent_pairs_loader
        self._cfg = cfg or {}
        self._seed = seed

    def match(self, request: MatchRequest) -> MatchResult:
        recent: list[tuple[str, str]] = []
        if request.exclude_recent_history:
            logger.info("ignoring recent pairing history for this round")
        elif self._recent_pairs_loader is not None:
            recent = self._recent_pairs_loader()
        result = greedy_pairing(request.candidates, recent, self._cfg, random.Random(self._seed))
        logger.info(
            "greedy engine paired %s of %s candidates (recent_pairs=%s)",
            len(result.pairings) * 2,
            len(request.candidates),
            len(recent),
        )
        return result
