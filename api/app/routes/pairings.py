from typing import Any

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder

from ..deps import get_coordinator, require_actor
from ..schemas import FeedbackRequest
from ..services.rounds import RoundCoordinator

router = APIRouter(prefix="/pairings")


@router.post("/{pairing_id}/confirm")
def confirm_meeting(
    pairing_id: str,
    actor_user_id: str = Depends(require_actor),
    coordinator: RoundCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return jsonable_encoder(coordinator.confirm_meeting(pairing_id, actor_user_id=actor_user_id))


@router.put("/{pairing_id}/feedback")
def submit_feedback(
    pairing_id: str,
    payload: FeedbackRequest,
    actor_user_id: str = Depends(require_actor),
    coordinator: RoundCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return jsonable_encoder(
        coordinator.submit_feedback(
            pairing_id,
            actor_user_id,
            payload.rating,
            comments=payload.comments,
            topics=payload.topics,
        )
    )


@router.get("/{pairing_id}/feedback")
def get_feedback(
    pairing_id: str,
    actor_user_id: str = Depends(require_actor),
    coordinator: RoundCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return jsonable_encoder(coordinator.get_feedback(pairing_id, actor_user_id))
