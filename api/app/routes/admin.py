from typing import Any

from fastapi import APIRouter, Depends, Header, Query
from fastapi.encoders import jsonable_encoder

from ..deps import get_coordinator, require_admin
from ..schemas import MeetingScheduleRequest, PreviewRequest, RunRequest, ScheduleToggleRequest, ScheduleUpdateRequest
from ..services.rounds import RoundCoordinator

router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


def _json(data: Any) -> Any:
    return jsonable_encoder(data)


@router.get("/participants")
def admin_participants(coordinator: RoundCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
    return _json(coordinator.list_participants())


@router.post("/matching/preview")
def admin_matching_preview(
    payload: PreviewRequest | None = None,
    coordinator: RoundCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    payload = payload or PreviewRequest()
    return _json(
        coordinator.preview(
            filters=payload.filters.model_dump(exclude_none=True),
            options=payload.options.model_dump(),
        )
    )


@router.post("/matching/run")
def admin_matching_run(
    payload: RunRequest | None = None,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    coordinator: RoundCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    payload = payload or RunRequest()
    return _json(
        coordinator.run(
            idempotency_key or payload.idempotency_key or "",
            name=payload.name,
            filters=payload.filters.model_dump(exclude_none=True),
            options=payload.options.model_dump(),
        )
    )


@router.get("/matching/rounds")
def admin_list_rounds(
    limit: int = Query(default=20),
    offset: int = Query(default=0),
    coordinator: RoundCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return _json(coordinator.list_rounds(limit=limit, offset=offset))


@router.get("/matching/rounds/{round_id}")
def admin_get_round(round_id: str, coordinator: RoundCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
    return _json(coordinator.get_round(round_id))


@router.post("/matching/rounds/{round_id}/reminders")
def admin_send_reminders(round_id: str, coordinator: RoundCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
    return _json(coordinator.send_reminders(round_id))


@router.post("/pairings/{pairing_id}/cancel")
def admin_cancel_pairing(pairing_id: str, coordinator: RoundCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
    return _json(coordinator.cancel_pairing(pairing_id))


@router.post("/pairings/{pairing_id}/schedule")
def admin_schedule_meeting(
    pairing_id: str,
    payload: MeetingScheduleRequest,
    coordinator: RoundCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return _json(coordinator.schedule_meeting(pairing_id, payload.meeting_scheduled_at))


@router.get("/schedule")
def admin_get_schedule(coordinator: RoundCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
    return _json(coordinator.schedule_status())


@router.put("/schedule")
def admin_update_schedule(
    payload: ScheduleUpdateRequest,
    coordinator: RoundCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return _json(
        coordinator.update_schedule(
            schedule_type=payload.schedule_type,
            next_run_date=payload.next_run_date,
            expected_version=payload.expected_version,
        )
    )


@router.post("/schedule/toggle")
def admin_toggle_schedule(
    payload: ScheduleToggleRequest,
    coordinator: RoundCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return _json(coordinator.set_schedule_enabled(payload.enabled, expected_version=payload.expected_version))
