import logging
from datetime import datetime, timezone

from ..models import NotificationQueue

logger = logging.getLogger(__name__)

NOTIFICATION_KINDS = {"pairing", "reminder"}


class QueueDispatcher:
    """Writes one ``notification_queue`` row per request.

    Delivery, templating and duplicate suppression belong to whatever drains
    the queue.
    """

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    def enqueue(self, kind: str, pairing_id: str) -> bool:
        if kind not in NOTIFICATION_KINDS:
            logger.warning("rejecting unknown notification kind=%s pairing_id=%s", kind, pairing_id)
            return False
        with self._session_factory() as db:
            db.add(
                NotificationQueue(
                    kind=kind,
                    pairing_id=str(pairing_id),
                    status="queued",
                    created_at=datetime.now(timezone.utc),
                )
            )
            db.commit()
        return True
