from .errors import InvalidStateError

PAIRING_STATUSES = ("pending", "confirmed", "completed", "cancelled")
OPEN_STATUSES = frozenset({"pending", "confirmed"})
TERMINAL_STATUSES = frozenset({"completed", "cancelled"})


def transition_pairing(current: str, action: str) -> str:
    if current not in PAIRING_STATUSES:
        raise InvalidStateError(f"Unknown pairing status: {current}")

    if current in TERMINAL_STATUSES:
        raise InvalidStateError(f"Cannot {action} a pairing that is already {current}")

    if action == "schedule":
        return "confirmed"

    if action == "complete":
        return "completed"

    if action == "cancel":
        return "cancelled"

    raise InvalidStateError(f"Unknown pairing action: {action}")
