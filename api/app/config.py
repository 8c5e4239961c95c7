import json
import os
from typing import Any

ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")
TENANT_ID = os.getenv("TENANT_ID", "default").strip() or "default"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

SCHEDULE_TIMEZONE = os.getenv("SCHEDULE_TIMEZONE", "UTC")
DEFAULT_SCHEDULE_TYPE = os.getenv("DEFAULT_SCHEDULE_TYPE", "monthly").strip().lower()

# No default: the grace window length is an operator decision.
GRACE_PERIOD_HOURS = os.getenv("GRACE_PERIOD_HOURS")
GRACE_PERIOD_USERS_ELIGIBLE = os.getenv("GRACE_PERIOD_USERS_ELIGIBLE", "false").lower() == "true"

MATCHING_ENGINE_TIMEOUT_SECONDS = float(os.getenv("MATCHING_ENGINE_TIMEOUT_SECONDS", "30"))
DISPATCHER_TIMEOUT_SECONDS = float(os.getenv("DISPATCHER_TIMEOUT_SECONDS", "10"))
LOOKBACK_ROUNDS = int(os.getenv("LOOKBACK_ROUNDS", "3"))

DEFAULT_MATCHING_CONFIG: dict[str, Any] = {
    "REPEAT_PENALTY": float(os.getenv("REPEAT_PENALTY", "50")),
    "CROSS_DEPARTMENT_WEIGHT": float(os.getenv("CROSS_DEPARTMENT_WEIGHT", "20")),
    "CROSS_SENIORITY_WEIGHT": float(os.getenv("CROSS_SENIORITY_WEIGHT", "10")),
}

if os.getenv("MATCHING_CONFIG_JSON"):
    try:
        DEFAULT_MATCHING_CONFIG.update(json.loads(os.getenv("MATCHING_CONFIG_JSON", "{}")))
    except json.JSONDecodeError:
        pass
