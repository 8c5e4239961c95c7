import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from app import models  # noqa: F401
from app.config import LOG_LEVEL
from app.database import Base, engine
from app.deps import build_coordinator
from app.logging_config import setup_logging
from app.services.errors import RouletteError


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the coffee roulette round if the schedule says it is due")
    parser.add_argument("--dry-run", action="store_true", help="only report whether a run is due")
    parser.add_argument("--now", type=str, default="", help="ISO timestamp to evaluate the schedule at")
    args = parser.parse_args()

    setup_logging(LOG_LEVEL)
    Base.metadata.create_all(bind=engine)
    now = datetime.fromisoformat(args.now) if args.now else datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    coordinator = build_coordinator()
    if args.dry_run:
        status = coordinator.schedule_status(now=now)
        print("Schedule status")
        for k in ("enabled", "schedule_type", "next_run_date", "last_run_date", "is_due"):
            print(f"- {k}: {status[k]}")
        return 0

    try:
        result = coordinator.run_if_due(now=now)
    except RouletteError as exc:
        print(f"Scheduled matching failed: {exc.code}: {exc.message}")
        return 1

    if result is None:
        print("Not due; nothing to do")
        return 0
    print("Scheduled matching completed")
    for k in ("id", "name", "total_participants", "total_pairings", "unpaired_user_id", "notifications_queued", "replayed"):
        print(f"- {k}: {result[k]}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
