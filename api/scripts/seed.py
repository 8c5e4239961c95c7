import argparse
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from app import models  # noqa: F401
from app.config import TENANT_ID
from app.database import Base, SessionLocal, engine
from app.services.seeding import seed_dummy_data


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed dummy coffee roulette departments and users")
    parser.add_argument("--n-users", type=int, default=40)
    parser.add_argument("--tenant-id", type=str, default=TENANT_ID)
    parser.add_argument("--email-domain", type=str, default="example.com")
    parser.add_argument("--reset", action="store_true")
    parser.add_argument("--seed", type=int, default=42)
    args = parser.parse_args()

    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        summary = seed_dummy_data(
            db=db,
            tenant_id=args.tenant_id.strip() or TENANT_ID,
            n_users=args.n_users,
            reset=args.reset,
            seed=args.seed,
            email_domain=args.email_domain.strip().lower(),
        )
        db.commit()

    print("Seed completed")
    for k, v in summary.items():
        print(f"- {k}: {v}")


if __name__ == "__main__":
    main()
