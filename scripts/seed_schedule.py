import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from clinicbook.db import Base, SessionLocal, engine  # noqa: E402
from clinicbook.schedule import upsert_practitioner, upsert_weekly_template  # noqa: E402
from clinicbook.slots import parse_hhmm  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Create or update a practitioner and their weekly working hours"
    )
    parser.add_argument("--name", required=True)
    parser.add_argument("--department", default=None)
    parser.add_argument("--weekdays", default="0,1,2,3,4", help="Comma separated, Monday=0")
    parser.add_argument("--start", default="09:00")
    parser.add_argument("--end", default="18:00")
    parser.add_argument("--interval", type=int, default=None)
    parser.add_argument("--daily-max", type=int, default=None)
    args = parser.parse_args()

    Base.metadata.create_all(bind=engine)
    start_time = parse_hhmm(args.start)
    end_time = parse_hhmm(args.end)
    weekdays = [int(part) for part in args.weekdays.split(",") if part.strip()]

    with SessionLocal() as db:
        practitioner = upsert_practitioner(db, name=args.name, department=args.department)
        for weekday in weekdays:
            upsert_weekly_template(
                db,
                practitioner_id=practitioner.id,
                weekday=weekday,
                start_time=start_time,
                end_time=end_time,
                slot_interval_minutes=args.interval,
                daily_max=args.daily_max,
            )
        print(json.dumps({"practitioner_id": practitioner.id, "weekdays": weekdays}))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
