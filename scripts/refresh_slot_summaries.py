import argparse
import json
import sys
import time
from datetime import date
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from clinicbook.config import settings  # noqa: E402
from clinicbook.core.cache import SummaryCache  # noqa: E402
from clinicbook.core.logging_config import setup_logging  # noqa: E402
from clinicbook.db import Base, SessionLocal, engine  # noqa: E402
from clinicbook.refresh import run_sweep  # noqa: E402


def process_once(cache: SummaryCache, today: date | None = None) -> dict:
    return run_sweep(SessionLocal, cache, today).as_dict()


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Recompute daily availability summaries for the booking horizon"
    )
    parser.add_argument("--interval-seconds", type=float, default=float(settings.SUMMARY_REFRESH_INTERVAL_SECONDS))
    parser.add_argument(
        "--today",
        type=date.fromisoformat,
        default=None,
        help="Sweep as of 00:00 on this date instead of the clinic clock",
    )
    parser.add_argument("--once", action="store_true")
    args = parser.parse_args()

    setup_logging()
    if str(engine.url).startswith("sqlite") or bool(settings.DB_AUTO_CREATE_ALL):
        Base.metadata.create_all(bind=engine)

    cache = SummaryCache(
        SessionLocal,
        directory=settings.SUMMARY_CACHE_DIR,
        ttl_seconds=settings.SUMMARY_CACHE_TTL_SECONDS,
    )
    cache.start()
    try:
        while True:
            result = process_once(cache, args.today)
            print(json.dumps(result, ensure_ascii=True))
            if args.once:
                return 1 if result["failures"] else 0
            time.sleep(max(1.0, float(args.interval_seconds)))
    finally:
        cache.stop()


if __name__ == "__main__":
    raise SystemExit(main())
