from __future__ import annotations

import argparse
import json
import sys
from typing import Sequence

from surveymark.application.api import enqueue_marking_batch, mark_batch
from surveymark.infrastructure.db import initialise_database, make_engine_and_session
from surveymark.infrastructure.notifications import LoggingNotifier


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Mark submitted response sessions.")
    parser.add_argument("session_ids", nargs="+", type=int, help="Response session ids to mark")
    parser.add_argument("--scheme-id", type=int, default=None, help="Marking scheme to grade with")
    parser.add_argument(
        "--enqueue",
        action="store_true",
        help="Queue the batch for an rq worker instead of marking in this process",
    )
    parser.add_argument("--workers", type=int, default=None, help="Concurrent marking workers")
    parser.add_argument(
        "--db-url",
        default=None,
        help="SQLAlchemy URL (defaults to the DB_* environment configuration)",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)

    if args.enqueue:
        batch_id = enqueue_marking_batch(args.session_ids, args.scheme_id)
        print(f"[mark-sessions] Queued batch {batch_id}")
        return 0

    engine, SessionLocal = make_engine_and_session(args.db_url)
    try:
        initialise_database(engine)
        result = mark_batch(
            SessionLocal,
            args.session_ids,
            scheme_id=args.scheme_id,
            notifier=LoggingNotifier(),
            max_workers=args.workers,
        )
    finally:
        engine.dispose()

    print(json.dumps(result.to_record(), indent=2))
    return 1 if result.errors else 0


if __name__ == "__main__":
    sys.exit(main())
