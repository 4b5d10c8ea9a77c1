#!/usr/bin/env python3
"""
List or replay dead-lettered sync jobs.

Replaying creates a fresh pending job from the entry's snapshot; the entry itself
is never modified. By default this only lists entries; pass --replay to act.

Usage (from repo root):
  python backend/scripts/replay_dead_letters.py --mailbox-id 3
  python backend/scripts/replay_dead_letters.py --ids 12 15 --replay

Usage (from backend/):
  ./.venv/bin/python scripts/replay_dead_letters.py --category rate_limit --replay --trigger
"""

from __future__ import annotations

import argparse
import os
import sys

# Ensure mailsync is importable when run as script from backend or project root
_script_dir = os.path.dirname(os.path.abspath(__file__))
_backend = os.path.dirname(_script_dir)
if _backend not in sys.path:
    sys.path.insert(0, _backend)


def main() -> int:
    parser = argparse.ArgumentParser(description="List or replay dead-lettered sync jobs.")
    parser.add_argument("--ids", type=int, nargs="*", default=None, help="Specific dead letter entry ids.")
    parser.add_argument("--mailbox-id", type=int, default=None, help="Only entries for this mailbox.")
    parser.add_argument("--category", default=None, help="Only entries with this error category.")
    parser.add_argument("--limit", type=int, default=50)
    parser.add_argument("--replay", action="store_true", help="Actually re-enqueue the selected entries.")
    parser.add_argument("--priority", type=int, default=None, help="Priority for replayed jobs.")
    parser.add_argument(
        "--trigger",
        action="store_true",
        help="Queue a worker invocation after replaying (requires the Celery broker).",
    )
    args = parser.parse_args()

    try:
        from mailsync.database import SessionLocal
        from mailsync.dead_letter import get_dead_letter, list_dead_letters, replay_dead_letter
    except ModuleNotFoundError as e:
        print(
            "ERROR: Missing a required dependency to connect to your database.\n"
            f"Missing module: {e}\n\n"
            "Fix: run this using your backend virtualenv, or `pip install -e .` from the repo root.\n",
            file=sys.stderr,
        )
        return 1

    db = SessionLocal()
    try:
        if args.ids:
            entries = [e for e in (get_dead_letter(db, i) for i in args.ids) if e is not None]
        else:
            entries = list_dead_letters(db, mailbox_id=args.mailbox_id, limit=args.limit)
        if args.category:
            entries = [e for e in entries if e.error_category == args.category]

        if not entries:
            print("No matching dead letter entries.")
            return 0

        replayed = 0
        for entry in entries:
            print(
                f"#{entry.id} job={entry.original_job_id} kind={entry.job_kind} mailbox={entry.mailbox_id} "
                f"attempts={entry.attempt_count} [{entry.error_category}] {entry.failure_reason[:120]}"
            )
            if args.replay:
                job = replay_dead_letter(db, entry.id, priority=args.priority)
                if job is not None:
                    replayed += 1
                    print(f"    -> replayed as job {job.id}")

        if args.replay:
            print(f"Replayed {replayed} of {len(entries)} entries.")
            if replayed and args.trigger:
                from mailsync.tasks import trigger_next_invocation
                trigger_next_invocation(fanout=replayed)
        else:
            print(f"{len(entries)} entries (dry run; pass --replay to re-enqueue).")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
