#!/usr/bin/env python3
"""Run queued policy comparisons once.

Meant to be triggered by cron or a scheduler, e.g. every minute:

    python scripts/process_compare_tasks.py --batch-size 5
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys

from policydiff.config import settings
from policydiff.db import init_db
from policydiff.observability import configure_logging
from policydiff.tasks import process_pending_tasks
from policydiff.workflow import CozeWorkflowClient


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Process pending and due-for-retry policy comparison tasks.")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help=f"Maximum tasks to pick up in this run (default {settings.task_batch_size}).",
    )
    parser.add_argument(
        "--token",
        default=None,
        help="Coze API token to use instead of COZE_API_TOKEN.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.batch_size is not None:
        if args.batch_size < 1:
            print("--batch-size must be at least 1", file=sys.stderr)
            return 2
        settings.task_batch_size = args.batch_size

    configure_logging(settings.log_level)
    init_db()
    summary = asyncio.run(process_pending_tasks(CozeWorkflowClient(settings), token=args.token))
    print(json.dumps(summary, ensure_ascii=False, indent=2))
    return 0 if summary["failed"] == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
