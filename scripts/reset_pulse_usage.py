from __future__ import annotations

import argparse
import asyncio

from pulsemeter.core.logging import configure_logging
from pulsemeter.persistence.db import dispose_engine, get_sessionmaker
from pulsemeter.services.pulse.reset import reset_due_ledgers, reset_usage


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reset Pulse usage for scheduled ledgers")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--period", help="Reset every ledger with this period: daily|weekly|monthly")
    group.add_argument("--due", action="store_true", help="Reset only ledgers whose period has rolled over")
    return parser


async def _reset(args: argparse.Namespace) -> int:
    session_factory = get_sessionmaker()
    try:
        if args.due:
            summary = await reset_due_ledgers(session_factory)
        else:
            summary = await reset_usage(session_factory, args.period)
    finally:
        await dispose_engine()
    print(
        f"period={summary.period or 'due'} reset={summary.reset_count} "
        f"skipped={len(summary.skipped_tenant_ids)} failed={len(summary.failed_tenant_ids)}"
    )
    # Non-zero exit lets cron wrappers alert on partial batches.
    return 1 if summary.failed_tenant_ids else 0


if __name__ == "__main__":
    configure_logging()
    raise SystemExit(asyncio.run(_reset(_build_parser().parse_args())))
