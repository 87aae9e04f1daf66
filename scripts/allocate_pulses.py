from __future__ import annotations

import argparse
import asyncio
import sys

from pulsemeter.core.logging import configure_logging
from pulsemeter.persistence.db import dispose_engine, get_sessionmaker
from pulsemeter.services.pulse.ledger import PulseService


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit; every run adds credits, so reruns double-allocate.
    parser = argparse.ArgumentParser(description="Allocate Pulses to a tenant ledger")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--amount", required=True, type=int, help="Pulses to add (positive)")
    parser.add_argument("--tier", default=None, help="Optional tier: basic|standard|premium")
    parser.add_argument("--actor", default="allocate_pulses", help="Operator id for the audit trail")
    return parser


async def _allocate(args: argparse.Namespace) -> int:
    service = PulseService(get_sessionmaker())
    try:
        summary = await service.allocate_credits(args.tenant, args.amount, args.tier, actor_id=args.actor)
    finally:
        await dispose_engine()
    print(
        f"tenant={summary.tenant_id} allocated={summary.allocated} used={summary.used} "
        f"limit={summary.limit} tier={summary.tier}"
    )
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_allocate(args))
    except Exception as exc:  # noqa: BLE001 - surface allocation failures clearly
        print(f"allocate_pulses failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
