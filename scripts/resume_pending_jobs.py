from __future__ import annotations

import argparse
import asyncio
import sys

from stsaccess.core.logging import configure_logging
from stsaccess.services.provisioning.admin import resume_pending_jobs


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Re-enqueue every PENDING strategy access")
    parser.add_argument("--actor", default="cli", help="Operator id recorded in the audit log")
    return parser


async def _resume(args: argparse.Namespace) -> int:
    configure_logging()
    resumed = await resume_pending_jobs(actor_id=args.actor)
    print(f"resumed_jobs: {resumed}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_resume(args))
    except Exception as exc:  # noqa: BLE001 - surface resume failures clearly in CLI output.
        print(f"resume_pending_jobs failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
