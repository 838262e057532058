from __future__ import annotations

import asyncio
import sys

from stsaccess.core.logging import configure_logging
from stsaccess.services.provisioning.health import run_credential_health_check


async def _main() -> int:
    # One-off check outside the cron schedule; shares the run lock with the worker.
    configure_logging()
    result = await run_credential_health_check()
    print(f"status: {result.status}")
    if result.state:
        print(f"state: {result.state} mode: {result.mode}")
    if result.consecutive_failures is not None:
        print(f"consecutive_failures: {result.consecutive_failures}")
    if result.credential_age_hours is not None:
        print(f"credential_age_hours: {result.credential_age_hours} ({result.age_level})")
    if result.error:
        print(f"error: {result.error}")
    return 0 if result.status in {"ok", "skipped_lock"} else 2


def main() -> int:
    try:
        return asyncio.run(_main())
    except Exception as exc:  # noqa: BLE001 - surface check failures clearly in CLI output.
        print(f"run_health_check failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
