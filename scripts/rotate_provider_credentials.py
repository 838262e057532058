from __future__ import annotations

import argparse
import asyncio
import getpass
import sys

from stsaccess.core.logging import configure_logging
from stsaccess.persistence.db import SessionLocal
from stsaccess.services.provisioning.admin import rotate_credentials


def _build_parser() -> argparse.ArgumentParser:
    # Secrets are prompted for so they never land in shell history.
    parser = argparse.ArgumentParser(description="Validate and activate new provisioning API credentials")
    parser.add_argument("--api-url", required=True, help="Provisioning API base URL")
    parser.add_argument("--actor", default="cli", help="Operator id recorded on the credential")
    parser.add_argument("--no-restore", action="store_true", help="Leave a DEGRADED state untouched")
    parser.add_argument("--no-resume", action="store_true", help="Do not re-enqueue PENDING access")
    return parser


async def _rotate(args: argparse.Namespace, session_id: str, signature: str) -> int:
    configure_logging()
    async with SessionLocal() as session:
        result = await rotate_credentials(
            session,
            api_url=args.api_url,
            session_id=session_id,
            signature=signature,
            created_by=args.actor,
            restore_state=not args.no_restore,
            resume_jobs=not args.no_resume,
        )
    print("Provisioning credentials rotated:")
    print(f"  credential_id: {result.credential.id}")
    print(f"  restored: {result.restored}")
    print(f"  resumed_jobs: {result.resumed_jobs}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    session_id = getpass.getpass("Session id: ")
    signature = getpass.getpass("Signature: ")
    try:
        return asyncio.run(_rotate(args, session_id, signature))
    except Exception as exc:  # noqa: BLE001 - surface rotation failures clearly in CLI output.
        print(f"rotate_provider_credentials failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
