from __future__ import annotations

from arq import run_worker

from stsaccess.core.logging import configure_logging
from stsaccess.workers.provisioning_worker import WorkerSettings


def main() -> None:
    # Same entry point as `arq stsaccess.workers.provisioning_worker.WorkerSettings`.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
