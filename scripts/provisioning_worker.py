from __future__ import annotations

from arq import run_worker

from tenantinfra.core.logging import configure_logging
from tenantinfra.workers.provisioning_worker import WorkerSettings


def _main() -> None:
    # Run the step worker in the foreground; arq owns the event loop.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    _main()
