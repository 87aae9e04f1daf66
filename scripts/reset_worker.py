from __future__ import annotations

from arq import run_worker

from pulsemeter.core.logging import configure_logging
from pulsemeter.workers.reset_worker import WorkerSettings


if __name__ == "__main__":
    # Run cron resets in a dedicated process so API handlers never block on batch work.
    configure_logging()
    run_worker(WorkerSettings)
