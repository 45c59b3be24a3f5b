"""
Run the periodic jobs without the API server.

    python -m backend_payrail.agent_worker          # loop until SIGINT/SIGTERM
    python -m backend_payrail.agent_worker --once   # every job once (cron)
"""

from __future__ import annotations

import argparse
import signal
import threading
from typing import Any

from backend_payrail.agent_worker.runner import build_jobs, run_all_once, start_jobs, stop_jobs
from backend_payrail.chain.registry import build_registry
from backend_payrail.config import get_settings
from backend_payrail.database.store import get_store
from backend_payrail.payrail_logging import get_logger

logger = get_logger("backend_payrail.agent_worker")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Payrail settlement and payout jobs")
    parser.add_argument("--once", action="store_true", help="run every job a single time and exit")
    args = parser.parse_args(argv)

    settings = get_settings()
    store = get_store()
    registry = build_registry(settings)
    jobs = build_jobs(store, registry, settings)
    try:
        if args.once:
            run_all_once(jobs)
            return

        stop_event = threading.Event()

        def _handle_sig(signum: int, frame: Any) -> None:
            logger.info("worker_shutdown_signal", signal=signal.Signals(signum).name)
            stop_event.set()

        signal.signal(signal.SIGINT, _handle_sig)
        signal.signal(signal.SIGTERM, _handle_sig)
        threads = start_jobs(jobs, stop_event)
        stop_event.wait()
        stop_jobs(threads, stop_event)
    finally:
        registry.close()


if __name__ == "__main__":
    main()
