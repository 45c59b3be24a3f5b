"""
Main entrypoint: periodic jobs in background threads + FastAPI server in main thread.

The jobs (settlement monitor/finalizer, webhook dispatcher, payout reconciler,
expiry sweeps) run in daemon threads; the API runs in the main thread. On
SIGINT/SIGTERM uvicorn shuts down, then the jobs are asked to stop.

Env: DATABASE_URL or PAYRAIL_DB_PATH, SOLANA_NETWORK, SOLANA_RPC_URL,
ETHEREUM_RPC_URL / BASE_RPC_URL / POLYGON_RPC_URL, API_HOST, API_PORT, etc.

API-only (no jobs): uvicorn backend_payrail.api_server.app:app --host 0.0.0.0 --port 8000
Jobs-only: python -m backend_payrail.agent_worker
"""

import os
import threading

from backend_payrail.payrail_logging import get_logger

logger = get_logger("main")


def main() -> None:
    """Start the periodic jobs, then run the FastAPI server in the main thread."""
    from backend_payrail.agent_worker.runner import build_jobs, start_jobs, stop_jobs
    from backend_payrail.chain.registry import build_registry
    from backend_payrail.config import get_settings
    from backend_payrail.database.store import get_store

    settings = get_settings()
    store = get_store()
    registry = build_registry(settings)
    logger.info(
        "main_config_loaded",
        solana_network=settings.solana_network,
        chains=registry.chains(),
    )

    stop_event = threading.Event()
    threads = start_jobs(build_jobs(store, registry, settings), stop_event)
    logger.info("main_jobs_started", thread_count=len(threads))

    from backend_payrail.api_server.server import create_app
    import uvicorn

    app = create_app(store=store, registry=registry, run_jobs=False)
    logger.info("main_server_starting", host=settings.api_host, port=settings.api_port)
    try:
        uvicorn.run(
            app,
            host=settings.api_host,
            port=settings.api_port,
            log_level=os.getenv("LOG_LEVEL", "info").lower(),
        )
    finally:
        stop_jobs(threads, stop_event)
        registry.close()


if __name__ == "__main__":
    main()
