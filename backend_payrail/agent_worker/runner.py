"""
Periodic job runner — one daemon thread per job, DB-driven ticks.

Jobs: settlement monitor, settlement finalizer, webhook dispatcher,
payout reconciler, intent expiry and payout expiry. Each tick is
idempotent, so several processes may run the same jobs; coordination
happens through conditional updates in the ledger store. A failing tick
is logged and the loop keeps going.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from backend_payrail.chain.registry import ChainRegistry
from backend_payrail.config import Settings
from backend_payrail.database.store import LedgerStore
from backend_payrail.payouts.finalizer import run_payout_reconciler_tick
from backend_payrail.payouts.orchestrator import run_payout_expiry_tick
from backend_payrail.payrail_logging import get_logger
from backend_payrail.settlement.finalizer import run_finalizer_tick
from backend_payrail.settlement.intents import run_intent_expiry_tick
from backend_payrail.settlement.monitor import run_monitor_tick
from backend_payrail.webhooks.dispatcher import WebhookDispatcher

logger = get_logger(__name__)

SHUTDOWN_JOIN_TIMEOUT_SEC = 15.0


@dataclass
class PeriodicJob:
    name: str
    interval_sec: float
    tick: Callable[[], Any]


def run_periodic_job(job: PeriodicJob, stop_event: threading.Event) -> None:
    """Run job.tick every interval until stop_event is set. Never raises."""
    logger.info("periodic_job_started", job=job.name, interval_sec=job.interval_sec)
    while not stop_event.is_set():
        started = time.monotonic()
        try:
            job.tick()
        except Exception as e:
            logger.exception("periodic_job_tick_error", job=job.name, error=str(e))
        elapsed = time.monotonic() - started
        stop_event.wait(timeout=max(0.0, job.interval_sec - elapsed))
    logger.info("periodic_job_stopped", job=job.name)


def build_jobs(
    store: LedgerStore,
    registry: ChainRegistry,
    settings: Settings,
    dispatcher: WebhookDispatcher | None = None,
) -> list[PeriodicJob]:
    dispatcher = dispatcher or WebhookDispatcher(
        store,
        timeout_sec=settings.webhook_timeout_sec,
        batch_size=settings.webhook_batch_size,
    )
    return [
        PeriodicJob(
            "settlement_monitor",
            settings.monitor_interval_sec,
            lambda: run_monitor_tick(store, registry, transfers_limit=settings.recent_transfers_limit),
        ),
        PeriodicJob(
            "settlement_finalizer",
            settings.finalizer_interval_sec,
            lambda: run_finalizer_tick(store, registry, finality_threshold=settings.finality_threshold),
        ),
        PeriodicJob("webhook_dispatcher", settings.dispatcher_interval_sec, dispatcher.run_tick),
        PeriodicJob(
            "payout_reconciler",
            settings.payout_reconciler_interval_sec,
            lambda: run_payout_reconciler_tick(store, registry),
        ),
        PeriodicJob("intent_expiry", settings.expiry_interval_sec, lambda: run_intent_expiry_tick(store)),
        PeriodicJob("payout_expiry", settings.expiry_interval_sec, lambda: run_payout_expiry_tick(store)),
    ]


def start_jobs(jobs: list[PeriodicJob], stop_event: threading.Event) -> list[threading.Thread]:
    threads = []
    for job in jobs:
        thread = threading.Thread(
            target=run_periodic_job,
            args=(job, stop_event),
            name=f"payrail-{job.name}",
            daemon=True,
        )
        thread.start()
        threads.append(thread)
    logger.info("periodic_jobs_started", jobs=[j.name for j in jobs])
    return threads


def stop_jobs(threads: list[threading.Thread], stop_event: threading.Event) -> None:
    stop_event.set()
    for thread in threads:
        thread.join(timeout=SHUTDOWN_JOIN_TIMEOUT_SEC)
        if thread.is_alive():
            logger.warning("periodic_job_join_timeout", thread=thread.name)


def run_all_once(jobs: list[PeriodicJob]) -> dict[str, Any]:
    """Cron mode: run every job a single time, in order, and return the tick results."""
    results: dict[str, Any] = {}
    for job in jobs:
        try:
            results[job.name] = job.tick()
        except Exception as e:
            logger.exception("periodic_job_tick_error", job=job.name, error=str(e))
            results[job.name] = e
    return results
