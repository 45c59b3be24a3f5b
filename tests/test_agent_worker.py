"""
Pytest tests for the periodic job runner.
"""

from __future__ import annotations

import threading

from backend_payrail.agent_worker.runner import PeriodicJob, build_jobs, run_all_once, run_periodic_job
from backend_payrail.config import get_settings


def test_build_jobs_names(store, registry):
    jobs = build_jobs(store, registry, get_settings())
    assert [j.name for j in jobs] == [
        "settlement_monitor",
        "settlement_finalizer",
        "webhook_dispatcher",
        "payout_reconciler",
        "intent_expiry",
        "payout_expiry",
    ]
    assert all(j.interval_sec > 0 for j in jobs)


def test_run_all_once_on_empty_ledger(store, registry):
    """Cron mode runs every job; nothing to do means no errors."""
    results = run_all_once(build_jobs(store, registry, get_settings()))
    assert len(results) == 6
    assert not any(isinstance(r, Exception) for r in results.values())
    assert results["intent_expiry"] == 0


def test_failing_job_is_recorded_not_raised():
    def boom():
        raise RuntimeError("db down")

    results = run_all_once([PeriodicJob("broken", 1, boom), PeriodicJob("ok", 1, lambda: "done")])
    assert isinstance(results["broken"], RuntimeError)
    assert results["ok"] == "done"


def test_periodic_job_survives_tick_errors():
    """A raising tick is logged and the loop keeps ticking until stopped."""
    stop = threading.Event()
    calls = []

    def tick():
        calls.append(1)
        if len(calls) >= 3:
            stop.set()
        raise RuntimeError("transient")

    run_periodic_job(PeriodicJob("flaky", 0, tick), stop)
    assert len(calls) == 3
