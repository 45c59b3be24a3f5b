"""
Agent worker package — 24/7 background orchestration.

Runs the settlement, payout and webhook jobs on fixed intervals in daemon
threads, or once each in cron mode.
"""

from backend_payrail.agent_worker.runner import PeriodicJob, build_jobs, run_all_once, start_jobs, stop_jobs

__all__ = ["PeriodicJob", "build_jobs", "run_all_once", "start_jobs", "stop_jobs"]
