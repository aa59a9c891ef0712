"""Handoff worker service.

PostgreSQL-backed background job runner for refund payments: submitting
transfers to the payment rail and polling pending ones with backoff.

Usage:
    handoff-worker
"""

from handoff.worker.main import Worker, WorkerConfig, run

__all__ = ["Worker", "WorkerConfig", "run"]
