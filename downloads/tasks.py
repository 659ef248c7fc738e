"""
Background tasks.

All tasks run on the in-process huey consumer, so they share the job
registry with the request handlers.
"""

import logging

from huey import crontab
from huey.consumer import Consumer
from huey.contrib.djhuey import periodic_task, task

from downloads.service import config

logger = logging.getLogger(__name__)


class InProcessConsumer(Consumer):
    """Consumer started from the web process; signals stay with the server."""

    def _set_signal_handlers(self):
        pass


def _registry():
    from downloads.apps import get_job_registry

    return get_job_registry()


@task()
def run_fetch_job(job_id):
    """
    Run one download job to completion or failure.

    Steps:
    1. RUNNING - spawn the extractor and stream its progress into the registry
    2. COMPLETE - output validated, archived when an archive store is set
    3. FAILED - extractor error, bot protection or missing/empty output
    """
    return _registry().run_job(job_id)


@task()
def purge_job(job_id):
    """Deferred purge scheduled when a job's file is retrieved."""
    return _registry().purge_job(job_id)


@periodic_task(crontab(minute=f'*/{config.get_sweep_interval_minutes()}'))
def sweep_downloads():
    """Periodic sweep of expired jobs and stale working files."""
    report = _registry().sweep()
    for key, error in report.errors:
        logger.warning('Sweep error on %s: %s', key or '<working dir>', error)


def dispatch_fetch(job_id):
    """Enqueue a fetch job without waiting for it"""
    run_fetch_job(job_id)


def schedule_purge(job_id, delay):
    """Enqueue a purge to run after delay seconds"""
    purge_job.schedule(args=(job_id,), delay=delay)
