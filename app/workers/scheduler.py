"""
Background scheduling for the fulfillment workers.

Each worker runs on its own interval timer. Ticks of the same worker never
overlap (``max_instances=1``) and a backlog of missed runs collapses into one
(``coalesce``); overlap *between* workers is expected and handled by the
per-record lock.
"""

from __future__ import annotations

import logging

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler

from app.config import settings
from app.workers.fallback_worker import run_fallback_tick
from app.workers.retry_worker import run_retry_tick
from app.workers.tracking_worker import run_tracking_tick

logger = logging.getLogger(__name__)

job_defaults = {
    'coalesce': True,
    'max_instances': 1,
    'misfire_grace_time': 60,
}


def build_scheduler_options() -> dict:
    return {
        'jobstores': {'default': MemoryJobStore()},
        'executors': {'default': ThreadPoolExecutor(3)},
        'job_defaults': job_defaults,
        'timezone': 'UTC',
    }


scheduler = BackgroundScheduler(**build_scheduler_options())


WORKER_TICKS = {
    'retry_primary_submissions': run_retry_tick,
    'advance_fallback_orders': run_fallback_tick,
    'reconcile_tracking': run_tracking_tick,
}


def run_job(job_name: str) -> None:
    """Entry point called by APScheduler; a failing tick is logged and the timer keeps going."""
    tick = WORKER_TICKS[job_name]
    try:
        tick()
    except Exception:
        logger.exception(f"Job '{job_name}' failed")


def register_jobs(target: BaseScheduler) -> None:
    target.add_job(
        run_job,
        'interval',
        minutes=settings.retry_interval_minutes,
        args=['retry_primary_submissions'],
        id='retry_primary_submissions',
        name='Retry / escalate primary submissions',
        replace_existing=True,
    )
    target.add_job(
        run_job,
        'interval',
        minutes=settings.fallback_interval_minutes,
        args=['advance_fallback_orders'],
        id='advance_fallback_orders',
        name='Advance fallback orders',
        replace_existing=True,
    )
    target.add_job(
        run_job,
        'interval',
        minutes=settings.tracking_interval_minutes,
        args=['reconcile_tracking'],
        id='reconcile_tracking',
        name='Reconcile shipment tracking',
        replace_existing=True,
    )


def start_scheduler() -> None:
    if scheduler.running:
        return
    register_jobs(scheduler)
    scheduler.start()
    logger.info('Fulfillment worker scheduler started')
    for job in scheduler.get_jobs():
        logger.info(f'Scheduled job: {job.name} - Next run: {job.next_run_time}')


def shutdown_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info('Fulfillment worker scheduler stopped')


def get_job_status() -> list[dict]:
    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run_time': str(job.next_run_time) if getattr(job, 'next_run_time', None) else None,
            'trigger': str(job.trigger),
        }
        for job in scheduler.get_jobs()
    ]
