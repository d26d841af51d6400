from __future__ import annotations

import argparse
import logging

from apscheduler.schedulers.blocking import BlockingScheduler

from app.db import init_db
from app.logging_config import configure_logging
from app.workers.fallback_worker import run_fallback_tick
from app.workers.retry_worker import run_retry_tick
from app.workers.scheduler import build_scheduler_options, register_jobs
from app.workers.tracking_worker import run_tracking_tick

logger = logging.getLogger(__name__)

ONCE_CHOICES = ('retry', 'fallback', 'tracking', 'all')


def run_once(which: str) -> None:
    if which in ('retry', 'all'):
        result = run_retry_tick()
        print(
            f'Retry tick: scanned={result.scanned}, submitted={result.submitted}, failed={result.failed}, '
            f'blocked={result.blocked}, escalated={result.escalated}, errors={len(result.errors)}'
        )
    if which in ('fallback', 'all'):
        result = run_fallback_tick()
        print(f'Fallback tick: scanned={result.scanned}, shipped={result.shipped}, errors={len(result.errors)}')
    if which in ('tracking', 'all'):
        result = run_tracking_tick()
        print(
            f'Tracking tick: discovered={result.discovered}, polled={result.polled}, notified={result.notified}, '
            f'shipped={result.shipped}, delivered={result.delivered}, errors={len(result.errors)}'
        )


def main() -> None:
    parser = argparse.ArgumentParser(description='Run the fulfillment background workers.')
    parser.add_argument(
        '--once',
        choices=ONCE_CHOICES,
        help='Run a single tick of the given worker (or all of them) and exit.',
    )
    parser.add_argument(
        '--init-db',
        action='store_true',
        help='Create missing tables before running.',
    )
    args = parser.parse_args()

    configure_logging()
    if args.init_db:
        init_db()

    if args.once:
        run_once(args.once)
        return

    scheduler = BlockingScheduler(**build_scheduler_options())
    register_jobs(scheduler)
    logger.info('Starting fulfillment workers; press Ctrl+C to stop')
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info('Fulfillment workers stopped')


if __name__ == '__main__':
    main()
