from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.orm import Session, sessionmaker

from app.config import settings
from app.db import SessionLocal
from app.models import FulfillmentStatus, FulfillmentSupplier
from app.services.errors import LockHeld, NotFound
from app.services.fulfillment_meta import read_meta, write_meta
from app.services.fulfillment_store import (
    apply_status,
    hold_fulfillment_lock,
    list_fallback_candidate_ids,
    load_fulfillment_order,
    new_lock_owner,
)

logger = logging.getLogger(__name__)

WORKER_NAME = 'fallback-worker'
TRACKING_PREFIX = 'AE-'
TRACKING_ALPHABET = string.ascii_uppercase + string.digits


@dataclass
class FallbackTickResult:
    scanned: int = 0
    shipped: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


def generate_fallback_tracking_number() -> str:
    return TRACKING_PREFIX + ''.join(secrets.choice(TRACKING_ALPHABET) for _ in range(10))


def _advance(db: Session, order_id: int, result: FallbackTickResult) -> None:
    with hold_fulfillment_lock(db, order_id, owner=new_lock_owner(WORKER_NAME)):
        order = load_fulfillment_order(db, order_id)
        if (
            order.supplier != FulfillmentSupplier.FALLBACK
            or order.status != FulfillmentStatus.PENDING
            or not read_meta(order).is_escalated
        ):
            result.skipped += 1
            return

        apply_status(
            db,
            order,
            FulfillmentStatus.ORDERED,
            action='FALLBACK_ORDERED',
            performed_by=WORKER_NAME,
        )
        db.commit()

        order = load_fulfillment_order(db, order_id)
        order.tracking_number = generate_fallback_tracking_number()
        order.carrier = settings.fallback_carrier
        write_meta(order, read_meta(order).with_fallback_shipped(datetime.now(tz=timezone.utc)))
        apply_status(
            db,
            order,
            FulfillmentStatus.SHIPPED,
            action='FALLBACK_SHIPPED',
            performed_by=WORKER_NAME,
            metadata={'tracking_number': order.tracking_number, 'carrier': order.carrier},
        )
        db.commit()
        result.shipped += 1
        logger.info(f'Fallback fulfillment {order_id} shipped with tracking {order.tracking_number}')


def run_fallback_tick(session_factory: sessionmaker = SessionLocal, *, batch_size: int | None = None) -> FallbackTickResult:
    """Advance escalated or fallback-routed records: pending -> ordered -> shipped."""
    batch_size = batch_size or settings.worker_batch_size
    result = FallbackTickResult()
    with session_factory() as db:
        candidate_ids = list_fallback_candidate_ids(db, limit=batch_size)
        db.commit()
        result.scanned = len(candidate_ids)
        logger.info(f'Fallback tick: {len(candidate_ids)} candidate(s)')

        for order_id in candidate_ids:
            try:
                _advance(db, order_id, result)
            except (LockHeld, NotFound) as exc:
                result.skipped += 1
                logger.debug(f'Fallback tick skipped fulfillment {order_id}: {exc.message}')
            except Exception as exc:
                db.rollback()
                result.errors.append(f'{order_id}: {exc}')
                logger.exception(f'Fallback tick failed on fulfillment {order_id}')

    logger.info(f'Fallback tick done: shipped={result.shipped} skipped={result.skipped} errors={len(result.errors)}')
    return result
