from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session, sessionmaker

from app.config import settings
from app.db import SessionLocal
from app.models import FulfillmentSupplier
from app.services.errors import (
    AlreadyEscalated,
    LockHeld,
    MissingSupplierMapping,
    NegativeProfitBlocked,
    NotFound,
    SupplierCallFailed,
    SupplierCostUnknown,
)
from app.services.fulfillment_meta import read_meta
from app.services.fulfillment_store import (
    escalate_to_fallback,
    hold_fulfillment_lock,
    list_retry_candidate_ids,
    load_fulfillment_order,
    new_lock_owner,
)
from app.services.provider_factory import get_primary_supplier
from app.services.state_machine import ESCALATABLE_STATUSES
from app.services.submission_service import attempt_primary_submission
from app.services.supplier_provider import PrimarySupplier

logger = logging.getLogger(__name__)

WORKER_NAME = 'retry-worker'


@dataclass
class RetryTickResult:
    scanned: int = 0
    submitted: int = 0
    failed: int = 0
    blocked: int = 0
    escalated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


def _escalate(db: Session, order_id: int, reason: str, result: RetryTickResult) -> None:
    if escalate_to_fallback(db, order_id, reason=reason, performed_by=WORKER_NAME):
        result.escalated += 1
        logger.warning(f'Fulfillment {order_id} escalated to fallback: {reason}')
    else:
        result.skipped += 1


def _process_candidate(
    db: Session,
    order_id: int,
    *,
    supplier: PrimarySupplier,
    max_retries: int,
    result: RetryTickResult,
) -> None:
    with hold_fulfillment_lock(db, order_id, owner=new_lock_owner(WORKER_NAME)):
        order = load_fulfillment_order(db, order_id)
        meta = read_meta(order)
        if (
            order.supplier != FulfillmentSupplier.PRIMARY
            or order.status not in ESCALATABLE_STATUSES
            or order.supplier_order_id is not None
            or meta.is_escalated
        ):
            result.skipped += 1
            return

        if meta.is_profit_blocked:
            _escalate(db, order_id, 'negative profit on primary supplier', result)
            return

        try:
            order = attempt_primary_submission(db, order_id, supplier=supplier, performed_by=WORKER_NAME)
        except NegativeProfitBlocked as exc:
            result.blocked += 1
            _escalate(db, order_id, exc.message, result)
            return
        except (SupplierCallFailed, MissingSupplierMapping) as exc:
            result.failed += 1
            attempts = read_meta(load_fulfillment_order(db, order_id)).retry.count
            if attempts >= max_retries:
                _escalate(db, order_id, f'primary failed {attempts} times: {exc.message}', result)
            else:
                logger.info(f'Fulfillment {order_id} attempt {attempts}/{max_retries} failed: {exc.message}')
            return
        except SupplierCostUnknown as exc:
            # Placed with the supplier; an admin settles it, never another attempt.
            result.blocked += 1
            logger.warning(f'Fulfillment {order_id} needs review: {exc.message}')
            return
        except AlreadyEscalated:
            result.skipped += 1
            return

        if order.supplier_order_id is not None:
            result.submitted += 1
        else:
            result.skipped += 1


def run_retry_tick(
    session_factory: sessionmaker = SessionLocal,
    *,
    supplier: PrimarySupplier | None = None,
    max_retries: int | None = None,
    batch_size: int | None = None,
) -> RetryTickResult:
    """Re-attempt unsubmitted primary records, escalating exhausted or unprofitable ones."""
    supplier = supplier or get_primary_supplier()
    max_retries = max_retries or settings.max_retries
    batch_size = batch_size or settings.worker_batch_size

    result = RetryTickResult()
    with session_factory() as db:
        candidate_ids = list_retry_candidate_ids(db, limit=batch_size)
        db.commit()
        result.scanned = len(candidate_ids)
        logger.info(f'Retry tick: {len(candidate_ids)} candidate(s)')

        for order_id in candidate_ids:
            try:
                _process_candidate(db, order_id, supplier=supplier, max_retries=max_retries, result=result)
            except (LockHeld, NotFound) as exc:
                result.skipped += 1
                logger.debug(f'Retry tick skipped fulfillment {order_id}: {exc.message}')
            except Exception as exc:
                # One bad record must not stall the rest of the batch.
                db.rollback()
                result.errors.append(f'{order_id}: {exc}')
                logger.exception(f'Retry tick failed on fulfillment {order_id}')

    logger.info(
        f'Retry tick done: submitted={result.submitted} failed={result.failed} blocked={result.blocked} '
        f'escalated={result.escalated} skipped={result.skipped} errors={len(result.errors)}'
    )
    return result
