from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import update

from app.models import FulfillmentOrder, FulfillmentStatus, FulfillmentSupplier
from app.services.audit_service import list_fulfillment_events
from app.services.errors import InvalidTransition, LockHeld, NotFound
from app.services.fulfillment_meta import FulfillmentMeta, read_meta
from app.services.fulfillment_store import (
    acquire_lock,
    apply_status,
    escalate_to_fallback,
    hold_fulfillment_lock,
    is_locked,
    list_fallback_candidate_ids,
    list_fallback_shipment_ids,
    list_retry_candidate_ids,
    list_tracking_candidate_ids,
    load_fulfillment_order,
    summarize_fulfillment,
)
from fulfillment_fixtures import add_order, make_session_factory


class FulfillmentLockTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        with self.session_factory() as db:
            self.order_id = add_order(db).id

    def test_second_acquire_fails_while_lock_is_live(self) -> None:
        with self.session_factory() as db:
            self.assertTrue(acquire_lock(db, self.order_id, owner='a'))
            self.assertFalse(acquire_lock(db, self.order_id, owner='b'))
            self.assertTrue(is_locked(load_fulfillment_order(db, self.order_id)))

    def test_expired_lock_can_be_reacquired(self) -> None:
        with self.session_factory() as db:
            self.assertTrue(acquire_lock(db, self.order_id, owner='crashed-worker'))
            db.execute(
                update(FulfillmentOrder)
                .where(FulfillmentOrder.id == self.order_id)
                .values(locked_until=datetime.now(tz=timezone.utc) - timedelta(seconds=1))
            )
            db.commit()

            self.assertFalse(is_locked(load_fulfillment_order(db, self.order_id)))
            self.assertTrue(acquire_lock(db, self.order_id, owner='b'))
            self.assertEqual(load_fulfillment_order(db, self.order_id).lock_owner, 'b')

    def test_context_manager_releases_lock_even_on_error(self) -> None:
        with self.session_factory() as db:
            with self.assertRaises(RuntimeError):
                with hold_fulfillment_lock(db, self.order_id, owner='a'):
                    raise RuntimeError('boom')
            order = load_fulfillment_order(db, self.order_id)
            self.assertIsNone(order.locked_until)
            self.assertIsNone(order.lock_owner)

    def test_context_manager_raises_lock_held_or_not_found(self) -> None:
        with self.session_factory() as db:
            acquire_lock(db, self.order_id, owner='other')
            with self.assertRaises(LockHeld):
                with hold_fulfillment_lock(db, self.order_id, owner='me'):
                    pass
            with self.assertRaises(NotFound):
                with hold_fulfillment_lock(db, 999, owner='me'):
                    pass

    def test_release_only_clears_own_lock(self) -> None:
        with self.session_factory() as db:
            with hold_fulfillment_lock(db, self.order_id, owner='me'):
                db.execute(
                    update(FulfillmentOrder)
                    .where(FulfillmentOrder.id == self.order_id)
                    .values(lock_owner='stolen')
                )
            self.assertEqual(load_fulfillment_order(db, self.order_id).lock_owner, 'stolen')


class EscalationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()

    def test_escalation_happens_exactly_once(self) -> None:
        with self.session_factory() as db:
            order_id = add_order(db, status=FulfillmentStatus.FAILED).id

            self.assertTrue(escalate_to_fallback(db, order_id, reason='exhausted'))
            self.assertFalse(escalate_to_fallback(db, order_id, reason='exhausted again'))

            order = load_fulfillment_order(db, order_id)
            self.assertEqual(order.supplier, FulfillmentSupplier.FALLBACK)
            self.assertEqual(order.status, FulfillmentStatus.PENDING)
            meta = read_meta(order)
            self.assertTrue(meta.is_escalated)
            self.assertEqual(meta.fallback.from_supplier, 'primary')
            self.assertEqual(meta.fallback.reason, 'exhausted')
            actions = [event.action for event in list_fulfillment_events(db, fulfillment_order_id=order_id)]
            self.assertEqual(actions.count('ESCALATED'), 1)

    def test_submitted_or_terminal_records_are_never_escalated(self) -> None:
        with self.session_factory() as db:
            submitted = add_order(db, line_item_id='1', status=FulfillmentStatus.ORDERED, supplier_order_id='CJ-1').id
            cancelled = add_order(db, line_item_id='2', status=FulfillmentStatus.CANCELLED).id
            self.assertFalse(escalate_to_fallback(db, submitted, reason='x'))
            self.assertFalse(escalate_to_fallback(db, cancelled, reason='x'))
            self.assertEqual(load_fulfillment_order(db, submitted).supplier, FulfillmentSupplier.PRIMARY)

    def test_candidate_queries_split_primary_and_escalated_records(self) -> None:
        with self.session_factory() as db:
            pending = add_order(db, line_item_id='1').id
            failed = add_order(db, line_item_id='2', status=FulfillmentStatus.FAILED).id
            add_order(db, line_item_id='3', status=FulfillmentStatus.ORDERED, supplier_order_id='CJ-1')
            add_order(db, line_item_id='4', supplier=FulfillmentSupplier.FALLBACK)
            escalated = add_order(
                db,
                line_item_id='5',
                supplier=FulfillmentSupplier.FALLBACK,
                meta=FulfillmentMeta().with_fallback(
                    from_supplier='primary', reason='x', at=datetime.now(tz=timezone.utc)
                ),
            ).id

            self.assertEqual(list_retry_candidate_ids(db, limit=20), [pending, failed])
            self.assertEqual(list_fallback_candidate_ids(db, limit=20), [escalated])

    def test_escalation_clears_the_primary_quote(self) -> None:
        with self.session_factory() as db:
            order_id = add_order(
                db,
                status=FulfillmentStatus.FAILED,
                supplier_cost=Decimal('32.00'),
                shipping_cost=Decimal('3.00'),
                profit=Decimal('-5.00'),
            ).id

            self.assertTrue(escalate_to_fallback(db, order_id, reason='negative profit on primary supplier'))

            order = load_fulfillment_order(db, order_id)
            self.assertIsNone(order.supplier_cost)
            self.assertIsNone(order.shipping_cost)
            self.assertIsNone(order.profit)

    def test_only_primary_shipments_are_polled_for_tracking(self) -> None:
        with self.session_factory() as db:
            primary = add_order(
                db, line_item_id='1', status=FulfillmentStatus.SHIPPED, supplier_order_id='CJ-1', tracking_number='CJTRK1'
            ).id
            fallback = add_order(
                db,
                line_item_id='2',
                supplier=FulfillmentSupplier.FALLBACK,
                status=FulfillmentStatus.SHIPPED,
                tracking_number='AE-ABCDEFGHIJ',
            ).id

            self.assertEqual(list_tracking_candidate_ids(db, limit=20), [primary])
            self.assertEqual(list_fallback_shipment_ids(db, limit=20), [fallback])


class StatusAndSummaryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()

    def test_apply_status_audits_and_rejects_invalid_moves(self) -> None:
        with self.session_factory() as db:
            order = add_order(db)
            apply_status(db, order, FulfillmentStatus.FAILED, action='PRIMARY_FAILED', performed_by='test')
            db.commit()
            with self.assertRaises(InvalidTransition):
                apply_status(db, order, FulfillmentStatus.SHIPPED, action='NOPE', performed_by='test')
            self.assertEqual(order.status, FulfillmentStatus.FAILED)

            [event] = list_fulfillment_events(db, fulfillment_order_id=order.id)
            self.assertEqual(event.previous_status, 'pending')
            self.assertEqual(event.new_status, 'failed')

    def test_summary_is_computed_from_the_store(self) -> None:
        with self.session_factory() as db:
            add_order(db, line_item_id='1', status=FulfillmentStatus.ORDERED, profit=Decimal('10.50'))
            add_order(db, line_item_id='2', status=FulfillmentStatus.DELIVERED, profit=Decimal('4.50'))
            add_order(db, line_item_id='3', status=FulfillmentStatus.FAILED, profit=Decimal('-5.00'))
            add_order(db, line_item_id='4', supplier=FulfillmentSupplier.MANUAL)

            summary = summarize_fulfillment(db)

        self.assertEqual(summary['total'], 4)
        self.assertEqual(summary['open'], 3)
        self.assertEqual(summary['by_status']['ordered'], 1)
        self.assertEqual(summary['by_status']['failed'], 1)
        self.assertEqual(summary['by_supplier']['manual'], 1)
        self.assertEqual(summary['realized_profit'], Decimal('15.00'))


if __name__ == '__main__':
    unittest.main()
