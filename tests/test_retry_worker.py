from __future__ import annotations

import unittest
from decimal import Decimal
from unittest.mock import patch

from app.config import settings
from app.models import FulfillmentStatus, FulfillmentSupplier
from app.services.audit_service import list_fulfillment_events
from app.services.cj_supplier_client import CjSupplierClient
from app.services.errors import NegativeProfitBlocked
from app.services.fulfillment_meta import BlockReason, read_meta
from app.services.fulfillment_store import acquire_lock, load_fulfillment_order, summarize_fulfillment
from app.services.submission_service import submit_primary_order
from app.workers.fallback_worker import run_fallback_tick
from app.workers.retry_worker import run_retry_tick
from fulfillment_fixtures import FakeSupplier, add_mapping, add_order, make_session_factory


class RetryWorkerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        with self.session_factory() as db:
            add_mapping(db, sku='SKU-1')

    def _load(self, order_id: int):
        with self.session_factory() as db:
            return load_fulfillment_order(db, order_id)

    def test_failed_record_is_resubmitted(self) -> None:
        with self.session_factory() as db:
            order_id = add_order(db, status=FulfillmentStatus.FAILED).id

        result = run_retry_tick(self.session_factory, supplier=FakeSupplier(), max_retries=3)

        self.assertEqual(result.submitted, 1)
        order = self._load(order_id)
        self.assertEqual(order.status, FulfillmentStatus.ORDERED)
        self.assertEqual(order.supplier_order_id, 'CJ-0001')

    def test_three_network_failures_escalate_to_fallback(self) -> None:
        supplier = FakeSupplier(fail_create=True)
        with self.session_factory() as db:
            order_id = add_order(db).id

        run_retry_tick(self.session_factory, supplier=supplier, max_retries=3)
        run_retry_tick(self.session_factory, supplier=supplier, max_retries=3)
        order = self._load(order_id)
        self.assertEqual(order.supplier, FulfillmentSupplier.PRIMARY)
        self.assertEqual(order.status, FulfillmentStatus.FAILED)

        result = run_retry_tick(self.session_factory, supplier=supplier, max_retries=3)
        self.assertEqual(result.escalated, 1)

        order = self._load(order_id)
        self.assertEqual(order.supplier, FulfillmentSupplier.FALLBACK)
        self.assertEqual(order.status, FulfillmentStatus.PENDING)
        self.assertIsNone(order.supplier_order_id)
        meta = read_meta(order)
        self.assertEqual(meta.retry.count, 3)
        self.assertEqual(meta.fallback.from_supplier, 'primary')

        # Escalated records drop out of the primary retry queue for good.
        result = run_retry_tick(self.session_factory, supplier=supplier, max_retries=3)
        self.assertEqual(result.scanned, 0)
        self.assertEqual(len(supplier.create_calls), 3)

    def test_negative_profit_escalates_immediately_and_only_once(self) -> None:
        supplier = FakeSupplier(product_cost='35.00', shipping_cost='0.00')
        with self.session_factory() as db:
            order_id = add_order(db, sale_price='30.00').id

        result = run_retry_tick(self.session_factory, supplier=supplier, max_retries=3)
        self.assertEqual(result.blocked, 1)
        self.assertEqual(result.escalated, 1)
        run_retry_tick(self.session_factory, supplier=supplier, max_retries=3)

        order = self._load(order_id)
        self.assertEqual(order.supplier, FulfillmentSupplier.FALLBACK)
        self.assertIsNone(order.supplier_order_id)
        self.assertEqual(len(supplier.create_calls), 1)
        with self.session_factory() as db:
            actions = [event.action for event in list_fulfillment_events(db, fulfillment_order_id=order_id)]
        self.assertEqual(actions.count('ESCALATED'), 1)
        self.assertIn('NEGATIVE_PROFIT_BLOCKED', actions)

    def test_previously_blocked_record_escalates_without_calling_supplier(self) -> None:
        supplier = FakeSupplier(product_cost='35.00', shipping_cost='0.00')
        with self.session_factory() as db:
            order_id = add_order(db, sale_price='30.00').id
        # An inline attempt blocked it before the worker ever saw it.
        with self.session_factory() as db:
            with self.assertRaises(NegativeProfitBlocked):
                submit_primary_order(db, order_id, supplier=supplier)

        result = run_retry_tick(self.session_factory, supplier=supplier, max_retries=3)

        self.assertEqual(result.escalated, 1)
        self.assertEqual(len(supplier.create_calls), 1)
        self.assertEqual(self._load(order_id).supplier, FulfillmentSupplier.FALLBACK)

    def test_order_accepted_without_cost_is_placed_exactly_once(self) -> None:
        supplier = FakeSupplier(product_cost=None)
        with self.session_factory() as db:
            order_id = add_order(db).id

        first = run_retry_tick(self.session_factory, supplier=supplier, max_retries=3)
        for _ in range(3):
            run_retry_tick(self.session_factory, supplier=supplier, max_retries=3)

        self.assertEqual(first.blocked, 1)
        self.assertEqual(first.escalated, 0)
        self.assertEqual(len(supplier.create_calls), 1)
        order = self._load(order_id)
        self.assertEqual(order.supplier, FulfillmentSupplier.PRIMARY)
        self.assertEqual(order.supplier_order_id, 'CJ-0001')
        self.assertEqual(read_meta(order).block.reason, BlockReason.COST_UNKNOWN)

    def test_connection_reset_is_counted_and_escalates(self) -> None:
        with self.session_factory() as db:
            order_id = add_order(db).id

        with patch.object(settings, 'cj_access_token', 'token-abc'):
            supplier = CjSupplierClient()
            with patch('app.services.cj_supplier_client.urlopen', side_effect=ConnectionResetError(104, 'reset by peer')):
                results = [run_retry_tick(self.session_factory, supplier=supplier, max_retries=3) for _ in range(3)]

        self.assertEqual([result.errors for result in results], [[], [], []])
        self.assertEqual(results[-1].escalated, 1)
        order = self._load(order_id)
        self.assertEqual(order.supplier, FulfillmentSupplier.FALLBACK)
        meta = read_meta(order)
        self.assertEqual(meta.retry.count, 3)
        self.assertIn('connection failed', meta.retry.last_error)

    def test_fallback_order_does_not_inherit_the_rejected_primary_quote(self) -> None:
        supplier = FakeSupplier(product_cost='32.00', shipping_cost='3.00')
        with self.session_factory() as db:
            order_id = add_order(db, sale_price='30.00').id

        run_retry_tick(self.session_factory, supplier=supplier, max_retries=3)
        run_fallback_tick(self.session_factory)

        order = self._load(order_id)
        self.assertEqual(order.supplier, FulfillmentSupplier.FALLBACK)
        self.assertEqual(order.status, FulfillmentStatus.SHIPPED)
        self.assertIsNone(order.supplier_cost)
        self.assertIsNone(order.shipping_cost)
        self.assertIsNone(order.profit)
        self.assertEqual(read_meta(order).block.reason, BlockReason.NEGATIVE_PROFIT)
        with self.session_factory() as db:
            self.assertEqual(summarize_fulfillment(db)['realized_profit'], Decimal('0.00'))

    def test_locked_and_submitted_records_are_skipped(self) -> None:
        supplier = FakeSupplier()
        with self.session_factory() as db:
            locked_id = add_order(db, line_item_id='1').id
            add_order(db, line_item_id='2', status=FulfillmentStatus.ORDERED, supplier_order_id='CJ-X')
            acquire_lock(db, locked_id, owner='admin:manual')

        result = run_retry_tick(self.session_factory, supplier=supplier, max_retries=3)

        self.assertEqual(result.scanned, 1)
        self.assertEqual(result.skipped, 1)
        self.assertEqual(supplier.create_calls, [])


if __name__ == '__main__':
    unittest.main()
