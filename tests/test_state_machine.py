from __future__ import annotations

import unittest

from app.models import FulfillmentStatus as S
from app.services.errors import InvalidTransition
from app.services.state_machine import assert_transition, can_transition, is_terminal


class StateMachineTests(unittest.TestCase):
    def test_automatic_transitions_follow_the_lifecycle(self) -> None:
        allowed = [
            (S.PENDING, S.ORDERED),
            (S.PENDING, S.FAILED),
            (S.FAILED, S.ORDERED),
            (S.ORDERED, S.SHIPPED),
            (S.ORDERED, S.DELIVERED),
            (S.SHIPPED, S.DELIVERED),
        ]
        for current, requested in allowed:
            with self.subTest(current=current, requested=requested):
                self.assertTrue(can_transition(current, requested))

    def test_backwards_and_skipping_moves_are_rejected(self) -> None:
        for current, requested in [
            (S.SHIPPED, S.ORDERED),
            (S.PENDING, S.SHIPPED),
            (S.FAILED, S.PENDING),
            (S.ORDERED, S.FAILED),
            (S.DELIVERED, S.SHIPPED),
        ]:
            with self.subTest(current=current, requested=requested):
                self.assertFalse(can_transition(current, requested))

    def test_sink_states_need_an_administrative_action(self) -> None:
        self.assertFalse(can_transition(S.ORDERED, S.CANCELLED))
        self.assertTrue(can_transition(S.ORDERED, S.CANCELLED, administrative=True))
        self.assertTrue(can_transition(S.SHIPPED, S.RETURNED, administrative=True))
        self.assertFalse(can_transition(S.DELIVERED, S.RETURNED, administrative=True))
        self.assertFalse(can_transition(S.CANCELLED, S.RETURNED, administrative=True))

    def test_administrative_flag_does_not_unlock_other_moves(self) -> None:
        self.assertFalse(can_transition(S.SHIPPED, S.PENDING, administrative=True))

    def test_terminal_states(self) -> None:
        self.assertTrue(is_terminal(S.DELIVERED))
        self.assertTrue(is_terminal(S.CANCELLED))
        self.assertTrue(is_terminal(S.RETURNED))
        self.assertFalse(is_terminal(S.FAILED))

    def test_assert_transition_raises_invalid_transition(self) -> None:
        with self.assertRaises(InvalidTransition) as ctx:
            assert_transition(S.DELIVERED, S.SHIPPED, order_id=7)
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(ctx.exception.order_id, 7)
        self.assertEqual(ctx.exception.to_detail()['kind'], 'InvalidTransition')


if __name__ == '__main__':
    unittest.main()
