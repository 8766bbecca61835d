#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Tests for the order state machine, status updates and refunds."""

import decimal

from absl.testing import absltest

from marketplace_checkout import testing_utils
from marketplace_checkout.enums import OrderStatus
from marketplace_checkout.exceptions import ForbiddenError
from marketplace_checkout.exceptions import InvalidRequestError
from marketplace_checkout.exceptions import InvalidStatusTransitionError
from marketplace_checkout.exceptions import ReservationConflictError
from marketplace_checkout.exceptions import ResourceNotFoundError
from marketplace_checkout.models import RefundRequest
from marketplace_checkout.services import order_service
from marketplace_checkout.services.checkout_items import SellerGroup
from marketplace_checkout.services.order_service import OrderService


class TransitionTableTest(absltest.TestCase):

  def test_allowed_moves(self) -> None:
    allowed = [
        (OrderStatus.PENDING_PAYMENT, OrderStatus.PROCESSING),
        (OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED),
        (OrderStatus.PENDING, OrderStatus.SHIPPED),
        (OrderStatus.PROCESSING, OrderStatus.SHIPPED),
        (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
        (OrderStatus.DELIVERED, OrderStatus.RETURN_PROCESSING),
        (OrderStatus.RETURN_PROCESSING, OrderStatus.RETURNED),
        (OrderStatus.SHIPPED, OrderStatus.SHIPPED),
    ]
    for current, target in allowed:
      with self.subTest(current=current, target=target):
        self.assertTrue(order_service.can_transition(current, target))

  def test_forbidden_moves(self) -> None:
    forbidden = [
        (OrderStatus.PROCESSING, OrderStatus.PENDING_PAYMENT),
        (OrderStatus.PROCESSING, OrderStatus.DELIVERED),
        (OrderStatus.DELIVERED, OrderStatus.CANCELLED),
        (OrderStatus.CANCELLED, OrderStatus.PROCESSING),
        (OrderStatus.RETURNED, OrderStatus.SHIPPED),
    ]
    for current, target in forbidden:
      with self.subTest(current=current, target=target):
        self.assertFalse(order_service.can_transition(current, target))

  def test_parse_status(self) -> None:
    self.assertEqual(
        order_service.parse_status("shipped"), OrderStatus.SHIPPED
    )
    with self.assertRaisesRegex(InvalidRequestError, "Invalid order status"):
      order_service.parse_status("lost")


class OrderServiceTest(testing_utils.DatabaseTestCase):

  def _seed(self, status: OrderStatus = OrderStatus.PROCESSING, **kwargs) -> str:
    return self.run_async(
        self.seed_order(
            status,
            [
                testing_utils.line("product-a", 2, "10.00"),
                testing_utils.line("product-b", 1, "5.50"),
            ],
            **kwargs,
        )
    )

  async def _update(self, order_id: str, **kwargs):
    async with self.transactions_session() as session:
      return await OrderService(session, self.clock).update_status(
          order_id, **kwargs
      )

  async def _refund(self, order_id: str, amount: str, **kwargs):
    async with self.transactions_session() as session:
      return await OrderService(session, self.clock).record_refund(
          order_id,
          RefundRequest(amount=decimal.Decimal(amount), **kwargs),
          refunded_by="staff-1",
      )

  async def _get(self, order_id: str, customer_id=None):
    async with self.transactions_session() as session:
      return await OrderService(session, self.clock).get_order(
          order_id, customer_id
      )

  def test_create_order_snapshots_lines(self) -> None:
    order_id = self._seed()

    order = self.run_async(self.get_order(order_id))

    self.assertEqual(order.total_amount, decimal.Decimal("25.50"))
    self.assertEqual(
        [item.product_id for item in order.items], ["product-a", "product-b"]
    )
    for item in order.items:
      self.assertEqual(item.subtotal, item.price * item.quantity)
    self.assertEqual(order.created_at, self.clock())

  def test_create_order_rejects_booked_slot(self) -> None:
    reservation = testing_utils.line(
        "product-p",
        1,
        "40.00",
        is_reservation=True,
        reservation_date="2026-07-01",
        reservation_time="10:00",
    )
    self.run_async(self.seed_order(OrderStatus.PENDING, [reservation]))

    with self.assertRaises(ReservationConflictError):
      self.run_async(self.seed_order(OrderStatus.PENDING, [reservation]))

  def test_cancelled_order_frees_its_slot(self) -> None:
    reservation = testing_utils.line(
        "product-p",
        1,
        "40.00",
        is_reservation=True,
        reservation_date="2026-07-01",
        reservation_time="10:00",
    )
    self.run_async(self.seed_order(OrderStatus.CANCELLED, [reservation]))

    order_id = self.run_async(
        self.seed_order(OrderStatus.PENDING, [reservation])
    )
    self.assertIsNotNone(order_id)

  def test_ship_then_deliver_stamps_dates(self) -> None:
    order_id = self._seed()

    shipped = self.run_async(self._update(order_id, status="shipped"))
    self.assertEqual(shipped.status, "shipped")
    self.assertEqual(shipped.shipped_date, self.clock())

    self.clock.advance(days=2)
    delivered = self.run_async(self._update(order_id, status="delivered"))
    self.assertEqual(delivered.status, "delivered")
    self.assertEqual(delivered.delivered_date, self.clock())
    self.assertEqual(delivered.shipped_date, shipped.shipped_date)

  def test_same_status_is_a_noop(self) -> None:
    order_id = self._seed(OrderStatus.SHIPPED)
    first = self.run_async(self._update(order_id, status="shipped"))
    self.clock.advance(hours=1)

    second = self.run_async(self._update(order_id, status="shipped"))

    self.assertEqual(second.status, "shipped")
    self.assertEqual(second.shipped_date, first.shipped_date)

  def test_illegal_transition(self) -> None:
    order_id = self._seed()

    with self.assertRaises(InvalidStatusTransitionError):
      self.run_async(self._update(order_id, status="returned"))

    self.assertEqual(
        self.run_async(self.get_order(order_id)).status, "processing"
    )

  def test_tracking_number_only(self) -> None:
    order_id = self._seed()

    view = self.run_async(self._update(order_id, tracking_number=" 1Z999 "))

    self.assertEqual(view.status, "processing")
    self.assertEqual(view.tracking_number, "1Z999")

  def test_update_requires_something(self) -> None:
    order_id = self._seed()
    with self.assertRaisesRegex(InvalidRequestError, "Status or tracking"):
      self.run_async(self._update(order_id))

  def test_update_unknown_order(self) -> None:
    with self.assertRaises(ResourceNotFoundError):
      self.run_async(self._update("missing", status="shipped"))

  def test_get_order_checks_owner(self) -> None:
    order_id = self._seed()

    view = self.run_async(self._get(order_id, "customer-1"))
    self.assertEqual(view.id, order_id)
    self.assertLen(view.items, 2)

    with self.assertRaises(ForbiddenError):
      self.run_async(self._get(order_id, "customer-2"))

  def test_refunds_accumulate_up_to_total(self) -> None:
    order_id = self._seed()

    refund = self.run_async(self._refund(order_id, "20.00", reason="damaged"))
    self.assertEqual(refund.status, "succeeded")
    self.assertEqual(refund.refunded_by, "staff-1")
    self.assertTrue(refund.refund_id.startswith("re_manual_"))

    with self.assertRaisesRegex(InvalidRequestError, "refundable balance"):
      self.run_async(self._refund(order_id, "6.00"))

    self.run_async(self._refund(order_id, "5.50"))
    view = self.run_async(self._get(order_id))
    self.assertEqual(view.total_refunded, decimal.Decimal("25.50"))

  def test_failed_refund_does_not_count(self) -> None:
    order_id = self._seed()

    self.run_async(self._refund(order_id, "100.00", status="failed"))

    view = self.run_async(self._get(order_id))
    self.assertEqual(view.total_refunded, decimal.Decimal("0"))

  def test_refund_validation(self) -> None:
    order_id = self._seed()
    with self.assertRaisesRegex(InvalidRequestError, "greater than zero"):
      self.run_async(self._refund(order_id, "0"))
    with self.assertRaisesRegex(InvalidRequestError, "Invalid refund status"):
      self.run_async(self._refund(order_id, "1.00", status="maybe"))

  def test_purge_only_touches_staged_orders(self) -> None:
    staged_id = self._seed(
        OrderStatus.PENDING_PAYMENT, stripe_session_id="cs_test_purge"
    )

    async def add_paid_order():
      async with self.transactions_session() as session:
        await OrderService(session, self.clock).create_order(
            SellerGroup(
                store_id="store-y",
                store_name="Store Y",
                items=[testing_utils.line("product-c", 1, "3.00")],
            ),
            testing_utils.ADDRESS_SNAPSHOT,
            OrderStatus.PROCESSING,
            "cs_test_purge",
        )
        await session.commit()

    self.run_async(add_paid_order())

    async def purge():
      async with self.transactions_session() as session:
        return await OrderService(session).purge_staged_orders("cs_test_purge")

    self.assertEqual(self.run_async(purge()), 1)
    self.assertIsNone(self.run_async(self.get_order(staged_id)))
    remaining = self.run_async(self.get_orders_by_session("cs_test_purge"))
    self.assertEqual([o.status for o in remaining], ["processing"])


if __name__ == "__main__":
  absltest.main()
