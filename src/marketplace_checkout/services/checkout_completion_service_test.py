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

"""Tests for finalizing paid payment sessions into orders."""

import asyncio
import decimal
import json
from typing import Dict, List, Optional
from unittest import mock

from absl.testing import absltest

from marketplace_checkout import testing_utils
from marketplace_checkout.enums import OrderStatus
from marketplace_checkout.exceptions import CheckoutFinalizationError
from marketplace_checkout.exceptions import InvalidRequestError
from marketplace_checkout.exceptions import ResourceNotFoundError
from marketplace_checkout.services.checkout_completion_service import CheckoutCompletionService
from marketplace_checkout.services.checkout_items import build_processor_line_items
from marketplace_checkout.services.checkout_items import SellerGroup
from marketplace_checkout.services.order_service import OrderService
from marketplace_checkout.services.payment_processor import MockPaymentProcessor

_SHIPPING = json.dumps({
    "street_address": "12 Analytical Way",
    "city": "Springfield",
    "state_province": "IL",
    "zip_code": "62701",
    "country": "US",
})


class CheckoutCompletionServiceTest(testing_utils.DatabaseTestCase):

  def setUp(self) -> None:
    super().setUp()
    self.processor = MockPaymentProcessor()

  def _open_session(
      self,
      metadata: Optional[Dict[str, str]] = None,
      groups: Optional[List[SellerGroup]] = None,
  ) -> str:
    """Creates a processor session for two sellers, as checkout would."""
    if groups is None:
      groups = [
          SellerGroup(
              store_id="store-x",
              store_name="Store X",
              items=[testing_utils.line("product-a", 2, "10.00")],
          ),
          SellerGroup(
              store_id="store-y",
              store_name="Store Y",
              items=[testing_utils.line("product-b", 1, "5.00")],
          ),
      ]
    if metadata is None:
      metadata = {
          "user_id": "customer-1",
          "is_guest": "false",
          "shipping_address": _SHIPPING,
      }
    session = self.run_async(
        self.processor.create_checkout_session(
            line_items=build_processor_line_items(groups),
            metadata=metadata,
            success_url="https://shop.example/success",
            cancel_url="https://shop.example/cart",
        )
    )
    return session.id

  async def _complete(
      self, session_id: str, customer_id: Optional[str] = "customer-1"
  ) -> List[str]:
    async with self.transactions_session() as session:
      service = CheckoutCompletionService(
          self.processor, session, clock=self.clock
      )
      return await service.complete_checkout(session_id, customer_id)

  def test_creates_processing_order_per_seller(self) -> None:
    session_id = self._open_session()
    self.processor.complete_payment(session_id, payment_intent="pi_1")

    order_ids = self.run_async(self._complete(session_id))

    self.assertLen(order_ids, 2)
    orders = self.run_async(self.get_orders_by_session(session_id))
    by_store = {o.store_id: o for o in orders}
    self.assertCountEqual(order_ids, [o.id for o in orders])
    self.assertEqual(by_store["store-x"].total_amount, decimal.Decimal("20"))
    self.assertEqual(by_store["store-y"].total_amount, decimal.Decimal("5"))
    for order in orders:
      self.assertEqual(order.status, "processing")
      self.assertEqual(order.customer_id, "customer-1")
      self.assertEqual(order.payment_intent_id, "pi_1")
      self.assertEqual(order.shipping_city, "Springfield")
      self.assertIsNone(order.guest_email)
    item = by_store["store-x"].items[0]
    self.assertEqual(item.product_id, "product-a")
    self.assertEqual(item.quantity, 2)
    self.assertEqual(item.price, decimal.Decimal("10"))
    self.assertEqual(item.subtotal, decimal.Decimal("20"))

  def test_replay_returns_same_orders(self) -> None:
    session_id = self._open_session()
    self.processor.complete_payment(session_id)
    first = self.run_async(self._complete(session_id))

    second = self.run_async(self._complete(session_id))

    self.assertCountEqual(first, second)
    self.assertEqual(self.run_async(self.count_orders()), 2)

  def test_concurrent_finalization_creates_one_set(self) -> None:
    session_id = self._open_session()
    self.processor.complete_payment(session_id)

    async def race():
      return await asyncio.gather(
          self._complete(session_id), self._complete(session_id)
      )

    first, second = self.run_async(race())

    self.assertCountEqual(first, second)
    self.assertEqual(self.run_async(self.count_orders()), 2)

  def test_promotes_staged_orders(self) -> None:
    session_id = self._open_session()
    staged_id = self.run_async(
        self.seed_order(
            OrderStatus.PENDING_PAYMENT,
            [testing_utils.line("product-a", 2, "10.00")],
            stripe_session_id=session_id,
        )
    )
    self.processor.complete_payment(session_id, payment_intent="pi_2")
    self.clock.advance(minutes=5)

    order_ids = self.run_async(self._complete(session_id))

    self.assertEqual(order_ids, [staged_id])
    order = self.run_async(self.get_order(staged_id))
    self.assertEqual(order.status, "processing")
    self.assertEqual(order.payment_intent_id, "pi_2")
    self.assertEqual(order.order_date, self.clock())

  def test_replay_leaves_advanced_orders_alone(self) -> None:
    session_id = self._open_session()
    shipped_id = self.run_async(
        self.seed_order(
            OrderStatus.SHIPPED,
            [testing_utils.line("product-a", 2, "10.00")],
            stripe_session_id=session_id,
        )
    )
    self.processor.complete_payment(session_id)

    self.assertEqual(self.run_async(self._complete(session_id)), [shipped_id])
    self.assertEqual(self.run_async(self.get_order(shipped_id)).status, "shipped")

  def test_guest_session(self) -> None:
    session_id = self._open_session(
        metadata={
            "user_id": "guest",
            "is_guest": "true",
            "shipping_address": _SHIPPING,
            "guest_email": "guest@example.com",
            "guest_full_name": "Grace Hopper",
            "guest_phone_number": "555-0101",
        }
    )
    self.processor.complete_payment(session_id)

    self.run_async(self._complete(session_id, customer_id=None))

    for order in self.run_async(self.get_orders_by_session(session_id)):
      self.assertIsNone(order.customer_id)
      self.assertEqual(order.guest_email, "guest@example.com")
      self.assertEqual(order.guest_full_name, "Grace Hopper")
      self.assertEqual(order.guest_phone_number, "555-0101")

  def test_shipping_address_falls_back_to_processor(self) -> None:
    session_id = self._open_session(
        metadata={"user_id": "customer-1", "is_guest": "false"}
    )
    self.processor.complete_payment(
        session_id,
        shipping_address={
            "line1": "1 Infinite Loop",
            "line2": None,
            "city": "Cupertino",
            "state": "CA",
            "postal_code": "95014",
            "country": "US",
        },
    )

    self.run_async(self._complete(session_id))

    orders = self.run_async(self.get_orders_by_session(session_id))
    self.assertTrue(all(o.shipping_city == "Cupertino" for o in orders))
    self.assertTrue(
        all(o.shipping_street_address == "1 Infinite Loop" for o in orders)
    )

  def test_missing_owner(self) -> None:
    session_id = self._open_session(metadata={"shipping_address": _SHIPPING})
    self.processor.complete_payment(session_id)

    with self.assertRaises(CheckoutFinalizationError) as cm:
      self.run_async(self._complete(session_id))
    self.assertEqual(cm.exception.status_code, 400)

  def test_other_customer(self) -> None:
    session_id = self._open_session()
    self.processor.complete_payment(session_id)

    with self.assertRaises(CheckoutFinalizationError) as cm:
      self.run_async(self._complete(session_id, customer_id="customer-2"))
    self.assertEqual(cm.exception.status_code, 403)
    self.assertEqual(self.run_async(self.count_orders()), 0)

  def test_signed_out_caller_cannot_complete_account_session(self) -> None:
    session_id = self._open_session()
    self.processor.complete_payment(session_id)

    with self.assertRaises(CheckoutFinalizationError) as cm:
      self.run_async(self._complete(session_id, customer_id=None))
    self.assertEqual(cm.exception.status_code, 401)
    self.assertEqual(self.run_async(self.count_orders()), 0)

  def test_seller_failure_commits_no_orders(self) -> None:
    original = OrderService.create_order

    async def failing_create_order(order_service, group, *args, **kwargs):
      if group.store_id == "store-y":
        raise RuntimeError("disk full")
      return await original(order_service, group, *args, **kwargs)

    session_id = self._open_session()
    self.processor.complete_payment(session_id)
    with mock.patch.object(OrderService, "create_order", failing_create_order):
      with self.assertRaisesRegex(RuntimeError, "disk full"):
        self.run_async(self._complete(session_id))

    self.assertEqual(self.run_async(self.count_orders()), 0)
    # A retry after the failure still produces the full set.
    self.assertLen(self.run_async(self._complete(session_id)), 2)

  def test_unpaid_session(self) -> None:
    session_id = self._open_session()

    with self.assertRaisesRegex(
        CheckoutFinalizationError, "Payment has not been completed"
    ):
      self.run_async(self._complete(session_id))

  def test_missing_address(self) -> None:
    session_id = self._open_session(
        metadata={"user_id": "customer-1", "is_guest": "false"}
    )
    self.processor.complete_payment(session_id)

    with self.assertRaisesRegex(
        CheckoutFinalizationError, "valid shipping address"
    ):
      self.run_async(self._complete(session_id))

  def test_no_purchasable_items(self) -> None:
    session_id = self._open_session(
        groups=[
            SellerGroup(
                store_id="",
                store_name="Nobody",
                items=[testing_utils.line("product-a", 1, "10.00")],
            )
        ]
    )
    self.processor.complete_payment(session_id)

    with self.assertRaisesRegex(
        CheckoutFinalizationError, "No purchasable items"
    ):
      self.run_async(self._complete(session_id))
    self.assertEqual(self.run_async(self.count_orders()), 0)

  def test_paid_reservation_is_never_rejected(self) -> None:
    reservation = testing_utils.line(
        "product-p",
        1,
        "40.00",
        is_reservation=True,
        reservation_date="2026-07-01",
        reservation_time="14:00",
    )
    self.run_async(self.seed_order(OrderStatus.PROCESSING, [reservation]))
    session_id = self._open_session(
        groups=[
            SellerGroup(
                store_id="store-x", store_name="Store X", items=[reservation]
            )
        ]
    )
    self.processor.complete_payment(session_id)

    order_ids = self.run_async(self._complete(session_id))

    self.assertLen(order_ids, 1)
    order = self.run_async(self.get_order(order_ids[0]))
    self.assertTrue(order.items[0].is_reservation)
    self.assertEqual(order.items[0].reservation_time, "14:00")

  def test_blank_session_id(self) -> None:
    with self.assertRaises(InvalidRequestError):
      self.run_async(self._complete("  "))

  def test_unknown_session(self) -> None:
    with self.assertRaises(ResourceNotFoundError):
      self.run_async(self._complete("cs_test_missing"))


if __name__ == "__main__":
  absltest.main()
