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

"""Tests for the stock operation ledger."""

import asyncio
from typing import Optional

from absl.testing import absltest

from marketplace_checkout import testing_utils
from marketplace_checkout.enums import OrderStatus
from marketplace_checkout.enums import StockOperationType
from marketplace_checkout.exceptions import InsufficientStockError
from marketplace_checkout.exceptions import InvalidRequestError
from marketplace_checkout.exceptions import ResourceNotFoundError
from marketplace_checkout.models import StockOperationRequest
from marketplace_checkout.services.stock_operation_service import StockOperationService


class StockOperationServiceTest(testing_utils.DatabaseTestCase):

  def setUp(self) -> None:
    super().setUp()
    self.run_async(
        self.seed_product("product-a", "10.00", "store-x", "Store X", stock=5)
    )
    self.run_async(
        self.seed_product("product-b", "4.00", "store-x", "Store X", stock=10)
    )

  async def _move(
      self,
      product_id: str,
      operation_type: StockOperationType,
      quantity: int,
      order_id: Optional[str] = None,
      performed_by: str = "staff-1",
  ):
    async with self.transactions_session() as transactions, (
        self.products_session()
    ) as products:
      service = StockOperationService(transactions, products, clock=self.clock)
      return await service.create_stock_operation(
          StockOperationRequest(
              product_id=product_id,
              type=operation_type,
              quantity=quantity,
              reason="test",
              order_id=order_id,
          ),
          performed_by,
      )

  async def _list(self, **kwargs):
    async with self.transactions_session() as transactions, (
        self.products_session()
    ) as products:
      return await StockOperationService(
          transactions, products
      ).list_stock_operations(**kwargs)

  def _seed_order(self, status: OrderStatus) -> str:
    return self.run_async(
        self.seed_order(
            status,
            [
                testing_utils.line("product-a", 2, "10.00"),
                testing_utils.line("product-b", 3, "4.00"),
            ],
        )
    )

  def test_stock_in_and_out(self) -> None:
    result = self.run_async(self._move("product-a", StockOperationType.IN, 3))
    self.assertEqual(result.operation.previous_quantity, 5)
    self.assertEqual(result.operation.new_quantity, 8)
    self.assertEqual(result.operation.performed_at, self.clock())

    result = self.run_async(self._move("product-a", StockOperationType.OUT, 8))
    self.assertEqual(result.operation.new_quantity, 0)
    self.assertEqual(self.run_async(self.get_inventory("product-a")), 0)

  def test_insufficient_stock_leaves_quantity(self) -> None:
    with self.assertRaisesRegex(
        InsufficientStockError, r"Insufficient stock. Current: 5, Requested: 6"
    ):
      self.run_async(self._move("product-a", StockOperationType.OUT, 6))

    self.assertEqual(self.run_async(self.get_inventory("product-a")), 5)
    self.assertEqual(self.run_async(self._list()).total, 0)

  def test_quantity_must_be_positive(self) -> None:
    with self.assertRaisesRegex(InvalidRequestError, "positive integer"):
      self.run_async(self._move("product-a", StockOperationType.IN, 0))

  def test_unknown_product(self) -> None:
    with self.assertRaisesRegex(ResourceNotFoundError, "Product not found"):
      self.run_async(self._move("missing", StockOperationType.IN, 1))

  def test_stock_out_ships_processing_order(self) -> None:
    order_id = self._seed_order(OrderStatus.PROCESSING)

    result = self.run_async(
        self._move("product-a", StockOperationType.OUT, 2, order_id=order_id)
    )

    self.assertTrue(result.order_updated)
    self.assertEqual(result.order_status, "shipped")
    self.assertFalse(result.order_fulfilled)
    order = self.run_async(self.get_order(order_id))
    self.assertEqual(order.status, "shipped")
    self.assertEqual(order.shipped_date, self.clock())
    shipped_date = order.shipped_date

    self.clock.advance(hours=1)
    result = self.run_async(
        self._move("product-b", StockOperationType.OUT, 3, order_id=order_id)
    )

    self.assertFalse(result.order_updated)
    self.assertEqual(result.order_status, "shipped")
    self.assertTrue(result.order_fulfilled)
    order = self.run_async(self.get_order(order_id))
    self.assertEqual(order.shipped_date, shipped_date)

  def test_repeated_stock_out_keeps_shipped(self) -> None:
    order_id = self._seed_order(OrderStatus.PROCESSING)
    self.run_async(
        self._move("product-a", StockOperationType.OUT, 2, order_id=order_id)
    )
    shipped_date = self.run_async(self.get_order(order_id)).shipped_date
    self.clock.advance(hours=1)

    result = self.run_async(
        self._move("product-a", StockOperationType.OUT, 2, order_id=order_id)
    )

    self.assertFalse(result.order_updated)
    order = self.run_async(self.get_order(order_id))
    self.assertEqual(order.status, "shipped")
    self.assertEqual(order.shipped_date, shipped_date)
    self.assertEqual(self.run_async(self.get_inventory("product-a")), 1)

  def test_stock_out_ships_pending_order(self) -> None:
    order_id = self._seed_order(OrderStatus.PENDING)

    result = self.run_async(
        self._move("product-a", StockOperationType.OUT, 2, order_id=order_id)
    )

    self.assertTrue(result.order_updated)
    self.assertEqual(result.order_status, "shipped")

  def test_stock_out_leaves_cancelled_order(self) -> None:
    order_id = self._seed_order(OrderStatus.CANCELLED)

    result = self.run_async(
        self._move("product-a", StockOperationType.OUT, 2, order_id=order_id)
    )

    self.assertFalse(result.order_updated)
    self.assertEqual(result.order_status, "cancelled")
    self.assertEqual(self.run_async(self.get_inventory("product-a")), 3)

  def test_stock_out_for_unknown_order_still_moves_stock(self) -> None:
    result = self.run_async(
        self._move("product-a", StockOperationType.OUT, 1, order_id="missing")
    )

    self.assertFalse(result.order_updated)
    self.assertIsNone(result.order_status)
    self.assertEqual(result.operation.order_id, "missing")
    self.assertEqual(self.run_async(self.get_inventory("product-a")), 4)

  def test_stock_in_ignores_order(self) -> None:
    order_id = self._seed_order(OrderStatus.PROCESSING)

    result = self.run_async(
        self._move("product-a", StockOperationType.IN, 2, order_id=order_id)
    )

    self.assertIsNone(result.operation.order_id)
    self.assertIsNone(result.order_status)
    self.assertEqual(
        self.run_async(self.get_order(order_id)).status, "processing"
    )

  def test_concurrent_stock_outs_never_oversell(self) -> None:
    async def race():
      return await asyncio.gather(
          *(self._move("product-a", StockOperationType.OUT, 2) for _ in range(3)),
          return_exceptions=True,
      )

    results = self.run_async(race())

    failures = [r for r in results if isinstance(r, InsufficientStockError)]
    self.assertLen(failures, 1)
    self.assertEqual(self.run_async(self.get_inventory("product-a")), 1)
    self.assertEqual(self.run_async(self._list()).total, 2)

  def test_list_filters_and_pages(self) -> None:
    self.run_async(self._move("product-a", StockOperationType.IN, 1))
    self.clock.advance(minutes=1)
    self.run_async(
        self._move("product-b", StockOperationType.OUT, 1, performed_by="bob")
    )
    self.clock.advance(minutes=1)
    self.run_async(self._move("product-a", StockOperationType.OUT, 1))

    everything = self.run_async(self._list())
    self.assertEqual(everything.total, 3)
    self.assertEqual(
        [o.product_id for o in everything.operations],
        ["product-a", "product-b", "product-a"],
    )
    self.assertEqual(everything.operations[0].type, "out")

    by_product = self.run_async(self._list(product_id="product-a"))
    self.assertEqual(by_product.total, 2)

    outs = self.run_async(
        self._list(operation_type=StockOperationType.OUT, limit=1)
    )
    self.assertEqual(outs.total, 2)
    self.assertLen(outs.operations, 1)

    by_staff = self.run_async(self._list(performed_by="bob"))
    self.assertEqual([o.product_id for o in by_staff.operations], ["product-b"])

    second_page = self.run_async(self._list(limit=2, offset=2))
    self.assertEqual(second_page.total, 3)
    self.assertLen(second_page.operations, 1)

    unbounded = self.run_async(self._list(limit=None, offset=1))
    self.assertEqual(
        [o.product_id for o in unbounded.operations],
        ["product-b", "product-a"],
    )

  def test_list_rejects_bad_paging(self) -> None:
    with self.assertRaises(InvalidRequestError):
      self.run_async(self._list(limit=0))
    with self.assertRaises(InvalidRequestError):
      self.run_async(self._list(offset=-1))


if __name__ == "__main__":
  absltest.main()
