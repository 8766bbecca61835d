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

"""Shared fixtures for the marketplace server tests."""

import asyncio
import datetime
import decimal
import os
import shutil
import tempfile
from typing import Any, Awaitable, List, Optional
import uuid

from absl.testing import absltest
from sqlalchemy import func
from sqlalchemy import select
from sqlalchemy.pool import NullPool

from marketplace_checkout import db
from marketplace_checkout.enums import OrderStatus
from marketplace_checkout.models import AddressSnapshot
from marketplace_checkout.services.checkout_items import OrderLine
from marketplace_checkout.services.checkout_items import SellerGroup
from marketplace_checkout.services.order_service import OrderService

ADDRESS = {
    "full_name": "Ada Lovelace",
    "phone_number": "555-0100",
    "street_address": "12 Analytical Way",
    "apt_number": "4B",
    "city": "Springfield",
    "state_province": "IL",
    "zip_code": "62701",
    "country": "US",
}

ADDRESS_SNAPSHOT = AddressSnapshot(
    street_address="12 Analytical Way",
    apt_number="4B",
    city="Springfield",
    state_province="IL",
    zip_code="62701",
    country="US",
)


class FakeClock:
  """A settable clock returning naive UTC datetimes."""

  def __init__(self, now: datetime.datetime):
    self.now = now

  def __call__(self) -> datetime.datetime:
    return self.now

  def advance(self, **kwargs: Any) -> None:
    self.now += datetime.timedelta(**kwargs)


class DatabaseTestCase(absltest.TestCase):
  """Runs each test against fresh temporary databases on a private loop."""

  def setUp(self) -> None:
    super().setUp()
    self.test_dir = tempfile.mkdtemp()
    self.loop = asyncio.new_event_loop()
    self.manager = db.DatabaseManager()
    self.run_async(
        self.manager.init_dbs(
            os.path.join(self.test_dir, "test_products.db"),
            os.path.join(self.test_dir, "test_transactions.db"),
            poolclass=NullPool,
        )
    )
    self.clock = FakeClock(datetime.datetime(2026, 6, 1, 12, 0, 0))

  def tearDown(self) -> None:
    self.run_async(self.manager.close())
    self.loop.close()
    shutil.rmtree(self.test_dir)
    super().tearDown()

  def run_async(self, awaitable: Awaitable[Any]) -> Any:
    return self.loop.run_until_complete(awaitable)

  def transactions_session(self):
    return self.manager.transactions_session_factory()

  def products_session(self):
    return self.manager.products_session_factory()

  async def seed_product(
      self,
      product_id: str,
      price: str,
      store_id: str,
      store_name: str,
      stock: int = 0,
      name: Optional[str] = None,
      image_url: Optional[str] = None,
  ) -> None:
    async with self.products_session() as session:
      session.add(
          db.Product(
              id=product_id,
              name=name or f"Product {product_id}",
              price=decimal.Decimal(price),
              image_url=image_url,
              store_id=store_id,
              store_name=store_name,
          )
      )
      await session.commit()
    async with self.transactions_session() as session:
      session.add(db.Inventory(product_id=product_id, quantity=stock))
      await session.commit()

  async def seed_address(self, customer_id: str, **overrides: Any) -> str:
    async with self.transactions_session() as session:
      address_id = await db.save_customer_address(
          session, customer_id, dict(ADDRESS, **overrides)
      )
      await session.commit()
    return address_id

  async def seed_order(
      self,
      status: OrderStatus,
      lines: List[OrderLine],
      store_id: str = "store-x",
      customer_id: Optional[str] = "customer-1",
      stripe_session_id: Optional[str] = None,
      order_date: Optional[datetime.datetime] = None,
  ) -> str:
    """Inserts one committed order and returns its id."""
    async with self.transactions_session() as session:
      order = await OrderService(session, self.clock).create_order(
          SellerGroup(store_id=store_id, store_name="Store", items=lines),
          ADDRESS_SNAPSHOT,
          status,
          stripe_session_id or f"cs_seed_{uuid.uuid4().hex}",
          customer_id=customer_id,
      )
      if order_date is not None:
        order.order_date = order_date
      await session.commit()
      return order.id

  async def get_inventory(self, product_id: str) -> Optional[int]:
    async with self.transactions_session() as session:
      return await db.get_inventory(session, product_id)

  async def get_order(self, order_id: str) -> Optional[db.Order]:
    async with self.transactions_session() as session:
      return await db.get_order(session, order_id)

  async def get_orders_by_session(self, stripe_session_id: str) -> List[db.Order]:
    async with self.transactions_session() as session:
      return await db.get_orders_by_session(session, stripe_session_id)

  async def count_orders(self) -> int:
    async with self.transactions_session() as session:
      result = await session.execute(select(func.count(db.Order.id)))
      return result.scalar_one()


def line(
    product_id: str,
    quantity: int,
    price: str,
    **kwargs: Any,
) -> OrderLine:
  return OrderLine(
      product_id=product_id,
      product_name=f"Product {product_id}",
      quantity=quantity,
      price=decimal.Decimal(price),
      **kwargs,
  )
