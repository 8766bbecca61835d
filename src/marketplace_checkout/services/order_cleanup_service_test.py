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

"""Tests for the pending order cleanup sweep."""

import asyncio
import datetime

from absl.testing import absltest

from marketplace_checkout import db
from marketplace_checkout import testing_utils
from marketplace_checkout.enums import OrderStatus
from marketplace_checkout.services.order_cleanup_service import OrderCleanupService


class OrderCleanupServiceTest(testing_utils.DatabaseTestCase):

  def setUp(self) -> None:
    super().setUp()
    self.cleanup = OrderCleanupService(
        self.manager.transactions_session_factory,
        timeout_hours=24,
        clock=self.clock,
    )

  def _seed(self, status: OrderStatus, age: datetime.timedelta) -> str:
    return self.run_async(
        self.seed_order(
            status,
            [testing_utils.line("product-a", 1, "10.00")],
            order_date=self.clock() - age,
        )
    )

  async def _logs(self):
    async with self.transactions_session() as session:
      return await db.get_activity_logs(session, "system")

  def test_cancels_only_stale_pending_orders(self) -> None:
    stale = self._seed(OrderStatus.PENDING, datetime.timedelta(hours=25))
    fresh = self._seed(OrderStatus.PENDING, datetime.timedelta(hours=23))
    stale_processing = self._seed(
        OrderStatus.PROCESSING, datetime.timedelta(hours=48)
    )
    stale_staged = self._seed(
        OrderStatus.PENDING_PAYMENT, datetime.timedelta(hours=48)
    )

    stats = self.run_async(self.cleanup.cancel_pending_orders())

    self.assertEqual(stats.cancelled_count, 1)
    self.assertEqual(stats.timestamp, self.clock())
    self.assertGreaterEqual(stats.duration, 0)
    statuses = {
        order_id: self.run_async(self.get_order(order_id)).status
        for order_id in (stale, fresh, stale_processing, stale_staged)
    }
    self.assertEqual(
        statuses,
        {
            stale: "cancelled",
            fresh: "pending",
            stale_processing: "processing",
            stale_staged: "pending_payment",
        },
    )

  def test_records_activity_log(self) -> None:
    stale = self._seed(OrderStatus.PENDING, datetime.timedelta(days=3))

    self.run_async(self.cleanup.cancel_pending_orders())

    logs = self.run_async(self._logs())
    self.assertLen(logs, 1)
    self.assertEqual(
        logs[0].message,
        f"Order {stale} automatically cancelled (pending for more than 24"
        " hours)",
    )
    self.assertEqual(logs[0].user_name, "System")
    self.assertEqual(logs[0].details["order_id"], stale)
    self.assertEqual(logs[0].details["reason"], "timeout")
    self.assertEqual(logs[0].details["customer_id"], "customer-1")

  def test_timeout_override(self) -> None:
    order_id = self._seed(OrderStatus.PENDING, datetime.timedelta(hours=2))

    stats = self.run_async(self.cleanup.cancel_pending_orders(timeout_hours=1))

    self.assertEqual(stats.cancelled_count, 1)
    self.assertEqual(
        self.run_async(self.get_order(order_id)).status, "cancelled"
    )

  def test_second_sweep_finds_nothing(self) -> None:
    self._seed(OrderStatus.PENDING, datetime.timedelta(days=2))

    self.assertEqual(
        self.run_async(self.cleanup.cancel_pending_orders()).cancelled_count, 1
    )
    self.assertEqual(
        self.run_async(self.cleanup.cancel_pending_orders()).cancelled_count, 0
    )

  def test_overlapping_sweep_is_skipped(self) -> None:
    self._seed(OrderStatus.PENDING, datetime.timedelta(days=2))

    async def overlap():
      async with self.cleanup._lock:
        self.assertTrue(self.cleanup.is_running)
        skipped = await self.cleanup.cancel_pending_orders()
      return skipped

    skipped = self.run_async(overlap())

    self.assertEqual(skipped.cancelled_count, 0)
    self.assertEqual(
        self.run_async(self.cleanup.cancel_pending_orders()).cancelled_count, 1
    )

  def test_concurrent_sweeps_cancel_once(self) -> None:
    for _ in range(3):
      self._seed(OrderStatus.PENDING, datetime.timedelta(days=2))

    async def race():
      return await asyncio.gather(
          self.cleanup.cancel_pending_orders(),
          self.cleanup.cancel_pending_orders(),
      )

    first, second = self.run_async(race())

    self.assertEqual(first.cancelled_count + second.cancelled_count, 3)
    self.assertLen(self.run_async(self._logs()), 3)

  def test_scheduler_start_and_stop(self) -> None:
    stale = self._seed(OrderStatus.PENDING, datetime.timedelta(days=2))

    async def run_scheduler():
      self.cleanup.start(interval_hours=1)
      status = self.cleanup.get_status()
      # Let the first sweep run.
      for _ in range(200):
        await asyncio.sleep(0.01)
        order = await self.get_order(stale)
        if order.status == "cancelled":
          break
      await self.cleanup.stop()
      return status

    status = self.run_async(run_scheduler())

    self.assertTrue(status["has_scheduler"])
    self.assertEqual(self.run_async(self.get_order(stale)).status, "cancelled")
    self.assertEqual(
        self.cleanup.get_status(),
        {"is_running": False, "has_scheduler": False},
    )


if __name__ == "__main__":
  absltest.main()
