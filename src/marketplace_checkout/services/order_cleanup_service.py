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

"""Periodic cancellation of abandoned pending orders.

The sweep cancels orders that have sat in `pending` longer than the timeout.
Each order is cancelled in its own transaction together with its activity log
entry, so one failing order never blocks the rest. A sweep requested while
another is in flight is dropped, not queued.
"""

import asyncio
import datetime
import logging
import time
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel
from sqlalchemy.orm import sessionmaker

from marketplace_checkout import db
from marketplace_checkout.enums import OrderStatus
from marketplace_checkout.services.order_service import OrderService

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_HOURS = 24
DEFAULT_INTERVAL_HOURS = 6
SYSTEM_LOG_TYPE = "system"
SYSTEM_USER_NAME = "System"


class CleanupStats(BaseModel):
  cancelled_count: int
  duration: float  # Seconds.
  timestamp: datetime.datetime


class OrderCleanupService:
  """Cancels `pending` orders older than a timeout, on a schedule."""

  def __init__(
      self,
      session_factory: sessionmaker,
      timeout_hours: float = DEFAULT_TIMEOUT_HOURS,
      clock: Optional[Callable[[], datetime.datetime]] = None,
  ):
    self.session_factory = session_factory
    self.timeout_hours = timeout_hours
    self.clock = clock or db.utcnow
    self._lock = asyncio.Lock()
    self._task: Optional[asyncio.Task] = None

  @property
  def is_running(self) -> bool:
    return self._lock.locked()

  async def cancel_pending_orders(
      self, timeout_hours: Optional[float] = None
  ) -> CleanupStats:
    """Runs one sweep.

    Args:
      timeout_hours: Overrides the configured timeout for this sweep.

    Returns:
      How many orders were cancelled and how long the sweep took. A sweep
      skipped because another is running reports zero cancellations.
    """
    if self._lock.locked():
      logger.info("Order cleanup already in progress, skipping")
      return CleanupStats(
          cancelled_count=0, duration=0.0, timestamp=self.clock()
      )

    hours = self.timeout_hours if timeout_hours is None else timeout_hours
    async with self._lock:
      started = time.monotonic()
      try:
        cancelled = await self._sweep(hours)
      except Exception as e:  # pylint: disable=broad-exception-caught
        logger.exception("Order cleanup failed")
        await self._log_failure(e)
        cancelled = 0
      duration = time.monotonic() - started

    if cancelled:
      logger.info(
          "Order cleanup cancelled %d orders in %.3fs", cancelled, duration
      )
    return CleanupStats(
        cancelled_count=cancelled, duration=duration, timestamp=self.clock()
    )

  async def _sweep(self, timeout_hours: float) -> int:
    cutoff = self.clock() - datetime.timedelta(hours=timeout_hours)
    async with self.session_factory() as session:
      try:
        orders = await db.get_pending_orders_older_than(session, cutoff)
        candidates = [order.id for order in orders]
      finally:
        await session.rollback()

    if not candidates:
      return 0
    logger.info(
        "Found %d pending orders older than %s hours",
        len(candidates),
        timeout_hours,
    )
    cancelled = 0
    for order_id in candidates:
      if await self._cancel_order(order_id, cutoff, timeout_hours):
        cancelled += 1
    return cancelled

  async def _cancel_order(
      self, order_id: str, cutoff: datetime.datetime, timeout_hours: float
  ) -> bool:
    """Cancels one order if it is still pending past the cutoff."""
    async with self.session_factory() as session:
      try:
        order = await db.get_order(session, order_id, for_update=True)
        if (
            order is None
            or order.status != OrderStatus.PENDING.value
            or order.order_date >= cutoff
        ):
          await session.rollback()
          return False

        await OrderService(session, self.clock).transition(
            order, OrderStatus.CANCELLED
        )
        details: Dict[str, Any] = {
            "order_id": order.id,
            "customer_id": order.customer_id,
            "store_id": order.store_id,
            "cancelled_at": self.clock().isoformat(),
            "reason": "timeout",
        }
        await db.log_activity(
            session,
            SYSTEM_LOG_TYPE,
            f"Order {order.id} automatically cancelled (pending for more"
            f" than {timeout_hours:g} hours)",
            user_name=SYSTEM_USER_NAME,
            details=details,
        )
        await session.commit()
        return True
      except Exception:  # pylint: disable=broad-exception-caught
        await session.rollback()
        logger.exception("Failed to cancel order %s", order_id)
        return False

  async def _log_failure(self, error: Exception) -> None:
    try:
      async with self.session_factory() as session:
        await db.log_activity(
            session,
            SYSTEM_LOG_TYPE,
            f"Order cleanup failed: {error}",
            user_name=SYSTEM_USER_NAME,
            details={
                "error": str(error),
                "cleanup_time": self.clock().isoformat(),
            },
        )
        await session.commit()
    except Exception:  # pylint: disable=broad-exception-caught
      logger.exception("Failed to record order cleanup failure")

  def start(self, interval_hours: float = DEFAULT_INTERVAL_HOURS) -> None:
    """Starts the schedule: one sweep now, then one every interval.

    Must be called from a running event loop.
    """
    if self._task is not None and not self._task.done():
      logger.info("Order cleanup scheduler is already running")
      return
    self._task = asyncio.get_running_loop().create_task(
        self._run(interval_hours * 3600)
    )
    logger.info(
        "Order cleanup scheduler started (every %s hours, timeout %s hours)",
        interval_hours,
        self.timeout_hours,
    )

  async def _run(self, interval_seconds: float) -> None:
    while True:
      await self.cancel_pending_orders()
      await asyncio.sleep(interval_seconds)

  async def stop(self) -> None:
    """Stops the schedule, waiting for the current sweep to unwind."""
    task, self._task = self._task, None
    if task is None:
      return
    task.cancel()
    try:
      await task
    except asyncio.CancelledError:
      pass
    logger.info("Order cleanup scheduler stopped")

  def get_status(self) -> Dict[str, bool]:
    return {
        "is_running": self.is_running,
        "has_scheduler": self._task is not None and not self._task.done(),
    }
