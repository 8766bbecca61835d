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

"""Stock operation ledger.

Each stock movement is recorded as a ledger row holding the quantity before
and after the move. The inventory row is locked, adjusted and written back in
the same transaction as the ledger insert, so concurrent moves on one product
never lose an update and the stock count never goes negative.

A stock-out linked to an order then advances that order to `shipped` when it
is `pending` or `processing`. That step runs after the stock movement has been
committed; if it fails the movement stands and the failure is logged.
"""

import collections
import datetime
import logging
from typing import Callable, Dict, Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_checkout import db
from marketplace_checkout.enums import OrderStatus
from marketplace_checkout.enums import StockOperationType
from marketplace_checkout.exceptions import InsufficientStockError
from marketplace_checkout.exceptions import InvalidRequestError
from marketplace_checkout.exceptions import ResourceNotFoundError
from marketplace_checkout.models import StockOperationList
from marketplace_checkout.models import StockOperationRequest
from marketplace_checkout.models import StockOperationResult
from marketplace_checkout.models import StockOperationView
from marketplace_checkout.services.order_service import OrderService

logger = logging.getLogger(__name__)

_SHIPPABLE_STATUSES = frozenset({
    OrderStatus.PENDING.value,
    OrderStatus.PROCESSING.value,
})

MAX_PAGE_SIZE = 500


class StockOperationService:
  """Records stock movements and applies them to inventory."""

  def __init__(
      self,
      transactions_session: AsyncSession,
      products_session: AsyncSession,
      clock: Optional[Callable[[], datetime.datetime]] = None,
  ):
    self.session = transactions_session
    self.products_session = products_session
    self.clock = clock or db.utcnow

  async def create_stock_operation(
      self, request: StockOperationRequest, performed_by: str
  ) -> StockOperationResult:
    """Moves stock for a product and records the movement.

    Args:
      request: The product, direction, quantity, reason and optional order.
      performed_by: The staff member performing the operation.

    Returns:
      The ledger entry and what happened to the linked order.

    Raises:
      InvalidRequestError: If the quantity is not a positive integer.
      ResourceNotFoundError: If the product does not exist.
      InsufficientStockError: If a stock-out exceeds the stock on hand.
    """
    if request.quantity <= 0:
      raise InvalidRequestError("Quantity must be a positive integer")

    try:
      product = await db.get_product(self.products_session, request.product_id)
    finally:
      await self.products_session.rollback()
    if not product:
      raise ResourceNotFoundError("Product not found")

    is_out = request.type == StockOperationType.OUT
    try:
      inventory = await db.lock_inventory(self.session, request.product_id)
      previous_quantity = inventory.quantity or 0
      if is_out:
        if request.quantity > previous_quantity:
          raise InsufficientStockError(
              f"Insufficient stock. Current: {previous_quantity}, Requested:"
              f" {request.quantity}"
          )
        new_quantity = previous_quantity - request.quantity
      else:
        new_quantity = previous_quantity + request.quantity

      operation = db.StockOperation(
          id=str(uuid.uuid4()),
          product_id=request.product_id,
          type=request.type.value,
          quantity=request.quantity,
          reason=request.reason,
          order_id=request.order_id if is_out else None,
          previous_quantity=previous_quantity,
          new_quantity=new_quantity,
          performed_by=performed_by,
          performed_at=self.clock(),
      )
      self.session.add(operation)
      inventory.quantity = new_quantity
      await self.session.commit()
    except Exception:
      await self.session.rollback()
      raise

    logger.info(
        "Stock %s of %d for product %s by %s: %d -> %d",
        operation.type,
        operation.quantity,
        operation.product_id,
        performed_by,
        previous_quantity,
        new_quantity,
    )
    result = StockOperationResult(
        operation=StockOperationView.model_validate(operation)
    )
    if is_out and request.order_id:
      await self._apply_to_order(request.order_id, operation.id, result)
    return result

  async def _apply_to_order(
      self, order_id: str, operation_id: str, result: StockOperationResult
  ) -> None:
    """Advances the linked order and reports whether it is fulfilled."""
    try:
      order = await db.get_order(self.session, order_id, for_update=True)
      if order is None:
        logger.warning(
            "Stock operation %s names unknown order %s", operation_id, order_id
        )
        await self.session.rollback()
        return

      updated = False
      if order.status in _SHIPPABLE_STATUSES:
        updated = await OrderService(self.session, self.clock).transition(
            order, OrderStatus.SHIPPED
        )

      ordered: Dict[str, int] = collections.defaultdict(int)
      for item in order.items:
        ordered[item.product_id] += item.quantity
      shipped = await db.get_stock_out_quantities(self.session, order_id)
      fulfilled = bool(ordered) and all(
          shipped.get(product_id, 0) >= quantity
          for product_id, quantity in ordered.items()
      )
      status = order.status
      await self.session.commit()
    except Exception:  # pylint: disable=broad-exception-caught
      await self.session.rollback()
      logger.exception(
          "Failed to update order %s after stock operation %s",
          order_id,
          operation_id,
      )
      return

    result.order_updated = updated
    result.order_status = status
    result.order_fulfilled = fulfilled

  async def list_stock_operations(
      self,
      product_id: Optional[str] = None,
      operation_type: Optional[StockOperationType] = None,
      performed_by: Optional[str] = None,
      order_id: Optional[str] = None,
      limit: Optional[int] = 50,
      offset: int = 0,
  ) -> StockOperationList:
    """Lists ledger entries, newest first, with the total match count."""
    if limit is not None and not 0 < limit <= MAX_PAGE_SIZE:
      raise InvalidRequestError(
          f"Limit must be between 1 and {MAX_PAGE_SIZE}"
      )
    if offset < 0:
      raise InvalidRequestError("Offset must not be negative")
    try:
      operations, total = await db.list_stock_operations(
          self.session,
          product_id=product_id,
          operation_type=operation_type.value if operation_type else None,
          performed_by=performed_by,
          order_id=order_id,
          limit=limit,
          offset=offset,
      )
      return StockOperationList(
          operations=[StockOperationView.model_validate(o) for o in operations],
          total=total,
      )
    finally:
      await self.session.rollback()
