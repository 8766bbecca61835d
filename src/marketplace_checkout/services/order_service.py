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

"""Order state machine and mutation layer.

All order status changes go through `OrderService.transition`, which enforces
the transition table below and stamps the shipped/delivered dates. Staged
(`pending_payment`) orders are never cancelled by the sweep; when their payment
session expires they are purged outright.

    pending_payment -> pending | processing | cancelled
    pending         -> processing | shipped | cancelled
    processing      -> shipped | cancelled
    shipped         -> delivered | cancelled
    delivered       -> return_processing
    return_processing -> returned
"""

import datetime
import decimal
import logging
from typing import Callable, Dict, FrozenSet, List, Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_checkout import db
from marketplace_checkout.enums import OrderStatus
from marketplace_checkout.enums import RefundStatus
from marketplace_checkout.exceptions import ForbiddenError
from marketplace_checkout.exceptions import InvalidRequestError
from marketplace_checkout.exceptions import InvalidStatusTransitionError
from marketplace_checkout.exceptions import ResourceNotFoundError
from marketplace_checkout.models import AddressSnapshot
from marketplace_checkout.models import GuestContact
from marketplace_checkout.models import OrderView
from marketplace_checkout.models import RefundRequest
from marketplace_checkout.models import RefundView
from marketplace_checkout.services.checkout_items import SellerGroup
from marketplace_checkout.services.reservation_service import reservation_slots
from marketplace_checkout.services.reservation_service import ReservationService

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING_PAYMENT: frozenset({
        OrderStatus.PENDING,
        OrderStatus.PROCESSING,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PENDING: frozenset({
        OrderStatus.PROCESSING,
        OrderStatus.SHIPPED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PROCESSING: frozenset({
        OrderStatus.SHIPPED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.SHIPPED: frozenset({
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURN_PROCESSING}),
    OrderStatus.RETURN_PROCESSING: frozenset({OrderStatus.RETURNED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.RETURNED: frozenset(),
}


def parse_status(value: Optional[str]) -> OrderStatus:
  """Parses a status string, rejecting anything outside the state machine."""
  try:
    return OrderStatus(value)
  except ValueError as e:
    raise InvalidRequestError(f"Invalid order status: {value}") from e


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
  """Re-entering the current status is always allowed (and a no-op)."""
  return current == target or target in ALLOWED_TRANSITIONS[current]


def payment_method_tag(stripe_session_id: str) -> str:
  return f"stripe_checkout:{stripe_session_id}"


class OrderService:
  """Creates orders and applies status, tracking and refund mutations.

  Write methods that take an order id run in their own transaction and commit.
  `create_order` and `transition` operate inside the caller's transaction.
  """

  def __init__(
      self,
      transactions_session: AsyncSession,
      clock: Optional[Callable[[], datetime.datetime]] = None,
  ):
    self.session = transactions_session
    self.clock = clock or db.utcnow

  async def create_order(
      self,
      group: SellerGroup,
      address: AddressSnapshot,
      status: OrderStatus,
      stripe_session_id: str,
      customer_id: Optional[str] = None,
      guest: Optional[GuestContact] = None,
      payment_intent_id: Optional[str] = None,
      check_reservations: bool = True,
  ) -> db.Order:
    """Adds one seller's order to the current transaction.

    The seller's reservation slots are checked against every non-cancelled
    order visible to this transaction, including orders added earlier in it.

    Args:
      group: The seller group to snapshot.
      address: The shipping address snapshot.
      status: The initial status.
      stripe_session_id: The payment session the order is bound to.
      customer_id: The owning customer; ignored for guest orders.
      guest: Guest contact fields, for orders without an account.
      payment_intent_id: The payment intent, once known.
      check_reservations: Whether to reject already booked reservation
        slots. Paid sessions are finalized without the check.

    Returns:
      The new (flushed, uncommitted) order.

    Raises:
      ReservationConflictError: If a reservation slot is already booked.
    """
    if check_reservations:
      await ReservationService(self.session).ensure_available(
          reservation_slots([group])
      )

    now = self.clock()
    order = db.Order(
        id=str(uuid.uuid4()),
        customer_id=None if guest else customer_id,
        store_id=group.store_id,
        store_name=group.store_name,
        total_amount=group.total,
        status=status.value,
        shipping_street_address=address.street_address,
        shipping_apt_number=address.apt_number,
        shipping_city=address.city,
        shipping_state_province=address.state_province,
        shipping_zip_code=address.zip_code,
        shipping_country=address.country,
        payment_method=payment_method_tag(stripe_session_id),
        stripe_session_id=stripe_session_id,
        payment_intent_id=payment_intent_id,
        order_date=now,
        guest_email=guest.email if guest else None,
        guest_full_name=guest.full_name if guest else None,
        guest_phone_number=guest.phone_number if guest else None,
        created_at=now,
        updated_at=now,
    )
    order.items = [
        db.OrderItem(
            id=str(uuid.uuid4()),
            position=position,
            product_id=line.product_id,
            product_name=line.product_name,
            product_image=line.product_image,
            quantity=line.quantity,
            price=line.price,
            subtotal=line.subtotal,
            is_reservation=line.is_reservation,
            reservation_date=line.reservation_date,
            reservation_time=line.reservation_time,
            reservation_notes=line.reservation_notes,
            created_at=now,
        )
        for position, line in enumerate(group.items)
    ]
    self.session.add(order)
    await self.session.flush()
    return order

  async def transition(self, order: db.Order, target: OrderStatus) -> bool:
    """Moves an order to a new status within the current transaction.

    Args:
      order: The order, loaded in this session.
      target: The requested status.

    Returns:
      True if the status changed, False if the order was already there.

    Raises:
      InvalidStatusTransitionError: If the move is not allowed.
    """
    current = parse_status(order.status)
    if not can_transition(current, target):
      raise InvalidStatusTransitionError(
          f"Cannot change order status from {current.value} to"
          f" {target.value}."
      )

    now = self.clock()
    if target == OrderStatus.SHIPPED and order.shipped_date is None:
      order.shipped_date = now
    if target == OrderStatus.DELIVERED and order.delivered_date is None:
      order.delivered_date = now

    if current == target:
      return False
    order.status = target.value
    order.updated_at = now
    logger.info(
        "Order %s: %s -> %s", order.id, current.value, target.value
    )
    return True

  async def _get_order_or_raise(
      self, order_id: str, for_update: bool = False
  ) -> db.Order:
    order = await db.get_order(self.session, order_id, for_update=for_update)
    if not order:
      raise ResourceNotFoundError("Order not found")
    return order

  async def to_view(self, order: db.Order) -> OrderView:
    view = OrderView.model_validate(order)
    view.total_refunded = await db.get_total_refunded(self.session, order.id)
    return view

  async def get_order(
      self, order_id: str, customer_id: Optional[str] = None
  ) -> OrderView:
    """Reads an order; when a customer is given it must own the order."""
    try:
      order = await self._get_order_or_raise(order_id)
      if customer_id is not None and order.customer_id != customer_id:
        raise ForbiddenError("Order does not belong to the user.")
      return await self.to_view(order)
    finally:
      await self.session.rollback()

  async def get_orders_by_session(self, stripe_session_id: str) -> List[str]:
    try:
      orders = await db.get_orders_by_session(self.session, stripe_session_id)
      return [o.id for o in orders]
    finally:
      await self.session.rollback()

  async def update_status(
      self,
      order_id: str,
      status: Optional[str] = None,
      tracking_number: Optional[str] = None,
  ) -> OrderView:
    """Applies a staff status change and/or tracking number.

    Args:
      order_id: The order to update.
      status: The target status, if changing it.
      tracking_number: A tracking number to attach, if any.

    Returns:
      The updated order.

    Raises:
      InvalidRequestError: If nothing to update or the status is unknown.
      ResourceNotFoundError: If the order does not exist.
      InvalidStatusTransitionError: If the move is not allowed.
    """
    if status is None and tracking_number is None:
      raise InvalidRequestError("Status or tracking number is required.")
    target = parse_status(status) if status is not None else None

    try:
      order = await self._get_order_or_raise(order_id, for_update=True)
      if target is not None:
        await self.transition(order, target)
      if tracking_number is not None:
        order.tracking_number = tracking_number.strip() or None
        order.updated_at = self.clock()
      await self.session.commit()
    except Exception:
      await self.session.rollback()
      raise

    view = await self.to_view(order)
    await self.session.rollback()
    return view

  async def purge_staged_orders(self, stripe_session_id: str) -> int:
    """Deletes the `pending_payment` orders of a payment session."""
    try:
      count = await db.delete_staged_orders_by_session(
          self.session, stripe_session_id
      )
      await self.session.commit()
    except Exception:
      await self.session.rollback()
      raise
    if count:
      logger.info(
          "Purged %d staged orders for session %s", count, stripe_session_id
      )
    return count

  async def record_refund(
      self,
      order_id: str,
      request: RefundRequest,
      refunded_by: Optional[str] = None,
  ) -> RefundView:
    """Records a refund issued against an order.

    Succeeded refunds may not exceed the order total minus what has already
    been refunded.
    """
    if request.amount <= 0:
      raise InvalidRequestError("Refund amount must be greater than zero.")
    try:
      refund_status = RefundStatus(request.status)
    except ValueError as e:
      raise InvalidRequestError(
          f"Invalid refund status: {request.status}"
      ) from e

    try:
      order = await self._get_order_or_raise(order_id, for_update=True)
      if refund_status == RefundStatus.SUCCEEDED:
        refunded = await db.get_total_refunded(self.session, order_id)
        refundable = decimal.Decimal(str(order.total_amount)) - refunded
        if request.amount > refundable:
          raise InvalidRequestError(
              f"Refund amount exceeds the refundable balance of {refundable}."
          )
      refund = await db.save_refund(
          self.session,
          order_id=order_id,
          refund_id=request.refund_id or f"re_manual_{uuid.uuid4().hex[:16]}",
          amount=request.amount,
          status=refund_status.value,
          payment_intent_id=request.payment_intent_id
          or order.payment_intent_id,
          currency=request.currency,
          reason=request.reason,
          refunded_by=refunded_by,
      )
      await self.session.commit()
    except Exception:
      await self.session.rollback()
      raise

    logger.info(
        "Recorded %s refund of %s for order %s",
        refund_status.value,
        request.amount,
        order_id,
    )
    return RefundView.model_validate(refund)
