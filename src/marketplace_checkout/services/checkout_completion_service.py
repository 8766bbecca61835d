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

"""Finalization of paid payment sessions into committed orders.

`CheckoutCompletionService.finalize_session` is the single entry point for both
the client confirmation call and the processor webhook. It is keyed by the
payment session id and is safe to call any number of times, concurrently:

- Orders already bound to the session are refreshed (payment tag, session
  binding, payment intent, order date, shipping snapshot) and their ids
  returned. Staged orders are confirmed (`pending_payment` -> `processing`);
  every other status is left as it is.
- Otherwise one `processing` order per seller is created from the session's
  line items. The existence check is repeated inside the write transaction and
  the (session id, store id) unique constraint backs it up; a writer that
  loses the race rolls back and resolves as a replay.
"""

import datetime
import logging
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_checkout import db
from marketplace_checkout.enums import OrderStatus
from marketplace_checkout.enums import PaymentStatus
from marketplace_checkout.exceptions import CheckoutFinalizationError
from marketplace_checkout.exceptions import InvalidRequestError
from marketplace_checkout.models import AddressSnapshot
from marketplace_checkout.models import GuestContact
from marketplace_checkout.models import PaymentSession
from marketplace_checkout.services.checkout_items import group_session_line_items
from marketplace_checkout.services.checkout_items import SellerGroup
from marketplace_checkout.services.checkout_session_service import GUEST_USER_ID
from marketplace_checkout.services.order_service import OrderService
from marketplace_checkout.services.order_service import payment_method_tag
from marketplace_checkout.services.payment_processor import PaymentProcessor
from marketplace_checkout.services.shipping_address_resolver import address_from_session

logger = logging.getLogger(__name__)


def _is_guest_session(payment_session: PaymentSession) -> bool:
  metadata = payment_session.metadata
  return (
      metadata.get("is_guest") == "true"
      or metadata.get("user_id") == GUEST_USER_ID
  )

class CheckoutCompletionService:
  """Turns paid payment sessions into committed orders, exactly once."""

  def __init__(
      self,
      payment_processor: PaymentProcessor,
      transactions_session: AsyncSession,
      clock: Optional[Callable[[], datetime.datetime]] = None,
  ):
    self.payment_processor = payment_processor
    self.session = transactions_session
    self.clock = clock or db.utcnow
    self.order_service = OrderService(transactions_session, self.clock)

  async def complete_checkout(
      self, session_id: str, customer_id: Optional[str] = None
  ) -> List[str]:
    """Finalizes a session on behalf of the customer returning from payment.

    Args:
      session_id: The payment session id.
      customer_id: The signed-in customer, checked against the session owner.
        Only guest sessions may be completed without one.

    Returns:
      The ids of the session's orders.

    Raises:
      CheckoutFinalizationError: 401 if nobody is signed in and the session
        belongs to a customer account.
    """
    if not session_id or not session_id.strip():
      raise InvalidRequestError("Session ID is required.")
    payment_session = await self.payment_processor.retrieve_session(
        session_id.strip(), expand=["customer"]
    )
    if customer_id is None and not _is_guest_session(payment_session):
      raise CheckoutFinalizationError(
          "Sign in to complete this checkout.", status_code=401
      )
    return await self.finalize_session(
        payment_session, expected_customer_id=customer_id
    )

  async def finalize_session(
      self,
      payment_session: PaymentSession,
      expected_customer_id: Optional[str] = None,
  ) -> List[str]:
    """Ensures a paid session is reflected by committed orders.

    Args:
      payment_session: The payment session, as read from the processor.
      expected_customer_id: The customer the caller acts for, if any.

    Returns:
      The ids of the session's orders, whether created now or before.

    Raises:
      CheckoutFinalizationError: 400 if the session has no owner, is not
        paid, has no usable shipping address or has nothing purchasable; 403
        if it belongs to another customer.
    """
    metadata = payment_session.metadata
    owner = metadata.get("user_id")
    is_guest = _is_guest_session(payment_session)
    if not owner and not is_guest:
      raise CheckoutFinalizationError(
          "Checkout session is missing customer information."
      )
    if (
        not is_guest
        and expected_customer_id is not None
        and owner != expected_customer_id
    ):
      raise CheckoutFinalizationError(
          "Checkout session does not belong to the current user.",
          status_code=403,
      )
    if payment_session.payment_status != PaymentStatus.PAID.value:
      raise CheckoutFinalizationError(
          "Payment has not been completed for this checkout session."
      )
    address = address_from_session(payment_session)
    if address is None:
      raise CheckoutFinalizationError(
          "A valid shipping address could not be determined for this session."
      )

    order_ids = await self._refresh_existing(payment_session, address)
    if order_ids is not None:
      logger.info(
          "Session %s already finalized; refreshed %d orders",
          payment_session.id,
          len(order_ids),
      )
      return order_ids

    # Read outside any transaction; the processor call may be slow.
    line_items = await self.payment_processor.list_session_line_items(
        payment_session.id
    )
    groups = group_session_line_items(line_items)
    if not groups:
      raise CheckoutFinalizationError(
          "No purchasable items were found for this checkout session."
      )

    guest = None
    if is_guest:
      guest = GuestContact(
          email=metadata.get("guest_email") or payment_session.customer_email,
          full_name=metadata.get("guest_full_name"),
          phone_number=metadata.get("guest_phone_number"),
      )
    return await self._create_orders(
        payment_session,
        groups,
        address,
        customer_id=None if is_guest else owner,
        guest=guest,
    )

  async def _refresh_existing(
      self, payment_session: PaymentSession, address: AddressSnapshot
  ) -> Optional[List[str]]:
    """Refreshes the session's orders, or returns None if there are none."""
    try:
      orders = await db.get_orders_by_session(
          self.session, payment_session.id, for_update=True
      )
      if not orders:
        await self.session.rollback()
        return None
      order_ids = await self._refresh(orders, payment_session, address)
      await self.session.commit()
      return order_ids
    except Exception:
      await self.session.rollback()
      raise

  async def _refresh(
      self,
      orders: List[db.Order],
      payment_session: PaymentSession,
      address: AddressSnapshot,
  ) -> List[str]:
    now = self.clock()
    for order in orders:
      order.payment_method = payment_method_tag(payment_session.id)
      order.stripe_session_id = payment_session.id
      if payment_session.payment_intent:
        order.payment_intent_id = payment_session.payment_intent
      order.order_date = now
      order.shipping_street_address = address.street_address
      order.shipping_apt_number = address.apt_number
      order.shipping_city = address.city
      order.shipping_state_province = address.state_province
      order.shipping_zip_code = address.zip_code
      order.shipping_country = address.country
      order.updated_at = now
      if order.status == OrderStatus.PENDING_PAYMENT.value:
        await self.order_service.transition(order, OrderStatus.PROCESSING)
    return [order.id for order in orders]

  async def _create_orders(
      self,
      payment_session: PaymentSession,
      groups: List[SellerGroup],
      address: AddressSnapshot,
      customer_id: Optional[str],
      guest: Optional[GuestContact],
  ) -> List[str]:
    """Creates one order per seller, all or nothing."""
    try:
      existing = await db.get_orders_by_session(
          self.session, payment_session.id, for_update=True
      )
      if existing:
        order_ids = await self._refresh(existing, payment_session, address)
        await self.session.commit()
        return order_ids

      order_ids = []
      for group in groups:
        order = await self.order_service.create_order(
            group,
            address,
            OrderStatus.PROCESSING,
            payment_session.id,
            customer_id=customer_id,
            guest=guest,
            payment_intent_id=payment_session.payment_intent,
            check_reservations=False,
        )
        order_ids.append(order.id)
      await self.session.commit()
    except IntegrityError:
      await self.session.rollback()
      logger.info(
          "Concurrent finalization of session %s; resolving as a replay",
          payment_session.id,
      )
      order_ids = await self._refresh_existing(payment_session, address)
      if order_ids is None:
        raise CheckoutFinalizationError(
            "Checkout session could not be finalized. Please try again.",
            status_code=409,
        )
      return order_ids
    except Exception:
      await self.session.rollback()
      raise

    logger.info(
        "Finalized session %s into %d orders",
        payment_session.id,
        len(order_ids),
    )
    return order_ids
