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

"""Checkout session orchestration.

This module provides the `CheckoutSessionService` class, which turns a cart
into a hosted payment session with one staged (`pending_payment`) order per
seller.

The flow is a small saga:
- Validate and sanitize the cart, resolve the shipping address and group the
  items by seller.
- Pre-check reservation slots, so an obvious conflict never reaches the
  payment processor.
- Create the hosted payment session. No database transaction is open while
  the processor is called.
- In one transaction, purge orders previously staged for the session,
  re-check the reservation slots under the write lock and insert the staged
  orders.
- If staging fails, compensate: purge whatever was staged and expire the
  payment session. Compensation failures are logged; the caller always gets
  the original failure.
"""

import datetime
import json
import logging
import re
from typing import Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_checkout import db
from marketplace_checkout.enums import OrderStatus
from marketplace_checkout.exceptions import CheckoutUnavailableError
from marketplace_checkout.exceptions import InvalidRequestError
from marketplace_checkout.exceptions import PaymentProviderError
from marketplace_checkout.exceptions import ReservationConflictError
from marketplace_checkout.models import CartItem
from marketplace_checkout.models import CheckoutSessionRequest
from marketplace_checkout.models import CheckoutSessionResponse
from marketplace_checkout.models import GuestContact
from marketplace_checkout.models import ShippingAddress
from marketplace_checkout.services.checkout_items import build_processor_line_items
from marketplace_checkout.services.checkout_items import group_cart_items
from marketplace_checkout.services.checkout_items import sanitize_cart_items
from marketplace_checkout.services.checkout_items import SellerGroup
from marketplace_checkout.services.order_service import OrderService
from marketplace_checkout.services.payment_processor import PaymentProcessor
from marketplace_checkout.services.reservation_service import reservation_slots
from marketplace_checkout.services.reservation_service import ReservationService
from marketplace_checkout.services.shipping_address_resolver import sanitize_address
from marketplace_checkout.services.shipping_address_resolver import ShippingAddressResolver
from marketplace_checkout.services.shipping_address_resolver import to_snapshot

logger = logging.getLogger(__name__)

GUEST_USER_ID = "guest"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def validate_guest_contact(request: CheckoutSessionRequest) -> GuestContact:
  """Validates the contact fields and address of a guest checkout."""
  guest = request.guest or GuestContact()
  email = (guest.email or "").strip()
  full_name = (guest.full_name or "").strip()
  phone_number = (guest.phone_number or "").strip()

  if not email:
    raise InvalidRequestError("Email is required for guest checkout.")
  if not full_name:
    raise InvalidRequestError("Full name is required for guest checkout.")
  if not phone_number:
    raise InvalidRequestError("Phone number is required for guest checkout.")
  if not _EMAIL_RE.match(email):
    raise InvalidRequestError("Please provide a valid email address.")
  if request.shipping_address_id or not request.new_shipping_address:
    raise InvalidRequestError(
        "Shipping address is required for guest checkout."
    )
  return GuestContact(
      email=email, full_name=full_name, phone_number=phone_number
  )


class CheckoutSessionService:
  """Service for creating hosted checkout sessions and staging orders."""

  def __init__(
      self,
      payment_processor: PaymentProcessor,
      transactions_session: AsyncSession,
      products_session: AsyncSession,
      app_base_url: str,
      clock: Optional[Callable[[], datetime.datetime]] = None,
  ):
    """Initializes the checkout session service.

    Args:
      payment_processor: The hosted payment processor.
      transactions_session: The database session for orders and addresses.
      products_session: The database session for the product catalog.
      app_base_url: The storefront URL the processor redirects back to.
      clock: Returns the current UTC time; defaults to the system clock.
    """
    self.payment_processor = payment_processor
    self.transactions_session = transactions_session
    self.products_session = products_session
    self.app_base_url = app_base_url.rstrip("/")
    self.clock = clock or db.utcnow

  async def create_checkout_session(
      self,
      request: CheckoutSessionRequest,
      customer_id: Optional[str] = None,
      customer_email: Optional[str] = None,
  ) -> CheckoutSessionResponse:
    """Creates a hosted payment session and stages its orders.

    Args:
      request: The checkout request (cart, address, guest contact).
      customer_id: The signed-in customer, or None for guest checkout.
      customer_email: The signed-in customer's email.

    Returns:
      The redirect URL and id of the payment session.

    Raises:
      InvalidRequestError: For an empty or invalid cart or address.
      ForbiddenError: If the saved address belongs to another customer.
      ResourceNotFoundError: If the saved address does not exist.
      ReservationConflictError: If a reservation slot is already booked.
      PaymentProviderError: If the processor could not create the session.
      CheckoutUnavailableError: If staging failed after the session was
        created.
    """
    items = sanitize_cart_items(request.items)
    guest = None if customer_id else validate_guest_contact(request)

    try:
      address = await ShippingAddressResolver(
          self.transactions_session
      ).resolve(request, customer_id, customer_email)
    finally:
      await self.transactions_session.rollback()

    items = await self._fill_product_snapshots(items)
    groups = group_cart_items(items)

    slots = reservation_slots(groups)
    if slots:
      try:
        await ReservationService(self.transactions_session).ensure_available(
            slots
        )
      finally:
        await self.transactions_session.rollback()

    email = customer_email or (guest.email if guest else None)
    customer_ref = None
    if email:
      customer_ref = await self.payment_processor.find_or_create_customer(
          email, name=guest.full_name if guest else address.full_name
      )

    payment_session = await self.payment_processor.create_checkout_session(
        line_items=build_processor_line_items(groups),
        metadata=self._build_metadata(
            customer_id, guest, request.save_new_address, address, groups
        ),
        success_url=(
            f"{self.app_base_url}/checkout/success"
            "?session_id={CHECKOUT_SESSION_ID}"
        ),
        cancel_url=f"{self.app_base_url}/cart?canceled=1",
        customer=customer_ref,
        customer_email=None if customer_ref else email,
    )
    if not payment_session.url:
      logger.error(
          "Payment session %s was created without a redirect URL",
          payment_session.id,
      )
      await self._compensate(payment_session.id)
      raise PaymentProviderError("Failed to create checkout session.")

    try:
      await self._stage_orders(
          payment_session.id, groups, address, customer_id, guest
      )
    except ReservationConflictError:
      await self._compensate(payment_session.id)
      raise
    except Exception as e:
      logger.exception(
          "Failed to stage orders for payment session %s", payment_session.id
      )
      await self._compensate(payment_session.id)
      raise CheckoutUnavailableError(
          "We couldn't prepare your order. Please try again."
      ) from e

    logger.info(
        "Created payment session %s with %d staged orders",
        payment_session.id,
        len(groups),
    )
    return CheckoutSessionResponse(
        checkout_url=payment_session.url, session_id=payment_session.id
    )

  async def _fill_product_snapshots(
      self, items: List[CartItem]
  ) -> List[CartItem]:
    """Fills missing names, images and seller names from the catalog."""
    missing = [
        item.product_id
        for item in items
        if not item.product_name or not item.product_image
        or not item.store_name
    ]
    if not missing:
      return items
    try:
      products = await db.get_products(self.products_session, missing)
      filled = []
      for item in items:
        product = products.get(item.product_id)
        if product is None:
          filled.append(item)
          continue
        filled.append(
            item.model_copy(
                update={
                    "product_name": item.product_name or product.name,
                    "product_image": item.product_image or product.image_url,
                    "store_name": item.store_name or product.store_name,
                }
            )
        )
      return filled
    finally:
      await self.products_session.rollback()

  def _build_metadata(
      self,
      customer_id: Optional[str],
      guest: Optional[GuestContact],
      save_new_address: bool,
      address: ShippingAddress,
      groups: List[SellerGroup],
  ) -> dict:
    address = sanitize_address(address)
    metadata = {
        "user_id": customer_id or GUEST_USER_ID,
        "is_guest": "true" if guest else "false",
        "save_new_address": "true" if save_new_address else "false",
        "shipping_address": json.dumps(
            address.model_dump(exclude={"label"}, exclude_none=True)
        ),
        "item_count": str(
            sum(line.quantity for group in groups for line in group.items)
        ),
        "store_count": str(len(groups)),
    }
    if guest:
      metadata.update({
          "guest_email": guest.email,
          "guest_full_name": guest.full_name,
          "guest_phone_number": guest.phone_number,
      })
    return metadata

  async def _stage_orders(
      self,
      stripe_session_id: str,
      groups: List[SellerGroup],
      address: ShippingAddress,
      customer_id: Optional[str],
      guest: Optional[GuestContact],
  ) -> List[str]:
    """Replaces the session's staged orders in one transaction."""
    order_service = OrderService(self.transactions_session, self.clock)
    snapshot = to_snapshot(address)
    try:
      await db.delete_staged_orders_by_session(
          self.transactions_session, stripe_session_id
      )
      order_ids = []
      for group in groups:
        order = await order_service.create_order(
            group,
            snapshot,
            OrderStatus.PENDING_PAYMENT,
            stripe_session_id,
            customer_id=customer_id,
            guest=guest,
        )
        order_ids.append(order.id)
      await self.transactions_session.commit()
      return order_ids
    except Exception:
      await self.transactions_session.rollback()
      raise

  async def _compensate(self, stripe_session_id: str) -> None:
    """Purges staged orders and expires the session, logging any failure."""
    try:
      await OrderService(
          self.transactions_session, self.clock
      ).purge_staged_orders(stripe_session_id)
    except Exception:  # pylint: disable=broad-exception-caught
      logger.exception(
          "Failed to purge staged orders for session %s", stripe_session_id
      )
    try:
      await self.payment_processor.expire_session(stripe_session_id)
    except Exception:  # pylint: disable=broad-exception-caught
      logger.exception(
          "Failed to expire payment session %s", stripe_session_id
      )
