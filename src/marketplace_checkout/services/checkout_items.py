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

"""Cart validation, per-seller grouping and processor line items.

A multi-seller cart becomes one order per seller. The same grouping is derived
twice: from the submitted cart when the checkout session is created, and from
the session's purchased line items when it is finalized. The product metadata
attached to each processor line item carries everything needed for the second
derivation, so a session can be turned into orders without local state.
"""

import decimal
import logging
import re
from typing import Dict, List, Optional

from pydantic import BaseModel
from pydantic import Field

from marketplace_checkout.exceptions import InvalidRequestError
from marketplace_checkout.models import CartItem
from marketplace_checkout.models import SessionLineItem

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "usd"
DEFAULT_STORE_NAME = "Marketplace Store"
# Processor metadata values are capped at 500 characters.
METADATA_VALUE_LIMIT = 500

_CENT = decimal.Decimal("0.01")
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)(?::[0-5]\d)?$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class OrderLine(BaseModel):
  """A line of a seller group, snapshotted into an order item."""

  product_id: str
  product_name: Optional[str] = None
  product_image: Optional[str] = None
  quantity: int
  price: decimal.Decimal
  is_reservation: bool = False
  reservation_date: Optional[str] = None
  reservation_time: Optional[str] = None
  reservation_notes: Optional[str] = None

  @property
  def subtotal(self) -> decimal.Decimal:
    return self.price * self.quantity


class SellerGroup(BaseModel):
  """The items of one seller; one group becomes one order."""

  store_id: str
  store_name: str
  items: List[OrderLine] = Field(default_factory=list)

  @property
  def total(self) -> decimal.Decimal:
    return sum((item.subtotal for item in self.items), decimal.Decimal("0"))


def to_minor_units(amount: decimal.Decimal) -> int:
  return int(
      (decimal.Decimal(amount) * 100).quantize(
          decimal.Decimal("1"), rounding=decimal.ROUND_HALF_UP
      )
  )


def from_minor_units(amount: int) -> decimal.Decimal:
  return (decimal.Decimal(amount) / 100).quantize(_CENT)


def normalize_reservation_time(value: Optional[str]) -> Optional[str]:
  """Normalizes `HH:MM[:SS]` to `HH:MM`; returns None for anything else."""
  if not value:
    return None
  match = _TIME_RE.match(value.strip())
  if not match:
    return None
  return f"{match.group(1)}:{match.group(2)}"


def is_valid_reservation_date(value: Optional[str]) -> bool:
  return bool(value) and bool(_DATE_RE.match(value.strip()))


def sanitize_cart_items(items: List[CartItem]) -> List[CartItem]:
  """Validates the cart and drops unusable lines.

  Args:
    items: The submitted cart.

  Returns:
    The lines with positive quantity and price, trimmed, with prices rounded
    half-up to whole cents.

  Raises:
    InvalidRequestError: If the cart is empty, nothing usable remains, or a
      reservation line lacks a valid date and time.
  """
  if not items:
    raise InvalidRequestError("Your cart is empty.")

  sanitized = []
  for item in items:
    # Charged and stored amounts are whole cents.
    price = decimal.Decimal(item.price).quantize(
        _CENT, rounding=decimal.ROUND_HALF_UP
    )
    if item.quantity <= 0 or price <= 0:
      logger.info("Dropping cart line for product %s", item.product_id)
      continue
    image = item.product_image.strip() if item.product_image else None
    reservation_date = reservation_time = reservation_notes = None
    if item.is_reservation:
      reservation_time = normalize_reservation_time(item.reservation_time)
      if not is_valid_reservation_date(item.reservation_date) or (
          reservation_time is None
      ):
        raise InvalidRequestError(
            "Reservation items require a date (YYYY-MM-DD) and time (HH:MM)."
        )
      reservation_date = item.reservation_date.strip()
      reservation_notes = (item.reservation_notes or "").strip() or None
    sanitized.append(
        item.model_copy(
            update={
                "price": price,
                "product_image": image or None,
                "reservation_date": reservation_date,
                "reservation_time": reservation_time,
                "reservation_notes": reservation_notes,
            }
        )
    )

  if not sanitized:
    raise InvalidRequestError(
        "All items in your cart have invalid quantities or prices."
    )
  return sanitized


def group_cart_items(items: List[CartItem]) -> List[SellerGroup]:
  """Partitions cart lines by seller, keeping first-seen order."""
  groups: Dict[str, SellerGroup] = {}
  for item in items:
    group = groups.get(item.store_id)
    if group is None:
      group = SellerGroup(
          store_id=item.store_id,
          store_name=item.store_name or DEFAULT_STORE_NAME,
      )
      groups[item.store_id] = group
    group.items.append(
        OrderLine(
            product_id=item.product_id,
            product_name=item.product_name,
            product_image=item.product_image,
            quantity=item.quantity,
            price=item.price,
            is_reservation=item.is_reservation,
            reservation_date=item.reservation_date,
            reservation_time=item.reservation_time,
            reservation_notes=item.reservation_notes,
        )
    )
  return list(groups.values())


def build_processor_line_items(groups: List[SellerGroup]) -> List[Dict]:
  """Builds hosted-checkout line items (amounts in minor units)."""
  line_items = []
  for group in groups:
    for line in group.items:
      metadata = {
          "product_id": line.product_id,
          "product_name": line.product_name or "",
          "store_id": group.store_id,
          "store_name": group.store_name,
      }
      if line.is_reservation:
        metadata.update({
            "is_reservation": "true",
            "reservation_date": line.reservation_date,
            "reservation_time": line.reservation_time,
            "reservation_notes": (line.reservation_notes or "")[
                :METADATA_VALUE_LIMIT
            ],
        })
      product_data = {
          "name": line.product_name or line.product_id,
          "metadata": metadata,
      }
      if line.product_image:
        product_data["images"] = [line.product_image]
      line_items.append({
          "price_data": {
              "currency": DEFAULT_CURRENCY,
              "unit_amount": to_minor_units(line.price),
              "product_data": product_data,
          },
          "quantity": line.quantity,
      })
  return line_items


def group_session_line_items(
    line_items: List[SessionLineItem],
) -> List[SellerGroup]:
  """Re-derives per-seller groups from a session's purchased line items.

  Lines without a seller, with a non-positive quantity or with a non-positive
  price are skipped.
  """
  groups: Dict[str, SellerGroup] = {}
  for item in line_items:
    metadata = item.product_metadata
    store_id = metadata.get("store_id")
    price = from_minor_units(item.unit_amount)
    if not store_id or item.quantity <= 0 or price <= 0:
      logger.warning(
          "Skipping unpurchasable line item %r (store %r, quantity %s)",
          item.description,
          store_id,
          item.quantity,
      )
      continue

    group = groups.get(store_id)
    if group is None:
      group = SellerGroup(
          store_id=store_id,
          store_name=metadata.get("store_name") or DEFAULT_STORE_NAME,
      )
      groups[store_id] = group

    is_reservation = metadata.get("is_reservation") == "true"
    group.items.append(
        OrderLine(
            product_id=metadata.get("product_id") or "",
            product_name=(
                metadata.get("product_name")
                or item.product_name
                or item.description
            ),
            product_image=(
                item.product_images[0] if item.product_images else None
            ),
            quantity=item.quantity,
            price=price,
            is_reservation=is_reservation,
            reservation_date=(
                metadata.get("reservation_date") if is_reservation else None
            ),
            reservation_time=(
                normalize_reservation_time(metadata.get("reservation_time"))
                if is_reservation
                else None
            ),
            reservation_notes=(
                metadata.get("reservation_notes") or None
                if is_reservation
                else None
            ),
        )
    )
  return list(groups.values())
