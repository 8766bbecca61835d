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

"""Shipping address resolution for checkout and finalization.

At checkout the address comes from the request: either a saved address owned
by the customer or a fresh one (optionally saved for later). At finalization it
comes from the payment session: the JSON snapshot written into the session
metadata, falling back to the address the processor's hosted page collected.
"""

import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_checkout import db
from marketplace_checkout.exceptions import ForbiddenError
from marketplace_checkout.exceptions import InvalidRequestError
from marketplace_checkout.exceptions import ResourceNotFoundError
from marketplace_checkout.models import AddressSnapshot
from marketplace_checkout.models import CheckoutSessionRequest
from marketplace_checkout.models import PaymentSession
from marketplace_checkout.models import ShippingAddress

logger = logging.getLogger(__name__)

REQUIRED_ADDRESS_FIELDS = (
    "full_name",
    "phone_number",
    "street_address",
    "city",
    "state_province",
    "zip_code",
    "country",
)


def sanitize_address(address: ShippingAddress) -> ShippingAddress:
  """Returns a copy with every field trimmed and blanks turned into None."""
  values = {}
  for field, value in address.model_dump().items():
    if isinstance(value, str):
      value = value.strip() or None
    values[field] = value
  return ShippingAddress(**values)


def is_complete(address: ShippingAddress) -> bool:
  return all(getattr(address, f) for f in REQUIRED_ADDRESS_FIELDS)


def to_snapshot(address: ShippingAddress) -> AddressSnapshot:
  return AddressSnapshot(
      street_address=address.street_address,
      apt_number=address.apt_number,
      city=address.city,
      state_province=address.state_province,
      zip_code=address.zip_code,
      country=address.country,
  )


def _pick(data: Dict[str, Any], *keys: str) -> str:
  for key in keys:
    value = data.get(key)
    if isinstance(value, str) and value.strip():
      return value.strip()
  return ""


def address_from_session(session: PaymentSession) -> Optional[AddressSnapshot]:
  """Resolves the shipping address recorded on a payment session.

  Args:
    session: The payment session.

  Returns:
    The metadata snapshot if it is complete, else the processor-collected
    address if that is complete, else None.
  """
  raw = session.metadata.get("shipping_address")
  if raw:
    try:
      parsed = json.loads(raw)
    except ValueError:
      logger.warning(
          "Unable to parse shipping address metadata for session %s",
          session.id,
      )
      parsed = None
    if isinstance(parsed, dict):
      snapshot = {
          "street_address": _pick(parsed, "street_address", "streetAddress"),
          "apt_number": _pick(parsed, "apt_number", "aptNumber") or None,
          "city": _pick(parsed, "city"),
          "state_province": _pick(parsed, "state_province", "stateProvince"),
          "zip_code": _pick(parsed, "zip_code", "zipCode"),
          "country": _pick(parsed, "country"),
      }
      if all(v for k, v in snapshot.items() if k != "apt_number"):
        return AddressSnapshot(**snapshot)

  collected = session.shipping_address
  if collected:
    snapshot = {
        "street_address": _pick(collected, "line1"),
        "apt_number": _pick(collected, "line2") or None,
        "city": _pick(collected, "city"),
        "state_province": _pick(collected, "state"),
        "zip_code": _pick(collected, "postal_code"),
        "country": _pick(collected, "country"),
    }
    if all(v for k, v in snapshot.items() if k != "apt_number"):
      return AddressSnapshot(**snapshot)

  return None


class ShippingAddressResolver:
  """Resolves the shipping address of a checkout request."""

  def __init__(self, transactions_session: AsyncSession):
    self.session = transactions_session

  async def resolve(
      self,
      request: CheckoutSessionRequest,
      customer_id: Optional[str],
      customer_email: Optional[str] = None,
  ) -> ShippingAddress:
    """Resolves (and optionally saves) the address for a checkout.

    Args:
      request: The checkout request.
      customer_id: The signed-in customer, or None for guest checkout.
      customer_email: The signed-in customer's email.

    Returns:
      The complete, trimmed shipping address.

    Raises:
      ForbiddenError: If the saved address belongs to another customer.
      ResourceNotFoundError: If the saved address does not exist.
      InvalidRequestError: If no address was supplied or it is incomplete.
    """
    if request.shipping_address_id:
      if not customer_id:
        raise InvalidRequestError(
            "Saved shipping addresses require a signed-in customer."
        )
      saved = await db.get_customer_address(
          self.session, request.shipping_address_id
      )
      if not saved:
        raise ResourceNotFoundError(
            "Selected shipping address could not be found."
        )
      if saved.customer_id != customer_id:
        raise ForbiddenError(
            "Selected shipping address does not belong to the user."
        )
      address = sanitize_address(
          ShippingAddress(
              label=saved.label,
              full_name=saved.full_name,
              phone_number=saved.phone_number,
              street_address=saved.street_address,
              apt_number=saved.apt_number,
              city=saved.city,
              state_province=saved.state_province,
              zip_code=saved.zip_code,
              country=saved.country,
          )
      )
      if not is_complete(address):
        raise InvalidRequestError(
            "Please complete all required shipping address fields."
        )
      return address

    if request.new_shipping_address:
      address = sanitize_address(request.new_shipping_address)
      if not is_complete(address):
        raise InvalidRequestError(
            "Please complete all required shipping address fields."
        )
      if request.save_new_address and customer_id:
        address_id = await db.save_customer_address(
            self.session,
            customer_id,
            address.model_dump(),
            email=customer_email,
        )
        await self.session.commit()
        logger.info(
            "Saved shipping address %s for customer %s", address_id, customer_id
        )
      return address

    raise InvalidRequestError("Please select or provide a shipping address.")
