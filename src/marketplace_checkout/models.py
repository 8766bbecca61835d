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

"""Request, response and domain models for the marketplace checkout server.

The API models mirror the JSON bodies accepted and returned by the routes. The
payment models (`PaymentSession`, `SessionLineItem`, `WebhookEvent`) are the
processor-neutral view of hosted checkout sessions that the services operate
on; the payment processor implementations translate their wire formats into
them.
"""

import datetime
import decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from marketplace_checkout.enums import StockOperationType


# --- Checkout ---


class CartItem(BaseModel):
  """A cart line as submitted by the storefront."""

  product_id: str
  product_name: Optional[str] = None
  product_image: Optional[str] = None
  quantity: int = 0
  price: decimal.Decimal = decimal.Decimal("0")
  store_id: str
  store_name: Optional[str] = None
  is_reservation: bool = False
  reservation_date: Optional[str] = None
  reservation_time: Optional[str] = None
  reservation_notes: Optional[str] = None


class ShippingAddress(BaseModel):
  """A shipping address as supplied by the customer.

  Every field is optional at parse time; completeness is checked by the
  shipping address resolver so the caller gets a specific message.
  """

  label: Optional[str] = None
  full_name: Optional[str] = None
  phone_number: Optional[str] = None
  street_address: Optional[str] = None
  apt_number: Optional[str] = None
  city: Optional[str] = None
  state_province: Optional[str] = None
  zip_code: Optional[str] = None
  country: Optional[str] = None


class AddressSnapshot(BaseModel):
  """The address copied onto an order."""

  street_address: str
  apt_number: Optional[str] = None
  city: str
  state_province: str
  zip_code: str
  country: str


class GuestContact(BaseModel):
  email: Optional[str] = None
  full_name: Optional[str] = None
  phone_number: Optional[str] = None


class CheckoutSessionRequest(BaseModel):
  items: List[CartItem] = Field(default_factory=list)
  shipping_address_id: Optional[str] = None
  new_shipping_address: Optional[ShippingAddress] = None
  save_new_address: bool = False
  guest: Optional[GuestContact] = None


class CheckoutSessionResponse(BaseModel):
  checkout_url: str
  session_id: str


class CheckoutCompleteRequest(BaseModel):
  session_id: str


class CheckoutCompleteResponse(BaseModel):
  order_ids: List[str]
  message: str


class WebhookResponse(BaseModel):
  received: bool = True


# --- Reservations ---


class TimeSlot(BaseModel):
  time: str
  available: bool


class AvailableTimeSlotsResponse(BaseModel):
  product_id: str
  date: str
  time_slots: List[TimeSlot]
  booked_time_slots: List[str] = Field(default_factory=list)


class TimeSlotCheckRequest(BaseModel):
  product_id: str
  date: str
  time: str


class TimeSlotCheckResponse(BaseModel):
  product_id: str
  date: str
  time: str
  available: bool
  message: Optional[str] = None


# --- Orders ---


class OrderItemView(BaseModel):
  model_config = ConfigDict(from_attributes=True)

  id: str
  product_id: str
  product_name: Optional[str] = None
  product_image: Optional[str] = None
  quantity: int
  price: decimal.Decimal
  subtotal: decimal.Decimal
  is_reservation: bool = False
  reservation_date: Optional[str] = None
  reservation_time: Optional[str] = None
  reservation_notes: Optional[str] = None


class OrderView(BaseModel):
  """An order as returned by the API, with its derived refunded total."""

  model_config = ConfigDict(from_attributes=True)

  id: str
  customer_id: Optional[str] = None
  store_id: str
  store_name: Optional[str] = None
  status: str
  total_amount: decimal.Decimal
  total_refunded: decimal.Decimal = decimal.Decimal("0")
  shipping_street_address: Optional[str] = None
  shipping_apt_number: Optional[str] = None
  shipping_city: Optional[str] = None
  shipping_state_province: Optional[str] = None
  shipping_zip_code: Optional[str] = None
  shipping_country: Optional[str] = None
  payment_method: Optional[str] = None
  stripe_session_id: Optional[str] = None
  payment_intent_id: Optional[str] = None
  order_date: Optional[datetime.datetime] = None
  shipped_date: Optional[datetime.datetime] = None
  delivered_date: Optional[datetime.datetime] = None
  tracking_number: Optional[str] = None
  guest_email: Optional[str] = None
  guest_full_name: Optional[str] = None
  guest_phone_number: Optional[str] = None
  items: List[OrderItemView] = Field(default_factory=list)


class OrderStatusUpdateRequest(BaseModel):
  status: Optional[str] = None
  tracking_number: Optional[str] = None


class RefundRequest(BaseModel):
  amount: decimal.Decimal
  refund_id: Optional[str] = None
  payment_intent_id: Optional[str] = None
  currency: str = "usd"
  reason: Optional[str] = None
  status: str = "succeeded"


class RefundView(BaseModel):
  model_config = ConfigDict(from_attributes=True)

  id: str
  order_id: str
  refund_id: str
  payment_intent_id: Optional[str] = None
  amount: decimal.Decimal
  currency: str
  reason: Optional[str] = None
  status: str
  refunded_by: Optional[str] = None
  created_at: Optional[datetime.datetime] = None


# --- Stock ---


class StockOperationRequest(BaseModel):
  product_id: str
  type: StockOperationType
  quantity: int
  reason: Optional[str] = None
  order_id: Optional[str] = None


class StockOperationView(BaseModel):
  model_config = ConfigDict(from_attributes=True)

  id: str
  product_id: str
  type: str
  quantity: int
  reason: Optional[str] = None
  order_id: Optional[str] = None
  previous_quantity: int
  new_quantity: int
  performed_by: str
  performed_at: datetime.datetime


class StockOperationResult(BaseModel):
  """The ledger entry created plus what happened to the linked order."""

  operation: StockOperationView
  order_updated: bool = False
  order_status: Optional[str] = None
  order_fulfilled: bool = False


class StockOperationList(BaseModel):
  operations: List[StockOperationView]
  total: int


# --- Payment processor ---


class PaymentSession(BaseModel):
  """A hosted checkout session as seen by the marketplace."""

  id: str
  url: Optional[str] = None
  status: Optional[str] = None
  payment_status: Optional[str] = None
  metadata: Dict[str, str] = Field(default_factory=dict)
  customer: Optional[str] = None
  customer_email: Optional[str] = None
  payment_intent: Optional[str] = None
  # Address collected by the processor's hosted page, Stripe-shaped
  # (line1, line2, city, state, postal_code, country).
  shipping_address: Optional[Dict[str, Optional[str]]] = None


class SessionLineItem(BaseModel):
  """A purchased line read back from a payment session."""

  description: Optional[str] = None
  quantity: int = 0
  unit_amount: int = 0
  currency: str = "usd"
  product_name: Optional[str] = None
  product_images: List[str] = Field(default_factory=list)
  product_metadata: Dict[str, str] = Field(default_factory=dict)


class WebhookEvent(BaseModel):
  id: Optional[str] = None
  type: str
  data_object: Dict[str, Any] = Field(default_factory=dict)
