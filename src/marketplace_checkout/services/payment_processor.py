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

"""Payment processor clients.

The checkout pipeline only needs a narrow capability from the hosted payment
processor: create a checkout session, read it (and its line items) back, expire
it, look up the paying customer, and verify signed webhook deliveries.
`PaymentProcessor` defines that capability; `StripePaymentProcessor` implements
it over Stripe's REST API and `MockPaymentProcessor` keeps everything in memory
for local runs and tests.
"""

import abc
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple
import uuid

import httpx

from marketplace_checkout.enums import PaymentStatus
from marketplace_checkout.exceptions import InvalidRequestError
from marketplace_checkout.exceptions import MarketplaceError
from marketplace_checkout.exceptions import PaymentProviderError
from marketplace_checkout.exceptions import ResourceNotFoundError
from marketplace_checkout.exceptions import WebhookSignatureError
from marketplace_checkout.models import PaymentSession
from marketplace_checkout.models import SessionLineItem
from marketplace_checkout.models import WebhookEvent

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com"
DEFAULT_SIGNATURE_TOLERANCE_SECONDS = 300


def compute_webhook_signature(
    payload: bytes, secret: str, timestamp: int
) -> str:
  """Computes the v1 HMAC-SHA256 signature of a webhook payload."""
  signed_payload = f"{timestamp}.".encode("utf-8") + payload
  return hmac.new(
      secret.encode("utf-8"), signed_payload, hashlib.sha256
  ).hexdigest()


def verify_webhook_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    tolerance: int = DEFAULT_SIGNATURE_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> None:
  """Verifies a `Stripe-Signature` style header against the raw payload.

  The header has the form `t=<unix time>,v1=<hex signature>[,v1=...]`.

  Args:
    payload: The raw request body, exactly as received.
    signature_header: The signature header value.
    secret: The webhook signing secret.
    tolerance: Maximum age of the signed timestamp, in seconds.
    now: The current unix time (defaults to the system clock).

  Raises:
    WebhookSignatureError: If the header is missing or malformed, no
      signature matches, or the timestamp is outside the tolerance.
    MarketplaceError: If no signing secret is configured.
  """
  if not secret:
    raise MarketplaceError(
        "Webhook secret is not configured.", code="CONFIGURATION_ERROR"
    )
  if not signature_header:
    raise WebhookSignatureError("Missing webhook signature header.")

  timestamp = None
  signatures = []
  for part in signature_header.split(","):
    key, _, value = part.strip().partition("=")
    if key == "t":
      timestamp = value
    elif key == "v1":
      signatures.append(value)

  if timestamp is None or not timestamp.isdigit() or not signatures:
    raise WebhookSignatureError(
        "Unable to extract timestamp and signatures from header."
    )

  expected = compute_webhook_signature(payload, secret, int(timestamp))
  if not any(hmac.compare_digest(expected, s) for s in signatures):
    raise WebhookSignatureError(
        "No signatures found matching the expected signature for payload."
    )

  current = time.time() if now is None else now
  if tolerance and abs(current - int(timestamp)) > tolerance:
    raise WebhookSignatureError("Timestamp outside the tolerance zone.")


def parse_webhook_event(payload: bytes) -> WebhookEvent:
  """Parses a verified webhook payload into an event."""
  try:
    data = json.loads(payload)
  except ValueError as e:
    raise InvalidRequestError("Invalid webhook payload.") from e
  if not isinstance(data, dict) or not data.get("type"):
    raise InvalidRequestError("Invalid webhook payload.")
  return WebhookEvent(
      id=data.get("id"),
      type=data["type"],
      data_object=(data.get("data") or {}).get("object") or {},
  )


def _expandable_id(value: Any) -> Optional[str]:
  """Returns the id of a field that may or may not have been expanded."""
  if isinstance(value, dict):
    return value.get("id")
  return value


def session_from_stripe(obj: Dict[str, Any]) -> PaymentSession:
  """Builds a `PaymentSession` from a Stripe checkout session object."""
  shipping_details = obj.get("shipping_details") or (
      obj.get("collected_information") or {}
  ).get("shipping_details")
  shipping_address = None
  if shipping_details and shipping_details.get("address"):
    shipping_address = dict(shipping_details["address"])

  customer = obj.get("customer")
  customer_email = obj.get("customer_email") or (
      obj.get("customer_details") or {}
  ).get("email")
  if not customer_email and isinstance(customer, dict):
    customer_email = customer.get("email")

  return PaymentSession(
      id=obj["id"],
      url=obj.get("url"),
      status=obj.get("status"),
      payment_status=obj.get("payment_status"),
      metadata={k: str(v) for k, v in (obj.get("metadata") or {}).items()},
      customer=_expandable_id(customer),
      customer_email=customer_email,
      payment_intent=_expandable_id(obj.get("payment_intent")),
      shipping_address=shipping_address,
  )


def line_item_from_stripe(obj: Dict[str, Any]) -> SessionLineItem:
  """Builds a `SessionLineItem` from a Stripe line item (price.product expanded)."""
  price = obj.get("price") or {}
  product = price.get("product")
  if not isinstance(product, dict):
    product = {}
  return SessionLineItem(
      description=obj.get("description"),
      quantity=obj.get("quantity") or 0,
      unit_amount=price.get("unit_amount") or 0,
      currency=obj.get("currency") or price.get("currency") or "usd",
      product_name=product.get("name"),
      product_images=list(product.get("images") or []),
      product_metadata={
          k: str(v) for k, v in (product.get("metadata") or {}).items()
      },
  )


def encode_form_params(
    params: Any, prefix: Optional[str] = None
) -> List[Tuple[str, str]]:
  """Flattens nested params into Stripe's bracketed form encoding."""
  pairs: List[Tuple[str, str]] = []
  if isinstance(params, dict):
    for key, value in params.items():
      pairs.extend(
          encode_form_params(value, f"{prefix}[{key}]" if prefix else key)
      )
  elif isinstance(params, (list, tuple)):
    for index, value in enumerate(params):
      pairs.extend(encode_form_params(value, f"{prefix}[{index}]"))
  elif params is None:
    pass
  elif isinstance(params, bool):
    pairs.append((prefix, "true" if params else "false"))
  else:
    pairs.append((prefix, str(params)))
  return pairs


class PaymentProcessor(abc.ABC):
  """The hosted payment processor capability used by checkout."""

  @abc.abstractmethod
  async def find_or_create_customer(
      self, email: str, name: Optional[str] = None
  ) -> str:
    """Returns the processor's customer reference for an email."""

  @abc.abstractmethod
  async def create_checkout_session(
      self,
      *,
      line_items: List[Dict[str, Any]],
      metadata: Dict[str, str],
      success_url: str,
      cancel_url: str,
      customer: Optional[str] = None,
      customer_email: Optional[str] = None,
  ) -> PaymentSession:
    """Creates a hosted payment session."""

  @abc.abstractmethod
  async def retrieve_session(
      self, session_id: str, expand: Sequence[str] = ()
  ) -> PaymentSession:
    """Retrieves a payment session by ID."""

  @abc.abstractmethod
  async def list_session_line_items(
      self, session_id: str
  ) -> List[SessionLineItem]:
    """Lists the purchased line items of a payment session."""

  @abc.abstractmethod
  async def expire_session(self, session_id: str) -> None:
    """Expires an open payment session."""

  @abc.abstractmethod
  def construct_webhook_event(
      self, payload: bytes, signature_header: Optional[str]
  ) -> WebhookEvent:
    """Verifies a webhook delivery and parses it into an event."""


class StripePaymentProcessor(PaymentProcessor):
  """Stripe Checkout over the REST API."""

  def __init__(
      self,
      secret_key: str,
      webhook_secret: Optional[str] = None,
      timeout: float = 10.0,
      api_base: str = STRIPE_API_BASE,
      transport: Optional[httpx.AsyncBaseTransport] = None,
  ):
    self.secret_key = secret_key
    self.webhook_secret = webhook_secret
    self.timeout = timeout
    self.api_base = api_base
    self.transport = transport

  async def _request(
      self,
      method: str,
      path: str,
      params: Optional[Dict[str, Any]] = None,
  ) -> Dict[str, Any]:
    """Sends one API request and returns the decoded JSON body."""
    encoded = encode_form_params(params or {})
    try:
      async with httpx.AsyncClient(
          base_url=self.api_base,
          timeout=self.timeout,
          transport=self.transport,
      ) as client:
        if method == "GET":
          response = await client.get(
              path, params=encoded, headers=self._headers()
          )
        else:
          response = await client.request(
              method, path, data=dict(encoded), headers=self._headers()
          )
    except httpx.TimeoutException as e:
      logger.error("Payment provider request timed out: %s %s", method, path)
      raise PaymentProviderError(
          "Payment provider timed out.", status_code=504
      ) from e
    except httpx.HTTPError as e:
      logger.error("Payment provider request failed: %s %s: %s", method, path, e)
      raise PaymentProviderError("Payment provider is unreachable.") from e

    if response.status_code >= 400:
      message = "Payment provider request failed."
      try:
        message = response.json()["error"]["message"]
      except (ValueError, KeyError, TypeError):
        pass
      logger.warning(
          "Payment provider returned %s for %s %s: %s",
          response.status_code,
          method,
          path,
          message,
      )
      if response.status_code == 404:
        raise ResourceNotFoundError(message)
      raise PaymentProviderError(message)
    return response.json()

  def _headers(self) -> Dict[str, str]:
    return {"Authorization": f"Bearer {self.secret_key}"}

  async def find_or_create_customer(
      self, email: str, name: Optional[str] = None
  ) -> str:
    existing = await self._request(
        "GET", "/v1/customers", {"email": email, "limit": 1}
    )
    if existing.get("data"):
      return existing["data"][0]["id"]
    created = await self._request(
        "POST", "/v1/customers", {"email": email, "name": name}
    )
    return created["id"]

  async def create_checkout_session(
      self,
      *,
      line_items: List[Dict[str, Any]],
      metadata: Dict[str, str],
      success_url: str,
      cancel_url: str,
      customer: Optional[str] = None,
      customer_email: Optional[str] = None,
  ) -> PaymentSession:
    params = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": line_items,
        "success_url": success_url,
        "cancel_url": cancel_url,
        "billing_address_collection": "required",
        "shipping_address_collection": {"allowed_countries": ["US", "CA"]},
        "metadata": metadata,
    }
    if customer:
      params["customer"] = customer
    elif customer_email:
      params["customer_email"] = customer_email
    obj = await self._request("POST", "/v1/checkout/sessions", params)
    return session_from_stripe(obj)

  async def retrieve_session(
      self, session_id: str, expand: Sequence[str] = ()
  ) -> PaymentSession:
    obj = await self._request(
        "GET", f"/v1/checkout/sessions/{session_id}", {"expand": list(expand)}
    )
    return session_from_stripe(obj)

  async def list_session_line_items(
      self, session_id: str
  ) -> List[SessionLineItem]:
    items = []
    params: Dict[str, Any] = {"limit": 100, "expand": ["data.price.product"]}
    while True:
      page = await self._request(
          "GET", f"/v1/checkout/sessions/{session_id}/line_items", params
      )
      data = page.get("data") or []
      items.extend(line_item_from_stripe(obj) for obj in data)
      if not page.get("has_more") or not data:
        return items
      params["starting_after"] = data[-1]["id"]

  async def expire_session(self, session_id: str) -> None:
    await self._request("POST", f"/v1/checkout/sessions/{session_id}/expire")

  def construct_webhook_event(
      self, payload: bytes, signature_header: Optional[str]
  ) -> WebhookEvent:
    verify_webhook_signature(payload, signature_header, self.webhook_secret)
    return parse_webhook_event(payload)


class MockPaymentProcessor(PaymentProcessor):
  """In-memory payment processor for local runs and tests.

  Sessions start `unpaid`; `complete_payment` simulates the customer paying on
  the hosted page.
  """

  def __init__(
      self,
      webhook_secret: str = "whsec_mock",
      checkout_base_url: str = "https://checkout.mock/pay",
  ):
    self.webhook_secret = webhook_secret
    self.checkout_base_url = checkout_base_url
    self.sessions: Dict[str, PaymentSession] = {}
    self.session_line_items: Dict[str, List[SessionLineItem]] = {}
    self.customers: Dict[str, str] = {}
    self.expired_sessions: List[str] = []

  async def find_or_create_customer(
      self, email: str, name: Optional[str] = None
  ) -> str:
    del name  # Unused.
    if email not in self.customers:
      self.customers[email] = f"cus_{uuid.uuid4().hex[:14]}"
    return self.customers[email]

  async def create_checkout_session(
      self,
      *,
      line_items: List[Dict[str, Any]],
      metadata: Dict[str, str],
      success_url: str,
      cancel_url: str,
      customer: Optional[str] = None,
      customer_email: Optional[str] = None,
  ) -> PaymentSession:
    del success_url, cancel_url  # Unused.
    session_id = f"cs_test_{uuid.uuid4().hex}"
    session = PaymentSession(
        id=session_id,
        url=f"{self.checkout_base_url}/{session_id}",
        status="open",
        payment_status=PaymentStatus.UNPAID.value,
        metadata=dict(metadata),
        customer=customer,
        customer_email=customer_email,
    )
    self.sessions[session_id] = session
    self.session_line_items[session_id] = [
        self._line_item(item) for item in line_items
    ]
    return session.model_copy(deep=True)

  def _line_item(self, item: Dict[str, Any]) -> SessionLineItem:
    price_data = item.get("price_data") or {}
    product_data = price_data.get("product_data") or {}
    return SessionLineItem(
        description=product_data.get("name"),
        quantity=item.get("quantity") or 0,
        unit_amount=price_data.get("unit_amount") or 0,
        currency=price_data.get("currency") or "usd",
        product_name=product_data.get("name"),
        product_images=list(product_data.get("images") or []),
        product_metadata=dict(product_data.get("metadata") or {}),
    )

  def complete_payment(
      self,
      session_id: str,
      payment_intent: Optional[str] = None,
      shipping_address: Optional[Dict[str, Optional[str]]] = None,
  ) -> PaymentSession:
    """Marks a session as paid, as if the customer finished the hosted page."""
    session = self.sessions[session_id]
    session.status = "complete"
    session.payment_status = PaymentStatus.PAID.value
    session.payment_intent = (
        payment_intent or f"pi_{uuid.uuid4().hex[:24]}"
    )
    if shipping_address is not None:
      session.shipping_address = shipping_address
    return session.model_copy(deep=True)

  async def retrieve_session(
      self, session_id: str, expand: Sequence[str] = ()
  ) -> PaymentSession:
    del expand  # Unused.
    if session_id not in self.sessions:
      raise ResourceNotFoundError(f"No such checkout session: '{session_id}'")
    return self.sessions[session_id].model_copy(deep=True)

  async def list_session_line_items(
      self, session_id: str
  ) -> List[SessionLineItem]:
    if session_id not in self.session_line_items:
      raise ResourceNotFoundError(f"No such checkout session: '{session_id}'")
    return [
        item.model_copy(deep=True)
        for item in self.session_line_items[session_id]
    ]

  async def expire_session(self, session_id: str) -> None:
    if session_id not in self.sessions:
      raise ResourceNotFoundError(f"No such checkout session: '{session_id}'")
    self.sessions[session_id].status = "expired"
    self.expired_sessions.append(session_id)

  def sign_payload(self, payload: bytes, timestamp: Optional[int] = None) -> str:
    """Returns a signature header for a payload, as the processor would send."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = compute_webhook_signature(
        payload, self.webhook_secret, timestamp
    )
    return f"t={timestamp},v1={signature}"

  def construct_webhook_event(
      self, payload: bytes, signature_header: Optional[str]
  ) -> WebhookEvent:
    verify_webhook_signature(payload, signature_header, self.webhook_secret)
    return parse_webhook_event(payload)
