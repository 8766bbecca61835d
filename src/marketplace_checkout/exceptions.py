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

"""Custom exceptions for the marketplace checkout server."""

from typing import List, Tuple


class MarketplaceError(Exception):
  """Base class for all marketplace exceptions."""

  def __init__(
      self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500
  ):
    self.message = message
    self.code = code
    self.status_code = status_code
    super().__init__(self.message)


class InvalidRequestError(MarketplaceError):
  """Raised when the request is invalid (e.g. missing fields)."""

  def __init__(self, message: str):
    super().__init__(message, code="INVALID_REQUEST", status_code=400)


class ForbiddenError(MarketplaceError):
  """Raised when a resource exists but is not owned by the caller."""

  def __init__(self, message: str):
    super().__init__(message, code="FORBIDDEN", status_code=403)


class ResourceNotFoundError(MarketplaceError):
  """Raised when a requested resource is not found."""

  def __init__(self, message: str):
    super().__init__(message, code="RESOURCE_NOT_FOUND", status_code=404)


class ReservationConflictError(MarketplaceError):
  """Raised when reservation time slots are already booked.

  Attributes:
    conflicts: Every conflicting (product_id, date, time) slot.
  """

  def __init__(self, conflicts: List[Tuple[str, str, str]]):
    self.conflicts = conflicts
    slots = ", ".join(f"{date} at {time}" for _, date, time in conflicts)
    super().__init__(
        "Reservation time slot conflict: The following time slots are"
        f" already booked: {slots}. Please select a different time slot.",
        code="RESERVATION_CONFLICT",
        status_code=409,
    )


class InvalidStatusTransitionError(MarketplaceError):
  """Raised when an order cannot move from its status to the target."""

  def __init__(self, message: str):
    super().__init__(message, code="INVALID_STATUS_TRANSITION", status_code=409)


class InsufficientStockError(MarketplaceError):
  """Raised when a stock-out would drive inventory negative."""

  def __init__(self, message: str):
    super().__init__(message, code="INSUFFICIENT_STOCK", status_code=400)


class WebhookSignatureError(MarketplaceError):
  """Raised when a webhook payload fails signature verification."""

  def __init__(self, message: str):
    super().__init__(message, code="INVALID_SIGNATURE", status_code=400)


class PaymentProviderError(MarketplaceError):
  """Raised when the payment processor is unreachable or rejects a call."""

  def __init__(self, message: str, status_code: int = 502):
    super().__init__(
        message, code="PAYMENT_PROVIDER_ERROR", status_code=status_code
    )


class CheckoutUnavailableError(MarketplaceError):
  """Raised when checkout failed transiently and the customer should retry."""

  def __init__(self, message: str):
    super().__init__(message, code="CHECKOUT_UNAVAILABLE", status_code=503)


class CheckoutFinalizationError(MarketplaceError):
  """Raised when a payment session cannot be turned into orders."""

  def __init__(self, message: str, status_code: int = 400):
    super().__init__(
        message, code="CHECKOUT_FINALIZATION_FAILED", status_code=status_code
    )
