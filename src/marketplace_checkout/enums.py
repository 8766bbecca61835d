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

"""Enumerations for the marketplace checkout server.

This module defines the standard enums used throughout the server to
represent order states, stock movement directions, refund states and the
payment processor events the webhook handler understands.
"""

import enum


class OrderStatus(str, enum.Enum):
  PENDING_PAYMENT = "pending_payment"
  PENDING = "pending"
  PROCESSING = "processing"
  SHIPPED = "shipped"
  DELIVERED = "delivered"
  CANCELLED = "cancelled"
  RETURN_PROCESSING = "return_processing"
  RETURNED = "returned"


class StockOperationType(str, enum.Enum):
  IN = "in"
  OUT = "out"


class RefundStatus(str, enum.Enum):
  SUCCEEDED = "succeeded"
  PENDING = "pending"
  FAILED = "failed"
  CANCELED = "canceled"


class PaymentStatus(str, enum.Enum):
  PAID = "paid"
  UNPAID = "unpaid"
  NO_PAYMENT_REQUIRED = "no_payment_required"


class WebhookEventType(str, enum.Enum):
  SESSION_COMPLETED = "checkout.session.completed"
  SESSION_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
  SESSION_ASYNC_PAYMENT_FAILED = "checkout.session.async_payment_failed"
  SESSION_EXPIRED = "checkout.session.expired"
