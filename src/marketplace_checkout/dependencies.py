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

"""FastAPI dependencies for the marketplace server.

This module contains dependency injection logic for FastAPI endpoints,
including:
- Caller identity, as forwarded by the upstream auth layer
  (X-Customer-Id / X-Customer-Email for customers, X-Staff-Id for staff).
- Database session management (Products and Transactions DBs).
- The payment processor and settings held on the application state.
- Service instantiation for every route.
"""

from typing import AsyncGenerator, Optional

from fastapi import Depends
from fastapi import Header
from fastapi import HTTPException
from fastapi import Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace_checkout import config
from marketplace_checkout import db
from marketplace_checkout.services.checkout_completion_service import CheckoutCompletionService
from marketplace_checkout.services.checkout_session_service import CheckoutSessionService
from marketplace_checkout.services.order_cleanup_service import OrderCleanupService
from marketplace_checkout.services.order_service import OrderService
from marketplace_checkout.services.payment_processor import PaymentProcessor
from marketplace_checkout.services.reservation_service import ReservationService
from marketplace_checkout.services.stock_operation_service import StockOperationService
from marketplace_checkout.services.webhook_service import WebhookService


class CustomerIdentity(BaseModel):
  """The customer a request acts for; empty for guests."""

  customer_id: Optional[str] = None
  email: Optional[str] = None


async def customer_identity(
    x_customer_id: Optional[str] = Header(None),
    x_customer_email: Optional[str] = Header(None),
) -> CustomerIdentity:
  """Extracts the (optional) customer identity headers."""
  return CustomerIdentity(
      customer_id=(x_customer_id or "").strip() or None,
      email=(x_customer_email or "").strip() or None,
  )


async def require_customer(
    identity: CustomerIdentity = Depends(customer_identity),
) -> CustomerIdentity:
  """Requires a signed-in customer."""
  if not identity.customer_id:
    raise HTTPException(status_code=401, detail="Authentication required")
  return identity


async def require_staff(
    x_staff_id: Optional[str] = Header(None),
) -> str:
  """Requires a staff member and returns their id."""
  staff_id = (x_staff_id or "").strip()
  if not staff_id:
    raise HTTPException(status_code=401, detail="Staff authentication required")
  return staff_id


def get_settings(request: Request) -> config.Settings:
  """Dependency provider for the server settings."""
  settings = getattr(request.app.state, "settings", None)
  return settings or config.get_settings()


def get_payment_processor(request: Request) -> PaymentProcessor:
  """Dependency provider for the payment processor."""
  processor = getattr(request.app.state, "payment_processor", None)
  if processor is None:
    raise HTTPException(
        status_code=503, detail="Payment processing is not configured"
    )
  return processor


async def get_products_db() -> AsyncGenerator[AsyncSession, None]:
  """Dependency provider for Products DB session."""
  async with db.manager.products_session_factory() as session:
    yield session


async def get_transactions_db() -> AsyncGenerator[AsyncSession, None]:
  """Dependency provider for Transactions DB session."""
  async with db.manager.transactions_session_factory() as session:
    yield session


def get_order_service(
    transactions_session: AsyncSession = Depends(get_transactions_db),
) -> OrderService:
  """Dependency provider for OrderService."""
  return OrderService(transactions_session)


def get_reservation_service(
    transactions_session: AsyncSession = Depends(get_transactions_db),
) -> ReservationService:
  """Dependency provider for ReservationService."""
  return ReservationService(transactions_session)


def get_checkout_session_service(
    payment_processor: PaymentProcessor = Depends(get_payment_processor),
    transactions_session: AsyncSession = Depends(get_transactions_db),
    products_session: AsyncSession = Depends(get_products_db),
    settings: config.Settings = Depends(get_settings),
) -> CheckoutSessionService:
  """Dependency provider for CheckoutSessionService."""
  return CheckoutSessionService(
      payment_processor,
      transactions_session,
      products_session,
      settings.app_base_url,
  )


def get_checkout_completion_service(
    payment_processor: PaymentProcessor = Depends(get_payment_processor),
    transactions_session: AsyncSession = Depends(get_transactions_db),
) -> CheckoutCompletionService:
  """Dependency provider for CheckoutCompletionService."""
  return CheckoutCompletionService(payment_processor, transactions_session)


def get_webhook_service(
    payment_processor: PaymentProcessor = Depends(get_payment_processor),
    completion_service: CheckoutCompletionService = Depends(
        get_checkout_completion_service
    ),
    order_service: OrderService = Depends(get_order_service),
) -> WebhookService:
  """Dependency provider for WebhookService."""
  return WebhookService(payment_processor, completion_service, order_service)


def get_stock_operation_service(
    transactions_session: AsyncSession = Depends(get_transactions_db),
    products_session: AsyncSession = Depends(get_products_db),
) -> StockOperationService:
  """Dependency provider for StockOperationService."""
  return StockOperationService(transactions_session, products_session)


def get_order_cleanup_service(
    request: Request,
    settings: config.Settings = Depends(get_settings),
) -> OrderCleanupService:
  """Dependency provider for the (shared) OrderCleanupService."""
  cleanup = getattr(request.app.state, "order_cleanup", None)
  if cleanup is None:
    cleanup = OrderCleanupService(
        db.manager.transactions_session_factory,
        timeout_hours=settings.pending_order_timeout_hours,
    )
    request.app.state.order_cleanup = cleanup
  return cleanup
