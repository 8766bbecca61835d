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

"""Checkout, payment webhook and reservation routes."""

from typing import Optional

from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Header
from fastapi import Query
from fastapi import Request

from marketplace_checkout import dependencies
from marketplace_checkout.models import AvailableTimeSlotsResponse
from marketplace_checkout.models import CheckoutCompleteRequest
from marketplace_checkout.models import CheckoutCompleteResponse
from marketplace_checkout.models import CheckoutSessionRequest
from marketplace_checkout.models import CheckoutSessionResponse
from marketplace_checkout.models import TimeSlotCheckRequest
from marketplace_checkout.models import TimeSlotCheckResponse
from marketplace_checkout.models import WebhookResponse
from marketplace_checkout.services.checkout_completion_service import CheckoutCompletionService
from marketplace_checkout.services.checkout_session_service import CheckoutSessionService
from marketplace_checkout.services.reservation_service import ReservationService
from marketplace_checkout.services.webhook_service import WebhookService

router = APIRouter()


@router.post(
    "/payments/checkout-session",
    response_model=CheckoutSessionResponse,
    operation_id="create_checkout_session",
)
async def create_checkout_session(
    checkout_request: CheckoutSessionRequest = Body(...),
    identity: dependencies.CustomerIdentity = Depends(
        dependencies.customer_identity
    ),
    checkout_service: CheckoutSessionService = Depends(
        dependencies.get_checkout_session_service
    ),
) -> CheckoutSessionResponse:
  """Create a hosted payment session for the cart and stage its orders."""
  return await checkout_service.create_checkout_session(
      checkout_request, identity.customer_id, identity.email
  )


@router.post(
    "/payments/checkout-complete",
    response_model=CheckoutCompleteResponse,
    operation_id="complete_checkout",
)
async def complete_checkout(
    complete_request: CheckoutCompleteRequest = Body(...),
    identity: dependencies.CustomerIdentity = Depends(
        dependencies.customer_identity
    ),
    completion_service: CheckoutCompletionService = Depends(
        dependencies.get_checkout_completion_service
    ),
) -> CheckoutCompleteResponse:
  """Finalize a paid payment session into orders."""
  order_ids = await completion_service.complete_checkout(
      complete_request.session_id, identity.customer_id
  )
  return CheckoutCompleteResponse(
      order_ids=order_ids, message="Order placed successfully."
  )


@router.post(
    "/payments/webhook",
    response_model=WebhookResponse,
    operation_id="payment_webhook",
)
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    webhook_service: WebhookService = Depends(
        dependencies.get_webhook_service
    ),
) -> WebhookResponse:
  """Receive a signed payment processor event."""
  # The signature covers the raw body, so it must not be parsed first.
  payload = await request.body()
  await webhook_service.handle(payload, stripe_signature)
  return WebhookResponse(received=True)


@router.get(
    "/reservations/available-time-slots",
    response_model=AvailableTimeSlotsResponse,
    operation_id="get_available_time_slots",
)
async def get_available_time_slots(
    product_id: str = Query(""),
    date: str = Query(""),
    reservation_service: ReservationService = Depends(
        dependencies.get_reservation_service
    ),
) -> AvailableTimeSlotsResponse:
  """List a day's reservation slots with their availability."""
  return await reservation_service.available_time_slots(product_id, date)


@router.post(
    "/reservations/check-time-slot",
    response_model=TimeSlotCheckResponse,
    operation_id="check_time_slot",
)
async def check_time_slot(
    check_request: TimeSlotCheckRequest = Body(...),
    reservation_service: ReservationService = Depends(
        dependencies.get_reservation_service
    ),
) -> TimeSlotCheckResponse:
  """Check whether one reservation slot is still free."""
  return await reservation_service.check_time_slot(
      check_request.product_id, check_request.date, check_request.time
  )
