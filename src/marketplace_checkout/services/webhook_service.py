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

"""Payment processor webhook handling."""

import logging
from typing import Optional

from marketplace_checkout.enums import PaymentStatus
from marketplace_checkout.enums import WebhookEventType
from marketplace_checkout.models import WebhookEvent
from marketplace_checkout.services.checkout_completion_service import CheckoutCompletionService
from marketplace_checkout.services.order_service import OrderService
from marketplace_checkout.services.payment_processor import PaymentProcessor
from marketplace_checkout.services.payment_processor import session_from_stripe

logger = logging.getLogger(__name__)

_FINALIZE_EVENTS = frozenset({
    WebhookEventType.SESSION_COMPLETED.value,
    WebhookEventType.SESSION_ASYNC_PAYMENT_SUCCEEDED.value,
})
_PURGE_EVENTS = frozenset({
    WebhookEventType.SESSION_EXPIRED.value,
    WebhookEventType.SESSION_ASYNC_PAYMENT_FAILED.value,
})


class WebhookService:
  """Verifies webhook deliveries and dispatches session events.

  Completed sessions are finalized through the same idempotent path as the
  client confirmation call. Expired or failed sessions have their staged
  orders purged. Any other event type is acknowledged and ignored so the
  processor keeps delivering.
  """

  def __init__(
      self,
      payment_processor: PaymentProcessor,
      completion_service: CheckoutCompletionService,
      order_service: OrderService,
  ):
    self.payment_processor = payment_processor
    self.completion_service = completion_service
    self.order_service = order_service

  async def handle(
      self, payload: bytes, signature_header: Optional[str]
  ) -> WebhookEvent:
    """Handles one webhook delivery.

    Args:
      payload: The raw request body.
      signature_header: The `Stripe-Signature` header.

    Returns:
      The verified event.

    Raises:
      WebhookSignatureError: If the signature does not verify.
      CheckoutFinalizationError: If a completed session cannot be finalized.
    """
    event = self.payment_processor.construct_webhook_event(
        payload, signature_header
    )
    logger.info("Received webhook event %s (%s)", event.type, event.id)

    if event.type in _FINALIZE_EVENTS:
      payment_session = session_from_stripe(event.data_object)
      if (
          event.type == WebhookEventType.SESSION_COMPLETED.value
          and payment_session.payment_status != PaymentStatus.PAID.value
      ):
        # Delayed payment methods complete unpaid; the async success event
        # finalizes them.
        logger.info(
            "Session %s completed with payment status %s; awaiting payment",
            payment_session.id,
            payment_session.payment_status,
        )
        return event
      order_ids = await self.completion_service.finalize_session(
          payment_session
      )
      logger.info(
          "Webhook finalized session %s: orders %s",
          payment_session.id,
          order_ids,
      )
    elif event.type in _PURGE_EVENTS:
      session_id = event.data_object.get("id")
      if session_id:
        await self.order_service.purge_staged_orders(session_id)
    else:
      logger.info("Ignoring webhook event type %s", event.type)
    return event
