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

"""Shared configuration and startup logic for the marketplace server."""

import contextlib
import logging
import os
from typing import Optional

from absl import flags
from fastapi import FastAPI
from pydantic import BaseModel

from marketplace_checkout import db
from marketplace_checkout.exceptions import MarketplaceError
from marketplace_checkout.services.order_cleanup_service import OrderCleanupService
from marketplace_checkout.services.payment_processor import MockPaymentProcessor
from marketplace_checkout.services.payment_processor import PaymentProcessor
from marketplace_checkout.services.payment_processor import StripePaymentProcessor

logger = logging.getLogger(__name__)

FLAGS = flags.FLAGS

# Define flags only if they haven't been defined yet (to avoid duplicates
# during tests or re-imports)
try:
  flags.DEFINE_string("products_db_path", None, "Path to products DB")
  flags.DEFINE_string("transactions_db_path", None, "Path to transactions DB")
  flags.DEFINE_integer("port", None, "Port to run the server on")
  flags.DEFINE_string(
      "stripe_secret_key",
      os.environ.get("STRIPE_SECRET_KEY"),
      "Stripe secret key. Without one an in-memory payment processor is used"
      " and --stripe_webhook_secret is required.",
  )
  flags.DEFINE_string(
      "stripe_webhook_secret",
      os.environ.get("STRIPE_WEBHOOK_SECRET"),
      "Signing secret used to verify payment processor webhooks",
  )
  flags.DEFINE_string(
      "app_base_url",
      "http://localhost:5173",
      "Storefront URL the payment page redirects back to",
  )
  flags.DEFINE_float(
      "payment_timeout_seconds",
      10.0,
      "Timeout for payment processor requests",
  )
  flags.DEFINE_float(
      "pending_order_timeout_hours",
      24,
      "Pending orders older than this are cancelled by the cleanup sweep",
  )
  flags.DEFINE_float(
      "cleanup_interval_hours", 6, "Hours between order cleanup sweeps"
  )
  flags.DEFINE_boolean(
      "enable_order_cleanup", True, "Run the pending order cleanup sweep"
  )
except flags.DuplicateFlagError:
  pass


class Settings(BaseModel):
  """A snapshot of the server configuration."""

  products_db_path: Optional[str] = None
  transactions_db_path: Optional[str] = None
  port: Optional[int] = None
  stripe_secret_key: Optional[str] = None
  stripe_webhook_secret: Optional[str] = None
  app_base_url: str = "http://localhost:5173"
  payment_timeout_seconds: float = 10.0
  pending_order_timeout_hours: float = 24
  cleanup_interval_hours: float = 6
  enable_order_cleanup: bool = True


def get_settings() -> Settings:
  """Returns the flag values, or the defaults when flags are not parsed."""
  if not FLAGS.is_parsed():
    return Settings()
  return Settings(**{name: FLAGS[name].value for name in Settings.model_fields})


def build_payment_processor(settings: Settings) -> PaymentProcessor:
  """Builds the Stripe client, or the in-memory processor without a key.

  Raises:
    MarketplaceError: If neither a Stripe key nor a webhook secret is set.
  """
  if settings.stripe_secret_key:
    return StripePaymentProcessor(
        settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout=settings.payment_timeout_seconds,
    )
  if not settings.stripe_webhook_secret:
    raise MarketplaceError(
        "A webhook secret (--stripe_webhook_secret) is required to run the"
        " in-memory payment processor.",
        code="CONFIGURATION_ERROR",
    )
  logger.warning(
      "No Stripe secret key configured; using the in-memory payment processor"
  )
  return MockPaymentProcessor(webhook_secret=settings.stripe_webhook_secret)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
  """Shared lifespan manager for databases, payments and the cleanup sweep."""
  settings = get_settings()
  # In tests or if flags aren't set, these might be None, handled by caller
  if settings.products_db_path and settings.transactions_db_path:
    await db.manager.init_dbs(
        settings.products_db_path, settings.transactions_db_path
    )

  app.state.settings = settings
  app.state.payment_processor = build_payment_processor(settings)
  app.state.order_cleanup = None
  if settings.enable_order_cleanup and db.manager.is_initialized:
    app.state.order_cleanup = OrderCleanupService(
        db.manager.transactions_session_factory,
        timeout_hours=settings.pending_order_timeout_hours,
    )
    app.state.order_cleanup.start(settings.cleanup_interval_hours)

  yield

  if app.state.order_cleanup is not None:
    await app.state.order_cleanup.stop()
  await db.manager.close()
