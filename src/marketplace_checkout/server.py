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

"""Marketplace Checkout Server (Python/FastAPI)."""

import logging
import sys
from typing import Sequence

from absl import app as absl_app
from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse
import uvicorn

from marketplace_checkout import config
from marketplace_checkout.exceptions import MarketplaceError
from marketplace_checkout.exceptions import ReservationConflictError
from marketplace_checkout.routes.checkout import router as checkout_router
from marketplace_checkout.routes.order import router as order_router
from marketplace_checkout.routes.stock import router as stock_router

# --- App Setup ---

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Marketplace Checkout Service",
    version="0.1.0",
    description="Checkout, order finalization and stock ledger service",
    lifespan=config.lifespan,
)


@app.exception_handler(MarketplaceError)
async def marketplace_exception_handler(
    request: Request, exc: MarketplaceError
):
  """Handles marketplace exceptions and converts them to JSON responses."""
  del request  # Unused.
  content = {"detail": exc.message, "code": exc.code}
  if isinstance(exc, ReservationConflictError):
    content["conflicts"] = [
        {"product_id": product_id, "date": date, "time": time}
        for product_id, date, time in exc.conflicts
    ]
  return JSONResponse(status_code=exc.status_code, content=content)


app.include_router(checkout_router)
app.include_router(order_router)
app.include_router(stock_router)


def main(argv: Sequence[str]) -> None:
  """Main entry point for the Marketplace Checkout Server."""
  del argv  # Unused.

  if (
      config.FLAGS.products_db_path is None
      or config.FLAGS.transactions_db_path is None
      or config.FLAGS.port is None
  ):
    logger.error(
        "Both --products_db_path, --transactions_db_path, and --port must be"
        " provided."
    )
    print("\nUsage:")
    print(config.FLAGS.main_module_help())
    sys.exit(1)

  uvicorn.run(app, host="0.0.0.0", port=config.FLAGS.port)


def run() -> None:
  """Console script entry point."""
  absl_app.run(main)


if __name__ == "__main__":
  run()
