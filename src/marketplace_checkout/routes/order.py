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

"""Order management routes for the marketplace server."""

from typing import Dict

from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Path

from marketplace_checkout import dependencies
from marketplace_checkout.models import OrderStatusUpdateRequest
from marketplace_checkout.models import OrderView
from marketplace_checkout.models import RefundRequest
from marketplace_checkout.models import RefundView
from marketplace_checkout.services.order_cleanup_service import CleanupStats
from marketplace_checkout.services.order_cleanup_service import OrderCleanupService
from marketplace_checkout.services.order_service import OrderService

router = APIRouter()


@router.get(
    "/orders/{id}",
    response_model=OrderView,
    operation_id="get_order",
)
async def get_order(
    order_id: str = Path(..., alias="id"),
    identity: dependencies.CustomerIdentity = Depends(
        dependencies.require_customer
    ),
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> OrderView:
  """Get one of the caller's orders by ID."""
  return await order_service.get_order(order_id, identity.customer_id)


@router.get(
    "/admin/orders/{id}",
    response_model=OrderView,
    operation_id="admin_get_order",
)
async def admin_get_order(
    order_id: str = Path(..., alias="id"),
    staff_id: str = Depends(dependencies.require_staff),
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> OrderView:
  """Get any order by ID."""
  del staff_id  # Unused
  return await order_service.get_order(order_id)


@router.put(
    "/admin/orders/{id}/status",
    response_model=OrderView,
    operation_id="update_order_status",
)
async def update_order_status(
    order_id: str = Path(..., alias="id"),
    update: OrderStatusUpdateRequest = Body(...),
    staff_id: str = Depends(dependencies.require_staff),
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> OrderView:
  """Change an order's status and/or attach a tracking number."""
  del staff_id  # Unused
  return await order_service.update_status(
      order_id, status=update.status, tracking_number=update.tracking_number
  )


@router.post(
    "/admin/orders/{id}/refunds",
    response_model=RefundView,
    operation_id="record_refund",
)
async def record_refund(
    order_id: str = Path(..., alias="id"),
    refund: RefundRequest = Body(...),
    staff_id: str = Depends(dependencies.require_staff),
    order_service: OrderService = Depends(dependencies.get_order_service),
) -> RefundView:
  """Record a refund issued against an order."""
  return await order_service.record_refund(
      order_id, refund, refunded_by=staff_id
  )


@router.get(
    "/system/cleanup/orders/status",
    response_model=Dict[str, bool],
    operation_id="get_order_cleanup_status",
)
async def get_order_cleanup_status(
    staff_id: str = Depends(dependencies.require_staff),
    cleanup_service: OrderCleanupService = Depends(
        dependencies.get_order_cleanup_service
    ),
) -> Dict[str, bool]:
  """Report whether the pending order sweep is scheduled or running."""
  del staff_id  # Unused
  return cleanup_service.get_status()


@router.post(
    "/system/cleanup/orders",
    response_model=CleanupStats,
    operation_id="run_order_cleanup",
)
async def run_order_cleanup(
    staff_id: str = Depends(dependencies.require_staff),
    cleanup_service: OrderCleanupService = Depends(
        dependencies.get_order_cleanup_service
    ),
) -> CleanupStats:
  """Run the pending order sweep now."""
  del staff_id  # Unused
  return await cleanup_service.cancel_pending_orders()
