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

"""Stock operation routes for staff tooling."""

from typing import Optional

from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Query

from marketplace_checkout import dependencies
from marketplace_checkout.enums import StockOperationType
from marketplace_checkout.models import StockOperationList
from marketplace_checkout.models import StockOperationRequest
from marketplace_checkout.models import StockOperationResult
from marketplace_checkout.services.stock_operation_service import StockOperationService

router = APIRouter()


@router.post(
    "/stock-operations",
    response_model=StockOperationResult,
    status_code=201,
    operation_id="create_stock_operation",
)
async def create_stock_operation(
    operation: StockOperationRequest = Body(...),
    staff_id: str = Depends(dependencies.require_staff),
    stock_service: StockOperationService = Depends(
        dependencies.get_stock_operation_service
    ),
) -> StockOperationResult:
  """Record a stock movement and apply it to inventory."""
  return await stock_service.create_stock_operation(operation, staff_id)


@router.get(
    "/stock-operations",
    response_model=StockOperationList,
    operation_id="list_stock_operations",
)
async def list_stock_operations(
    product_id: Optional[str] = Query(None),
    operation_type: Optional[StockOperationType] = Query(None, alias="type"),
    performed_by: Optional[str] = Query(None),
    order_id: Optional[str] = Query(None),
    limit: int = Query(50),
    offset: int = Query(0),
    staff_id: str = Depends(dependencies.require_staff),
    stock_service: StockOperationService = Depends(
        dependencies.get_stock_operation_service
    ),
) -> StockOperationList:
  """List stock movements, newest first."""
  del staff_id  # Unused
  return await stock_service.list_stock_operations(
      product_id=product_id,
      operation_type=operation_type,
      performed_by=performed_by,
      order_id=order_id,
      limit=limit,
      offset=offset,
  )
