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

"""Order status routes for the gifting order server."""

from typing import Any

import dependencies
from fastapi import APIRouter
from fastapi import Depends
from fastapi import Path
from services.order_ledger import order_to_dict
from services.order_ledger import OrderLedger

router = APIRouter()


@router.get(
    "/orders/{id}",
    response_model=dict[str, Any],
    operation_id="get_order",
)
async def get_order(
    order_id: str = Path(..., alias="id"),
    ledger: OrderLedger = Depends(dependencies.get_order_ledger),
) -> dict[str, Any]:
  """Get an order by ID."""
  order = await ledger.get_order(order_id)
  return order_to_dict(order)
