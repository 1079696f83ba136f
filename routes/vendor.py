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

"""Fulfillment vendor callback route.

The vendor retries any callback that does not get a 200, so every request is
acknowledged; events that cannot be applied are logged instead.
"""

import logging
from typing import Any, Optional

import dependencies
from exceptions import ResourceNotFoundError
from fastapi import APIRouter
from fastapi import Depends
from fastapi import Path
from fastapi import Query
from fastapi import Request
from models import parse_vendor_event
from pydantic import ValidationError
from services.fulfillment_service import FulfillmentDispatcher

logger = logging.getLogger(__name__)

router = APIRouter()


def _order_id_from_body(body: dict[str, Any]) -> Optional[str]:
  notes = (body.get("request") or {}).get("client_notes") or body.get(
      "client_notes"
  )
  if isinstance(notes, dict):
    return notes.get("order_id")
  return None


@router.post(
    "/webhooks/vendor/{event_type}",
    response_model=dict[str, Any],
    operation_id="vendor_webhook",
)
async def vendor_webhook(
    request: Request,
    event_type: str = Path(...),
    order_id: Optional[str] = Query(None),
    token: Optional[str] = Query(None),
    dispatcher: FulfillmentDispatcher = Depends(dependencies.get_dispatcher),
) -> dict[str, Any]:
  """Receive a status callback from the fulfillment vendor.

  Only callbacks carrying the token issued with the order's submission are
  applied; anything else is acknowledged and dropped.
  """
  try:
    body = await request.json()
  except ValueError:
    logger.warning("Vendor %s callback with a non-JSON body", event_type)
    body = {}
  if not isinstance(body, dict):
    body = {}

  order_id = order_id or _order_id_from_body(body)
  if not order_id:
    logger.warning("Vendor %s callback without an order ID", event_type)
    return {"received": True, "applied": False}

  try:
    if not await dispatcher.callback_token_matches(order_id, token):
      logger.warning(
          "Vendor %s callback for order %s has a bad token",
          event_type,
          order_id,
      )
      return {"received": True, "applied": False}
    event = parse_vendor_event(event_type, body)
    status = await dispatcher.ingest_vendor_event(order_id, event)
  except ValidationError as e:
    logger.warning("Malformed vendor %s callback: %s", event_type, e)
    return {"received": True, "applied": False}
  except ResourceNotFoundError:
    logger.warning(
        "Vendor %s callback for unknown order %s", event_type, order_id
    )
    return {"received": True, "applied": False}
  return {"received": True, "applied": True, "status": status}
