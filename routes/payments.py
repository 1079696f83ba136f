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

"""Checkout, reconciliation and payment processor webhook routes."""

from typing import Any, Optional

import dependencies
from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Header
from fastapi import Request
from models import CheckoutSessionResponse
from models import CreateCheckoutSessionRequest
from models import CreatePaymentIntentRequest
from models import PaymentIntentResponse
from models import ReconcileResponse
from models import ReconcileSessionRequest
from services.payment_intent_service import PaymentIntentService
from services.reconciliation_service import ReconciliationService
from services.webhook_service import WebhookService

router = APIRouter()


@router.post(
    "/payments/intents",
    response_model=PaymentIntentResponse,
    operation_id="create_payment_intent",
)
async def create_payment_intent(
    request: CreatePaymentIntentRequest = Body(...),
    payment_service: PaymentIntentService = Depends(
        dependencies.get_payment_intent_service
    ),
    dispatch: dependencies.DispatchTrigger = Depends(
        dependencies.get_dispatch_trigger
    ),
) -> PaymentIntentResponse:
  """Create a payment intent and its pending order."""
  response = await payment_service.create_payment_intent(request)
  if response.dispatch_queued:
    dispatch.schedule([response.order_id])
  return response


@router.post(
    "/payments/checkout-sessions",
    response_model=CheckoutSessionResponse,
    operation_id="create_checkout_session",
)
async def create_checkout_session(
    request: CreateCheckoutSessionRequest = Body(...),
    payment_service: PaymentIntentService = Depends(
        dependencies.get_payment_intent_service
    ),
) -> CheckoutSessionResponse:
  """Create a hosted checkout session and its pending order."""
  return await payment_service.create_checkout_session(request)


@router.post(
    "/payments/reconcile",
    response_model=ReconcileResponse,
    operation_id="reconcile_checkout_session",
)
async def reconcile_checkout_session(
    request: ReconcileSessionRequest = Body(...),
    reconciler: ReconciliationService = Depends(
        dependencies.get_reconciliation_service
    ),
    dispatch: dependencies.DispatchTrigger = Depends(
        dependencies.get_dispatch_trigger
    ),
) -> ReconcileResponse:
  """Ensure a paid checkout session has a confirmed order."""
  outcome = await reconciler.reconcile_checkout_session(request.session_id)
  if outcome.dispatch_queued:
    dispatch.schedule([outcome.order.id])
  return ReconcileResponse(
      order_id=outcome.order.id,
      order_number=outcome.order.order_number,
      status=outcome.order.status,
      created=outcome.created,
      dispatch_queued=outcome.dispatch_queued,
  )


@router.post(
    "/webhooks/stripe",
    response_model=dict[str, Any],
    operation_id="payment_processor_webhook",
)
async def payment_processor_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    webhook_service: WebhookService = Depends(dependencies.get_webhook_service),
    dispatch: dependencies.DispatchTrigger = Depends(
        dependencies.get_dispatch_trigger
    ),
) -> dict[str, Any]:
  """Receive an event from the payment processor."""
  payload = await request.body()
  result = await webhook_service.handle(payload, stripe_signature)
  # Dispatch runs after the response so the processor is never kept waiting.
  dispatch.schedule(result.dispatch_order_ids)
  return {
      "received": True,
      "event_id": result.event_id,
      "outcome": result.outcome,
      "order_id": result.order_id,
  }
