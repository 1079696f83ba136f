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

"""Payment processor gateway backed by the Stripe SDK.

The SDK is synchronous; every call runs in a worker thread so request handlers
stay responsive. Results are returned as plain dictionaries so the rest of the
pipeline never depends on SDK object types.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from exceptions import PaymentFailedError
from exceptions import PaymentProcessorError
from exceptions import WebhookSignatureError
import stripe

logger = logging.getLogger(__name__)


def _snapshot(obj: Any) -> Dict[str, Any]:
  """Converts an SDK object into a plain dictionary."""
  if obj is None:
    return {}
  # StripeObject renders itself as recursive JSON.
  return json.loads(str(obj))


class PaymentGateway:
  """Thin async wrapper over the payment processor API."""

  def __init__(self, api_key: str, webhook_secret: str = ""):
    self._api_key = api_key
    self._webhook_secret = webhook_secret

  async def _call(self, fn, *args, **kwargs) -> Dict[str, Any]:
    try:
      result = await asyncio.to_thread(
          fn, *args, api_key=self._api_key, **kwargs
      )
    except stripe.CardError as e:
      logger.warning("Card declined: %s", e.user_message)
      raise PaymentFailedError(e.user_message or "Card declined") from e
    except stripe.StripeError as e:
      logger.error("Payment processor error: %s", e)
      raise PaymentProcessorError(
          e.user_message or "Payment processor request failed"
      ) from e
    return _snapshot(result)

  def verify_webhook(self, payload: bytes, signature_header: str) -> None:
    """Authenticates a webhook body against the shared signing secret.

    Raises:
      WebhookSignatureError: the signature is missing, stale or does not
        match.
    """
    if not self._webhook_secret:
      raise WebhookSignatureError("Webhook signing secret not configured")
    if not signature_header:
      raise WebhookSignatureError("Missing signature header")
    try:
      stripe.Webhook.construct_event(
          payload, signature_header, self._webhook_secret
      )
    except stripe.SignatureVerificationError as e:
      raise WebhookSignatureError("Invalid webhook signature") from e
    except ValueError as e:
      raise WebhookSignatureError("Invalid webhook payload") from e

  async def find_or_create_customer(
      self, email: str, name: Optional[str] = None
  ) -> str:
    """Returns the processor customer ID for an email, creating it once."""
    existing = await self._call(stripe.Customer.list, email=email, limit=1)
    data = existing.get("data") or []
    if data:
      return data[0]["id"]
    params: Dict[str, Any] = {"email": email}
    if name:
      params["name"] = name
    customer = await self._call(stripe.Customer.create, **params)
    logger.info("Created processor customer %s", customer["id"])
    return customer["id"]

  async def create_payment_intent(
      self,
      amount: int,
      currency: str,
      *,
      customer_id: Optional[str] = None,
      capture_method: str = "automatic",
      metadata: Optional[Dict[str, str]] = None,
      payment_method_id: Optional[str] = None,
      idempotency_key: Optional[str] = None,
  ) -> Dict[str, Any]:
    """Creates a payment intent.

    With a saved payment method the intent is confirmed immediately and
    off-session; otherwise it awaits client-side confirmation.
    """
    params: Dict[str, Any] = {
        "amount": amount,
        "currency": currency,
        "capture_method": capture_method,
        "metadata": metadata or {},
    }
    if customer_id:
      params["customer"] = customer_id
    if payment_method_id:
      params.update(
          payment_method=payment_method_id, confirm=True, off_session=True
      )
    else:
      params["automatic_payment_methods"] = {"enabled": True}
    if idempotency_key:
      params["idempotency_key"] = idempotency_key
    return await self._call(stripe.PaymentIntent.create, **params)

  async def retrieve_payment_intent(
      self, payment_intent_id: str
  ) -> Dict[str, Any]:
    return await self._call(
        stripe.PaymentIntent.retrieve,
        payment_intent_id,
        expand=["latest_charge"],
    )

  async def capture_payment_intent(
      self, payment_intent_id: str
  ) -> Dict[str, Any]:
    return await self._call(
        stripe.PaymentIntent.capture,
        payment_intent_id,
        idempotency_key=f"capture-{payment_intent_id}",
    )

  async def cancel_payment_intent(
      self, payment_intent_id: str
  ) -> Dict[str, Any]:
    return await self._call(stripe.PaymentIntent.cancel, payment_intent_id)

  async def create_refund(
      self, payment_intent_id: str, idempotency_key: str
  ) -> Dict[str, Any]:
    return await self._call(
        stripe.Refund.create,
        payment_intent=payment_intent_id,
        idempotency_key=idempotency_key,
    )

  async def create_checkout_session(
      self,
      line_items: List[Dict[str, Any]],
      *,
      success_url: str,
      cancel_url: str,
      metadata: Dict[str, str],
      customer_id: Optional[str] = None,
      capture_method: str = "automatic",
      idempotency_key: Optional[str] = None,
  ) -> Dict[str, Any]:
    """Creates a hosted checkout session in payment mode."""
    params: Dict[str, Any] = {
        "mode": "payment",
        "line_items": line_items,
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": metadata,
        "payment_intent_data": {
            "capture_method": capture_method,
            "metadata": metadata,
        },
    }
    if customer_id:
      params["customer"] = customer_id
    if idempotency_key:
      params["idempotency_key"] = idempotency_key
    return await self._call(stripe.checkout.Session.create, **params)

  async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
    return await self._call(
        stripe.checkout.Session.retrieve,
        session_id,
        expand=["line_items", "payment_intent"],
    )
