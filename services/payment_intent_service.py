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

"""Payment intent manager.

Creates processor charge objects for checkout. Orders are written to the
ledger in `pending` at this point; only a processor-verified signal (webhook,
reconciliation, or the processor's own response to an off-session
confirmation) ever moves them further.

The processor's metadata is limited to short string values, so the full
checkout payload is staged in `PaymentIntentRecord` and only a compact,
truncated summary is sent to the processor.
"""

import datetime
import decimal
import json
import logging
from typing import Any, Dict, List, Optional
import uuid

import config
import db
from enums import AmountUnit
from exceptions import InvalidRequestError
from models import CartItem
from models import CheckoutDetails
from models import CheckoutSessionResponse
from models import CreateCheckoutSessionRequest
from models import CreatePaymentIntentRequest
from models import PaymentIntentResponse
from models import ShippingAddress
from services.order_ledger import generate_order_number
from services.order_ledger import OrderLedger
from services.order_ledger import today
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Integral amounts below this are read as major units when no unit is given.
MINOR_UNIT_THRESHOLD = 1000
METADATA_VALUE_LIMIT = 500

_SHIPPING_METADATA_KEYS = {
    "name": "ship_name",
    "address_line1": "ship_line1",
    "address_line2": "ship_line2",
    "city": "ship_city",
    "state": "ship_state",
    "zip_code": "ship_zip",
    "country": "ship_country",
    "phone": "ship_phone",
}


def normalize_amount(
    amount: float, unit: Optional[AmountUnit] = None
) -> int:
  """Returns an amount in minor currency units.

  An explicit unit always wins. Without one, fractional values and integral
  values below 1000 are read as major units and everything else as minor
  units, so both 25.00 and 2500 become 2500.

  Raises:
    InvalidRequestError: the amount is not positive, or is fractional while
      declared in minor units.
  """
  value = decimal.Decimal(str(amount))
  if value <= 0:
    raise InvalidRequestError(f"Amount must be positive, got {amount}")
  if unit is None:
    if value != value.to_integral_value():
      unit = AmountUnit.MAJOR
    elif value < MINOR_UNIT_THRESHOLD:
      logger.warning(
          "Ambiguous amount %s without a unit; treating as major units",
          amount,
      )
      unit = AmountUnit.MAJOR
    else:
      unit = AmountUnit.MINOR
  if unit == AmountUnit.MAJOR:
    value = (value * 100).quantize(
        decimal.Decimal(1), rounding=decimal.ROUND_HALF_UP
    )
  elif value != value.to_integral_value():
    raise InvalidRequestError(f"Minor-unit amount must be whole: {amount}")
  return int(value)


def _truncate(value: str) -> str:
  return value[:METADATA_VALUE_LIMIT]


def compact_cart(items: List[CartItem]) -> Optional[str]:
  """Encodes the cart for processor metadata, or None if it will not fit."""
  encoded = json.dumps(
      [
          {"p": i.product_id, "q": i.quantity, "u": i.unit_price}
          for i in items
      ],
      separators=(",", ":"),
  )
  if len(encoded) > METADATA_VALUE_LIMIT:
    return None
  return encoded


def order_fields_from_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
  """Recovers what it can of an order from processor metadata.

  Missing data is left missing; callers record a warning instead of
  inventing values.
  """
  fields: Dict[str, Any] = {}
  if metadata.get("order_id"):
    fields["id"] = metadata["order_id"]
  if metadata.get("order_number"):
    fields["order_number"] = metadata["order_number"]
  for key in (
      "user_id",
      "customer_email",
      "auto_gift_rule_id",
      "auto_gift_execution_id",
      "group_gift_project_id",
  ):
    if metadata.get(key):
      fields[key] = metadata[key]
  if metadata.get("is_auto_gift") == "true":
    fields["is_auto_gift"] = True
  if metadata.get("scheduled_delivery_date"):
    fields["scheduled_delivery_date"] = datetime.date.fromisoformat(
        metadata["scheduled_delivery_date"]
    )
  if metadata.get("cart"):
    try:
      fields["line_items"] = [
          {"product_id": i["p"], "quantity": i["q"], "unit_price": i["u"]}
          for i in json.loads(metadata["cart"])
      ]
    except (ValueError, KeyError, TypeError):
      logger.warning("Unreadable cart metadata: %.80s", metadata["cart"])
  shipping = {
      field: metadata[key]
      for field, key in _SHIPPING_METADATA_KEYS.items()
      if metadata.get(key)
  }
  if shipping:
    fields["shipping_address"] = shipping
  if metadata.get("gift_message"):
    fields["gift_options"] = {
        "is_gift": True,
        "message": metadata["gift_message"],
    }
  return fields


class PaymentIntentService:
  """Creates payment intents and checkout sessions for new orders."""

  def __init__(
      self,
      session: AsyncSession,
      gateway,
      settings: config.PipelineSettings,
  ):
    self.session = session
    self.gateway = gateway
    self.settings = settings
    self.ledger = OrderLedger(session)

  def _checked_amount(self, details: CheckoutDetails) -> int:
    amount = normalize_amount(details.amount, details.amount_unit)
    cart_total = sum(i.unit_price * i.quantity for i in details.cart_items)
    if cart_total and cart_total > amount:
      raise InvalidRequestError(
          f"Amount {amount} is less than the cart total {cart_total}"
      )
    if cart_total and cart_total != amount:
      logger.info(
          "Charge %s differs from item subtotal %s (shipping/tax)",
          amount,
          cart_total,
      )
    return amount

  async def _resolve_customer(
      self,
      details: CheckoutDetails,
      customer_id: Optional[str] = None,
  ) -> Optional[str]:
    if customer_id:
      return customer_id
    if not details.customer_email:
      return None
    return await self.gateway.find_or_create_customer(
        details.customer_email, details.customer_name
    )

  def _base_metadata(
      self, order_id: str, order_number: str, details: CheckoutDetails
  ) -> Dict[str, str]:
    metadata = {
        "order_id": order_id,
        "order_number": order_number,
        "user_id": details.user_id,
        "customer_email": details.customer_email,
        "group_gift_project_id": details.group_gift_project_id,
        "item_count": str(sum(i.quantity for i in details.cart_items)),
        "items": _truncate(",".join(i.product_id for i in details.cart_items)),
    }
    if details.scheduled_delivery_date:
      metadata["scheduled_delivery_date"] = (
          details.scheduled_delivery_date.isoformat()
      )
    return {k: v for k, v in metadata.items() if v}

  def _order_fields(
      self, details: CheckoutDetails, amount: int
  ) -> Dict[str, Any]:
    return {
        "user_id": details.user_id,
        "customer_email": details.customer_email,
        "total_amount": amount,
        "currency": details.currency.lower(),
        "line_items": [i.model_dump(mode="json") for i in details.cart_items],
        "shipping_address": details.shipping_address.model_dump(mode="json"),
        "gift_options": (
            details.gift_options.model_dump(mode="json")
            if details.gift_options
            else None
        ),
        "scheduled_delivery_date": details.scheduled_delivery_date,
        "group_gift_project_id": details.group_gift_project_id,
    }

  @staticmethod
  def _capture_method(details: CheckoutDetails) -> str:
    scheduled = details.scheduled_delivery_date
    if scheduled and scheduled > today():
      return "manual"
    return "automatic"

  async def create_payment_intent(
      self, request: CreatePaymentIntentRequest
  ) -> PaymentIntentResponse:
    """Creates a payment intent and its pending order.

    Future-dated deliveries are authorized only (manual capture). With a
    saved payment method the intent is confirmed off-session, and a paid or
    authorized result is applied to the order immediately.
    """
    amount = self._checked_amount(request)
    capture_method = self._capture_method(request)
    customer_id = await self._resolve_customer(request, request.customer_id)
    order_id = str(uuid.uuid4())
    order_number = generate_order_number()

    metadata = self._base_metadata(order_id, order_number, request)
    if request.is_auto_gift:
      metadata["is_auto_gift"] = "true"
    for key in ("auto_gift_rule_id", "auto_gift_execution_id"):
      if getattr(request, key):
        metadata[key] = getattr(request, key)

    logger.info(
        "Creating payment intent for order %s: %s %s (%s capture)",
        order_id,
        amount,
        request.currency,
        capture_method,
    )
    intent = await self.gateway.create_payment_intent(
        amount,
        request.currency.lower(),
        customer_id=customer_id,
        capture_method=capture_method,
        metadata=metadata,
        payment_method_id=request.payment_method_id,
        idempotency_key=f"pi-{order_id}",
    )

    staged = request.model_dump(mode="json")
    staged["amount_minor"] = amount
    await db.save_payment_intent_record(
        self.session, intent["id"], order_id, request.user_id, staged
    )
    await self.session.commit()

    fields = self._order_fields(request, amount)
    fields.update(
        id=order_id,
        order_number=order_number,
        payment_intent_id=intent["id"],
        is_auto_gift=request.is_auto_gift,
        auto_gift_rule_id=request.auto_gift_rule_id,
        auto_gift_execution_id=request.auto_gift_execution_id,
    )
    order, _ = await self.ledger.create_order(**fields)

    dispatch_queued = False
    if request.payment_method_id and intent.get("status") in (
        "succeeded",
        "requires_capture",
    ):
      item = await self.ledger.confirm_payment(order, intent)
      dispatch_queued = item is not None
      await self.session.commit()

    return PaymentIntentResponse(
        payment_intent_id=intent["id"],
        client_secret=intent.get("client_secret"),
        status=intent.get("status") or "unknown",
        order_id=order.id,
        order_number=order.order_number,
        amount=amount,
        capture_method=capture_method,
        dispatch_queued=dispatch_queued,
    )

  async def create_checkout_session(
      self, request: CreateCheckoutSessionRequest
  ) -> CheckoutSessionResponse:
    """Creates a hosted checkout session and its pending order.

    The session metadata carries the compact cart, shipping and gift data so
    that reconciliation can rebuild the order from the processor alone.
    """
    amount = self._checked_amount(request)
    capture_method = self._capture_method(request)
    customer_id = await self._resolve_customer(request)
    order_id = str(uuid.uuid4())
    order_number = generate_order_number()

    metadata = self._base_metadata(order_id, order_number, request)
    cart = compact_cart(request.cart_items)
    if cart:
      metadata["cart"] = cart
    else:
      metadata["cart_truncated"] = "true"
    address: ShippingAddress = request.shipping_address
    for field, key in _SHIPPING_METADATA_KEYS.items():
      value = getattr(address, field)
      if value:
        metadata[key] = _truncate(value)
    if request.gift_options and request.gift_options.message:
      metadata["gift_message"] = _truncate(request.gift_options.message)

    line_items = [
        {
            "price_data": {
                "currency": i.currency.lower(),
                "unit_amount": i.unit_price,
                "product_data": {
                    "name": i.title or i.product_id,
                    "metadata": {"product_id": i.product_id},
                },
            },
            "quantity": i.quantity,
        }
        for i in request.cart_items
    ]
    checkout = await self.gateway.create_checkout_session(
        line_items,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
        metadata=metadata,
        customer_id=customer_id,
        capture_method=capture_method,
        idempotency_key=f"cs-{order_id}",
    )

    fields = self._order_fields(request, amount)
    fields.update(
        id=order_id,
        order_number=order_number,
        checkout_session_id=checkout["id"],
    )
    order, _ = await self.ledger.create_order(**fields)
    logger.info(
        "Checkout session %s created for order %s", checkout["id"], order.id
    )
    return CheckoutSessionResponse(
        session_id=checkout["id"],
        url=checkout.get("url"),
        order_id=order.id,
        order_number=order.order_number,
    )
