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

"""Request, response and event models for the gifting order server.

Inbound events from the payment processor and from the fulfillment vendor are
modelled as closed sets of tagged variants. Each source has an explicit
`Unknown...` variant so that an unrecognised event type is logged and ignored
instead of failing the request.
"""

import datetime
from typing import Any, Dict, List, Literal, Optional, Type

from enums import AmountUnit
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

REQUIRED_SHIPPING_FIELDS = (
    "name",
    "address_line1",
    "city",
    "state",
    "zip_code",
)


class ShippingAddress(BaseModel):
  """Structured postal address used for vendor submission."""

  model_config = ConfigDict(extra="ignore")

  name: Optional[str] = None
  address_line1: Optional[str] = None
  address_line2: Optional[str] = None
  city: Optional[str] = None
  state: Optional[str] = None
  zip_code: Optional[str] = None
  country: str = "US"
  phone: Optional[str] = None

  def missing_fields(self) -> List[str]:
    return [f for f in REQUIRED_SHIPPING_FIELDS if not getattr(self, f)]


class CartItem(BaseModel):
  product_id: str
  quantity: int = Field(1, ge=1)
  unit_price: int = Field(..., ge=0)  # In minor units
  currency: str = "usd"
  title: Optional[str] = None
  image_url: Optional[str] = None


class GiftOptions(BaseModel):
  model_config = ConfigDict(extra="allow")

  is_gift: bool = True
  message: Optional[str] = None
  recipient_name: Optional[str] = None


class CheckoutDetails(BaseModel):
  """Fields shared by payment intent and checkout session creation."""

  amount: float
  amount_unit: Optional[AmountUnit] = None
  currency: str = "usd"
  cart_items: List[CartItem]
  shipping_address: ShippingAddress
  scheduled_delivery_date: Optional[datetime.date] = None
  gift_options: Optional[GiftOptions] = None
  customer_email: Optional[str] = None
  customer_name: Optional[str] = None
  user_id: Optional[str] = None
  group_gift_project_id: Optional[str] = None


class CreatePaymentIntentRequest(CheckoutDetails):
  payment_method_id: Optional[str] = None
  customer_id: Optional[str] = None
  is_auto_gift: bool = False
  auto_gift_rule_id: Optional[str] = None
  auto_gift_execution_id: Optional[str] = None


class PaymentIntentResponse(BaseModel):
  payment_intent_id: str
  client_secret: Optional[str] = None
  status: str
  order_id: str
  order_number: str
  amount: int
  capture_method: str
  dispatch_queued: bool = False


class CreateCheckoutSessionRequest(CheckoutDetails):
  success_url: str
  cancel_url: str


class CheckoutSessionResponse(BaseModel):
  session_id: str
  url: Optional[str] = None
  order_id: str
  order_number: str


class ReconcileSessionRequest(BaseModel):
  session_id: str


class ReconcileResponse(BaseModel):
  order_id: str
  order_number: str
  status: str
  created: bool
  dispatch_queued: bool = False


class TimelineEvent(BaseModel):
  """A single vendor-reported (or system) milestone on an order."""

  id: str
  type: str
  title: str
  description: Optional[str] = None
  timestamp: str
  status: str = "completed"
  data: Optional[Dict[str, Any]] = None
  source: str = "vendor"


class AdminActionRequest(BaseModel):
  action: Literal[
      "get_status",
      "trigger_processing",
      "resolve_alert",
      "update_order_date",
      "check_missed_orders",
  ]
  order_id: Optional[str] = None
  alert_id: Optional[int] = None
  scheduled_delivery_date: Optional[datetime.date] = None


class CancelRequest(BaseModel):
  reason: str = "admin_cancelled"


# --- Payment processor events ---


class ProcessorEvent(BaseModel):
  """A verified event delivered by the payment processor."""

  id: str
  type: str
  created: Optional[int] = None
  data_object: Dict[str, Any] = Field(default_factory=dict)


class PaymentSucceededEvent(ProcessorEvent):
  type: Literal["payment_intent.succeeded"]


class PaymentFailedEvent(ProcessorEvent):
  type: Literal["payment_intent.payment_failed"]


class AmountCapturableEvent(ProcessorEvent):
  type: Literal["payment_intent.amount_capturable_updated"]


class CheckoutCompletedEvent(ProcessorEvent):
  type: Literal["checkout.session.completed"]


class CheckoutExpiredEvent(ProcessorEvent):
  type: Literal["checkout.session.expired"]


class UnknownProcessorEvent(ProcessorEvent):
  pass


_PROCESSOR_EVENT_TYPES: Dict[str, Type[ProcessorEvent]] = {
    "payment_intent.succeeded": PaymentSucceededEvent,
    "payment_intent.payment_failed": PaymentFailedEvent,
    "payment_intent.amount_capturable_updated": AmountCapturableEvent,
    "checkout.session.completed": CheckoutCompletedEvent,
    "checkout.session.expired": CheckoutExpiredEvent,
}


def parse_processor_event(payload: Dict[str, Any]) -> ProcessorEvent:
  """Builds the tagged event variant for a decoded processor payload."""
  event_type = payload.get("type") or ""
  event_cls = _PROCESSOR_EVENT_TYPES.get(event_type, UnknownProcessorEvent)
  return event_cls(
      id=payload.get("id") or "",
      type=event_type,
      created=payload.get("created"),
      data_object=(payload.get("data") or {}).get("object") or {},
  )


# --- Fulfillment vendor events ---


class VendorEvent(BaseModel):
  """A status callback or polling result from the fulfillment vendor."""

  model_config = ConfigDict(extra="ignore")

  event_type: str
  request_id: Optional[str] = None
  code: Optional[str] = None
  message: Optional[str] = None
  data: Any = None
  tracking: List[Dict[str, Any]] = Field(default_factory=list)
  status_updates: List[Dict[str, Any]] = Field(default_factory=list)
  merchant_order_ids: List[Dict[str, Any]] = Field(default_factory=list)


class VendorRequestSucceeded(VendorEvent):
  event_type: Literal["request_succeeded"]


class VendorRequestFailed(VendorEvent):
  event_type: Literal["request_failed"]


class VendorTrackingObtained(VendorEvent):
  event_type: Literal["tracking_obtained"]


class VendorTrackingUpdated(VendorEvent):
  event_type: Literal["tracking_updated"]


class VendorStatusUpdated(VendorEvent):
  event_type: Literal["status_updated"]


class UnknownVendorEvent(VendorEvent):
  pass


_VENDOR_EVENT_TYPES: Dict[str, Type[VendorEvent]] = {
    "request_succeeded": VendorRequestSucceeded,
    "request_failed": VendorRequestFailed,
    "tracking_obtained": VendorTrackingObtained,
    "tracking_updated": VendorTrackingUpdated,
    "status_updated": VendorStatusUpdated,
}


def parse_vendor_event(
    event_type: str, payload: Dict[str, Any]
) -> VendorEvent:
  """Builds the tagged event variant for a vendor callback body."""
  event_cls = _VENDOR_EVENT_TYPES.get(event_type, UnknownVendorEvent)
  fields = {k: v for k, v in payload.items() if v is not None}
  fields["event_type"] = event_type
  return event_cls.model_validate(fields)


def vendor_event_from_order_status(payload: Dict[str, Any]) -> VendorEvent:
  """Converts a polled vendor order status into an event variant.

  The vendor reports a still-running request as an error with code
  `request_processing`; that is surfaced as a status update with no changes.
  """
  if payload.get("_type") == "error" and (
      payload.get("code") != "request_processing"
  ):
    return parse_vendor_event("request_failed", payload)
  return parse_vendor_event("status_updated", payload)
