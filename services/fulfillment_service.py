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

"""Fulfillment dispatcher: vendor submission and vendor status ingestion.

Submitting an order to the vendor spends real money from the prepaid
balance, so the dispatcher is written to never submit the same order twice:

- An order that already has a vendor order ID is never resubmitted.
- Before calling the vendor, the dispatcher takes a claim on the order with a
  conditional UPDATE; a second concurrent dispatcher loses the claim.
- The internal order ID is sent as the vendor-side idempotency key, suffixed
  with the attempt number once the vendor has refused a submission for
  funding.

Vendor callbacks carry a per-order token issued at submission and are
ignored without it. Callbacks and polling results are folded into the order
timeline and may only move the order forward through its lifecycle.
"""

import datetime
import hmac
import logging
import secrets
from typing import Any, Dict, List, Optional

import config
import db
from enums import AuditAction
from enums import AuditOutcome
from enums import FundingStatus
from enums import OrderStatus
from enums import PaymentStatus
from enums import WorkItemStatus
from exceptions import ResourceNotFoundError
from exceptions import VendorRejectedError
from exceptions import VendorUnavailableError
from models import ShippingAddress
from models import TimelineEvent
from models import vendor_event_from_order_status
from models import VendorEvent
from models import VendorRequestFailed
from models import VendorRequestSucceeded
from models import VendorStatusUpdated
from models import VendorTrackingObtained
from models import VendorTrackingUpdated
from services.order_ledger import OrderLedger
from services.vendor_client import INSUFFICIENT_FUNDS_CODES
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

VENDOR_WEBHOOK_EVENTS = (
    "request_succeeded",
    "request_failed",
    "tracking_obtained",
    "tracking_updated",
    "status_updated",
)

DISPATCHABLE_STATUSES = (
    OrderStatus.PAYMENT_CONFIRMED,
    OrderStatus.AWAITING_FUNDS,
)

# Latest vendor status update type -> order status it implies.
_STATUS_UPDATE_TARGETS = {
    "shipment.delivered": OrderStatus.DELIVERED,
    "shipment.shipped": OrderStatus.SHIPPED,
    "tracking.obtained": OrderStatus.SHIPPED,
    "request.failed": OrderStatus.FAILED,
    "request.cancelled": OrderStatus.FAILED,
}


def vendor_idempotency_key(order: db.Order) -> str:
  """Returns the vendor idempotency key for the order's current attempt."""
  attempt = order.dispatch_attempt or 0
  if not attempt:
    return order.id
  return f"{order.id}:{attempt}"


def build_vendor_request(
    order: db.Order, settings: config.PipelineSettings
) -> Dict[str, Any]:
  """Builds the vendor order submission body for an order."""
  shipping = ShippingAddress.model_validate(order.shipping_address or {})
  first_name, _, last_name = (shipping.name or "").partition(" ")
  gift_options = order.gift_options or {}
  callback_base = settings.public_base_url.rstrip("/")
  return {
      "retailer": "amazon",
      "products": [
          {
              "product_id": item["product_id"],
              "quantity": item.get("quantity", 1),
          }
          for item in order.line_items or []
      ],
      "max_price": order.total_amount,
      "shipping_address": {
          "first_name": first_name,
          "last_name": last_name,
          "address_line1": shipping.address_line1,
          "address_line2": shipping.address_line2 or "",
          "zip_code": shipping.zip_code,
          "city": shipping.city,
          "state": shipping.state,
          "country": shipping.country,
          "phone_number": shipping.phone or "",
      },
      "is_gift": bool(gift_options.get("is_gift", bool(gift_options))),
      "gift_message": gift_options.get("message") or "",
      "shipping": {"order_by": "price", "max_days": 5, "max_price": 1000},
      "webhooks": {
          event: (
              f"{callback_base}/webhooks/vendor/{event}"
              f"?order_id={order.id}&token={order.webhook_token}"
          )
          for event in VENDOR_WEBHOOK_EVENTS
      },
      "client_notes": {
          "order_id": order.id,
          "payment_intent_id": order.payment_intent_id,
          "checkout_session_id": order.checkout_session_id,
      },
  }


def _is_delivered(tracking: List[Dict[str, Any]]) -> bool:
  return any(
      str(t.get("delivery_status") or t.get("status") or "").lower()
      == "delivered"
      for t in tracking
  )


def _tracking_update_id(tracking: List[Dict[str, Any]]) -> str:
  # Identical tracking snapshots collapse into one timeline entry.
  parts = [
      "{}:{}".format(
          t.get("tracking_number") or "",
          str(t.get("delivery_status") or t.get("status") or "").lower(),
      )
      for t in tracking
  ]
  return "vendor_tracking_updated_" + "_".join(parts)


def _status_update_events(
    updates: List[Dict[str, Any]], now: datetime.datetime
) -> List[TimelineEvent]:
  events = []
  for update in updates:
    update_type = update.get("type") or "status"
    created = update.get("_created_at") or now.isoformat()
    events.append(
        TimelineEvent(
            id=f"vendor_{update_type}_{created}",
            type=update_type,
            title=update.get("message") or update_type,
            timestamp=created,
            data=update.get("data"),
        )
    )
  return events


class FulfillmentDispatcher:
  """Submits paid orders to the vendor and tracks them to delivery."""

  def __init__(
      self,
      session: AsyncSession,
      vendor_client,
      settings: config.PipelineSettings,
  ):
    self.session = session
    self.vendor_client = vendor_client
    self.settings = settings
    self.ledger = OrderLedger(session)

  async def _park_awaiting_funds(
      self, order: db.Order, vendor_error: Optional[Dict[str, Any]] = None
  ) -> None:
    values: Dict[str, Any] = {
        "funding_status": FundingStatus.AWAITING_FUNDS,
        "dispatch_claimed_at": None,
    }
    if vendor_error is not None:
      # The vendor refused this attempt; the next one needs a fresh key.
      values["vendor_error"] = vendor_error
      values["dispatch_attempt"] = (order.dispatch_attempt or 0) + 1
    if order.status == OrderStatus.AWAITING_FUNDS:
      for column, value in values.items():
        setattr(order, column, value)
      return
    await self.ledger.transition(order, OrderStatus.AWAITING_FUNDS, **values)

  async def dispatch_order(self, order_id: str) -> str:
    """Submits a paid order to the vendor, at most once.

    Returns:
      `already_submitted`, `not_eligible`, `awaiting_funds`, `in_progress`,
      `failed` or `submitted`.

    Raises:
      ResourceNotFoundError: the order does not exist.
      VendorUnavailableError: the vendor could not be reached. The order is
        left unchanged and unclaimed for a later retry.
      VendorRejectedError: the vendor refused the balance check, for example
        for bad credentials. The order is left unchanged.
    """
    order = await self.ledger.get_order(order_id)
    await self.session.refresh(order)
    if order.vendor_order_id:
      logger.info(
          "Order %s already submitted as %s", order.id, order.vendor_order_id
      )
      return "already_submitted"
    if (
        order.status not in DISPATCHABLE_STATUSES
        or order.payment_status != PaymentStatus.SUCCEEDED
    ):
      logger.info(
          "Order %s is %s/%s; not dispatching",
          order.id,
          order.status,
          order.payment_status,
      )
      return "not_eligible"

    missing = ShippingAddress.model_validate(
        order.shipping_address or {}
    ).missing_fields()
    if missing or not order.line_items:
      reason = (
          "incomplete_shipping_address" if missing else "missing_line_items"
      )
      logger.error("Order %s cannot be dispatched: %s", order.id, reason)
      await self.ledger.mark_failed(order, reason)
      await self.session.commit()
      return "failed"

    balance = await self.vendor_client.get_balance()
    if balance < order.total_amount:
      logger.warning(
          "Vendor balance %d below order %s total %d; awaiting funds",
          balance,
          order.id,
          order.total_amount,
      )
      await self._park_awaiting_funds(order)
      await self.session.commit()
      return "awaiting_funds"

    stale_before = db.utcnow() - datetime.timedelta(
        minutes=self.settings.dispatch_sla_minutes
    )
    claimed = await db.claim_dispatch(self.session, order.id, stale_before)
    if claimed and not order.webhook_token:
      order.webhook_token = secrets.token_urlsafe(24)
    await self.session.commit()
    if not claimed:
      logger.info("Order %s is being dispatched elsewhere", order.id)
      return "in_progress"

    try:
      request_id = await self.vendor_client.place_order(
          build_vendor_request(order, self.settings),
          idempotency_key=vendor_idempotency_key(order),
      )
    except VendorUnavailableError:
      await db.release_dispatch_claim(self.session, order.id)
      await self.session.commit()
      raise
    except VendorRejectedError as e:
      await db.release_dispatch_claim(self.session, order.id)
      await self.session.refresh(order)
      vendor_error = {"code": e.vendor_code, "message": e.message}
      if e.vendor_code in INSUFFICIENT_FUNDS_CODES:
        logger.warning(
            "Vendor refused order %s for funding (%s)", order.id, e.vendor_code
        )
        await self._park_awaiting_funds(order, vendor_error)
        await self.session.commit()
        return "awaiting_funds"
      logger.error("Vendor rejected order %s: %s", order.id, e.message)
      await self.ledger.mark_failed(
          order, "vendor_rejected", vendor_error=vendor_error
      )
      await self.session.commit()
      return "failed"

    now = db.utcnow()
    changed = await self.ledger.transition(
        order,
        OrderStatus.PROCESSING,
        vendor_order_id=request_id,
        funding_status=FundingStatus.FUNDED,
        dispatch_claimed_at=None,
        last_vendor_update_at=now,
        vendor_error=None,
    )
    if not changed:
      # The vendor holds the purchase either way; keep the reference.
      logger.error(
          "Order %s moved to %s during submission; vendor request %s",
          order.id,
          order.status,
          request_id,
      )
      order.vendor_order_id = request_id
      order.dispatch_claimed_at = None
    self.ledger.append_timeline(
        order,
        [
            TimelineEvent(
                id=f"system_request_placed_{request_id}",
                type="request.placed",
                title="Order submitted to fulfillment vendor",
                timestamp=now.isoformat(),
                data={"request_id": request_id},
                source="system",
            )
        ],
    )
    await self.session.commit()
    logger.info("Order %s submitted to vendor as %s", order.id, request_id)
    return "submitted"

  async def run_work_item(self, item_id: int) -> Optional[str]:
    """Consumes one dispatch work item.

    Transient vendor failures keep the item pending with its last error so
    the queue drain or recovery sweep can retry it.
    """
    item = await db.get_work_item(self.session, item_id)
    if item is None or item.status != WorkItemStatus.PENDING:
      return None
    item.attempts = (item.attempts or 0) + 1
    item.updated_at = db.utcnow()
    await self.session.commit()

    try:
      outcome = await self.dispatch_order(item.order_id)
    except (VendorUnavailableError, VendorRejectedError) as e:
      logger.warning(
          "Dispatch of order %s deferred (attempt %d): %s",
          item.order_id,
          item.attempts,
          e.message,
      )
      item.last_error = e.message
      await self.session.commit()
      return "retry"
    except ResourceNotFoundError as e:
      outcome = "missing_order"
      item.last_error = e.message

    if outcome != "in_progress":
      item.status = WorkItemStatus.DONE
    item.updated_at = db.utcnow()
    await self.session.commit()
    return outcome

  async def run_order_work(self, order_id: str) -> Optional[str]:
    item = await db.get_work_item_for_order(self.session, order_id)
    if item is None:
      return None
    return await self.run_work_item(item.id)

  async def drain_queue(self) -> Dict[str, Any]:
    """Runs every pending dispatch work item once."""
    items = await db.list_pending_work_items(self.session)
    outcomes: Dict[str, int] = {}
    for item_id in [item.id for item in items]:
      outcome = await self.run_work_item(item_id)
      if outcome:
        outcomes[outcome] = outcomes.get(outcome, 0) + 1
    logger.info("Drained %d dispatch work items: %s", len(items), outcomes)
    return {"processed": len(items), "outcomes": outcomes}

  async def _advance(
      self, order: db.Order, target: OrderStatus, **values: Any
  ) -> bool:
    if order.status == target:
      return False
    if not self.ledger.can_transition(order.status, target):
      logger.info(
          "Order %s is %s; vendor event does not move it to %s",
          order.id,
          order.status,
          target.value,
      )
      return False
    return await self.ledger.transition(order, target, **values)

  async def callback_token_matches(
      self, order_id: str, token: Optional[str]
  ) -> bool:
    """Checks a vendor callback token against the one issued to the order.

    Raises:
      ResourceNotFoundError: the order does not exist.
    """
    order = await self.ledger.get_order(order_id)
    if not order.webhook_token or not token:
      return False
    return hmac.compare_digest(
        order.webhook_token.encode(), token.encode()
    )

  async def ingest_vendor_event(self, order_id: str, event: VendorEvent) -> str:
    """Applies a vendor callback or polling result to an order.

    Events are appended to the timeline once each, in arrival order. Status
    only ever moves forward; a late event is recorded but changes nothing.

    Returns:
      The order status after the event.
    """
    order = await self.ledger.get_order(order_id)
    await self.session.refresh(order)
    now = db.utcnow()
    timeline: List[TimelineEvent] = []

    if isinstance(event, VendorRequestSucceeded):
      await self._advance(order, OrderStatus.PROCESSING)
      if event.request_id and not order.vendor_order_id:
        order.vendor_order_id = event.request_id
      timeline.append(
          TimelineEvent(
              id=f"vendor_request_succeeded_{event.request_id}",
              type="request.succeeded",
              title="Order placed with retailer",
              timestamp=now.isoformat(),
              data={"merchant_order_ids": event.merchant_order_ids},
          )
      )
    elif isinstance(event, VendorRequestFailed):
      vendor_error = {"code": event.code, "message": event.message}
      superseded = bool(
          event.request_id
          and order.vendor_order_id
          and event.request_id != order.vendor_order_id
      )
      if superseded:
        logger.info(
            "Order %s: failure of superseded vendor request %s ignored",
            order.id,
            event.request_id,
        )
      elif event.code in INSUFFICIENT_FUNDS_CODES:
        if self.ledger.can_transition(
            order.status, OrderStatus.AWAITING_FUNDS
        ):
          await self.ledger.transition(
              order,
              OrderStatus.AWAITING_FUNDS,
              vendor_order_id=None,
              dispatch_attempt=(order.dispatch_attempt or 0) + 1,
              funding_status=FundingStatus.AWAITING_FUNDS,
              dispatch_claimed_at=None,
              vendor_error=vendor_error,
          )
      elif self.ledger.can_transition(order.status, OrderStatus.FAILED):
        await self.ledger.mark_failed(
            order, "vendor_request_failed", vendor_error=vendor_error
        )
      timeline.append(
          TimelineEvent(
              id=f"vendor_request_failed_{event.request_id or order.id}",
              type="request.failed",
              title="Retailer order failed",
              description=event.message,
              timestamp=now.isoformat(),
              status="failed",
              data=vendor_error,
          )
      )
    elif isinstance(event, VendorTrackingObtained):
      await self._advance(order, OrderStatus.SHIPPED)
      order.tracking = event.tracking
      timeline.append(
          TimelineEvent(
              id=f"vendor_tracking_obtained_{order.vendor_order_id}",
              type="tracking.obtained",
              title="Shipped",
              timestamp=now.isoformat(),
              data={"tracking": event.tracking},
          )
      )
    elif isinstance(event, VendorTrackingUpdated):
      delivered = _is_delivered(event.tracking)
      if delivered:
        await self._advance(order, OrderStatus.DELIVERED)
      order.tracking = event.tracking
      timeline.append(
          TimelineEvent(
              id=_tracking_update_id(event.tracking),
              type="tracking.updated",
              title="Delivered" if delivered else "Tracking updated",
              timestamp=now.isoformat(),
              data={"tracking": event.tracking},
          )
      )
    elif isinstance(event, VendorStatusUpdated):
      timeline.extend(_status_update_events(event.status_updates, now))
      await self._apply_derived_status(order, event)
      if event.tracking:
        order.tracking = event.tracking
    else:
      logger.info(
          "Ignoring unknown vendor event %s for order %s",
          event.event_type,
          order.id,
      )

    self.ledger.append_timeline(order, timeline)
    order.last_vendor_update_at = now
    await self.session.commit()
    logger.info(
        "Vendor event %s applied to order %s (now %s)",
        event.event_type,
        order.id,
        order.status,
    )
    return order.status

  async def _apply_derived_status(
      self, order: db.Order, event: VendorStatusUpdated
  ) -> None:
    if _is_delivered(event.tracking):
      await self._advance(order, OrderStatus.DELIVERED)
      return
    updates = sorted(
        event.status_updates, key=lambda u: u.get("_created_at") or ""
    )
    if not updates:
      return
    latest = updates[-1].get("type")
    target = _STATUS_UPDATE_TARGETS.get(latest)
    if target is None:
      return
    if target == OrderStatus.FAILED:
      if self.ledger.can_transition(order.status, OrderStatus.FAILED):
        await self.ledger.mark_failed(order, f"vendor_{latest}")
      return
    await self._advance(order, target)

  async def sync_order(self, order: db.Order) -> str:
    """Polls the vendor for one submitted order and applies the result.

    Returns:
      The order status after the sync.

    Raises:
      VendorUnavailableError: the vendor could not be reached.
      VendorRejectedError: the vendor does not know the order.
    """
    previous = order.status
    try:
      payload = await self.vendor_client.get_order(order.vendor_order_id)
    except (VendorUnavailableError, VendorRejectedError) as e:
      logger.warning("Vendor sync for order %s failed: %s", order.id, e)
      db.add_audit_entry(
          self.session,
          order.id,
          AuditAction.VENDOR_SYNC,
          AuditOutcome.FAILED,
          error_message=e.message,
      )
      await self.session.commit()
      raise
    event = vendor_event_from_order_status(payload)
    status = await self.ingest_vendor_event(order.id, event)
    db.add_audit_entry(
        self.session,
        order.id,
        AuditAction.VENDOR_SYNC,
        AuditOutcome.COMPLETED,
        details={
            "event_type": event.event_type,
            "from": previous,
            "to": status,
        },
    )
    await self.session.commit()
    return status

  async def sync_vendor_orders(self) -> Dict[str, Any]:
    """Polls the vendor for submitted orders that have gone quiet."""
    cutoff = db.utcnow() - datetime.timedelta(
        minutes=self.settings.vendor_silence_sla_minutes
    )
    orders = await db.list_orders(
        self.session, [OrderStatus.PROCESSING, OrderStatus.SHIPPED], limit=100
    )
    report = {"checked": 0, "updated": 0, "errors": 0}
    for order in orders:
      last_update = order.last_vendor_update_at or order.updated_at
      if not order.vendor_order_id or last_update > cutoff:
        continue
      report["checked"] += 1
      previous = order.status
      try:
        status = await self.sync_order(order)
      except (VendorUnavailableError, VendorRejectedError):
        report["errors"] += 1
        continue
      if status != previous:
        report["updated"] += 1
    logger.info("Vendor sync: %s", report)
    return report


async def process_dispatch_in_background(
    session_factory, vendor_client, settings, order_id: str
) -> None:
  """Consumes an order's dispatch work item after the response is sent."""
  async with session_factory() as session:
    dispatcher = FulfillmentDispatcher(session, vendor_client, settings)
    try:
      await dispatcher.run_order_work(order_id)
    except Exception as e:  # pylint: disable=broad-exception-caught
      logger.error("Background dispatch of order %s failed: %s", order_id, e)
