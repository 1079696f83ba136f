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

"""Order ledger: the single source of truth for an order's lifecycle.

This module owns the order state machine. Every status change goes through
`OrderLedger.transition`, which validates the move against
`ALLOWED_TRANSITIONS` and applies it as a conditional UPDATE so that two
writers racing from the same starting state cannot both win.

Key responsibilities include:
- Creating orders under the uniqueness invariants on the payment intent and
  checkout session keys (a losing concurrent insert returns the winner's row).
- Applying processor-verified payment results (`confirm_payment`) and
  publishing the dispatch work item exactly once per confirmation.
- Appending deduplicated timeline events.
- Administrative cancellation, including refund or release of held funds and
  cancellation of linked auto-gift executions.
"""

import datetime
import logging
import secrets
from typing import Any, Dict, Iterable, List, Optional, Tuple
import uuid

import db
from enums import AuditAction
from enums import AuditOutcome
from enums import ExecutionStatus
from enums import FundingStatus
from enums import OrderStatus
from enums import PaymentStatus
from exceptions import InvalidTransitionError
from exceptions import OrderNotModifiableError
from exceptions import PaymentProcessorError
from exceptions import PaymentVerificationError
from exceptions import ResourceNotFoundError
from exceptions import VendorRejectedError
from exceptions import VendorUnavailableError
from models import ShippingAddress
from models import TimelineEvent
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.PAYMENT_CONFIRMED,
        OrderStatus.SCHEDULED,
        OrderStatus.PAYMENT_FAILED,
        OrderStatus.PAYMENT_VERIFICATION_FAILED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PAYMENT_VERIFICATION_FAILED: frozenset({
        OrderStatus.PAYMENT_CONFIRMED,
        OrderStatus.SCHEDULED,
        OrderStatus.PAYMENT_FAILED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PAYMENT_FAILED: frozenset({
        OrderStatus.PAYMENT_CONFIRMED,
        OrderStatus.SCHEDULED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.SCHEDULED: frozenset({
        OrderStatus.PAYMENT_CONFIRMED,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PAYMENT_CONFIRMED: frozenset({
        OrderStatus.PROCESSING,
        OrderStatus.AWAITING_FUNDS,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.AWAITING_FUNDS: frozenset({
        OrderStatus.PROCESSING,
        OrderStatus.PAYMENT_CONFIRMED,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PROCESSING: frozenset({
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
        OrderStatus.AWAITING_FUNDS,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.SHIPPED: frozenset({
        OrderStatus.DELIVERED,
        OrderStatus.RETURNED,
    }),
    # Administrative override so a failed, paid order can still be refunded.
    OrderStatus.FAILED: frozenset({OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.RETURNED: frozenset(),
}

RESCHEDULABLE_STATUSES = frozenset({
    OrderStatus.PENDING,
    OrderStatus.PAYMENT_VERIFICATION_FAILED,
    OrderStatus.PAYMENT_FAILED,
    OrderStatus.SCHEDULED,
})


def generate_order_number(now: Optional[datetime.datetime] = None) -> str:
  """Returns a human-readable order number, e.g. GFT-20260119-3FA2C1."""
  now = now or db.utcnow()
  return f"GFT-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"


def today() -> datetime.date:
  return db.utcnow().date()


def billing_snapshot_from_intent(
    intent: Dict[str, Any],
) -> Optional[Dict[str, Any]]:
  """Extracts cardholder name and billing address from a processor charge."""
  charge = intent.get("latest_charge")
  if not isinstance(charge, dict):
    return None
  details = charge.get("billing_details") or {}
  if not details:
    return None
  return {
      "name": details.get("name"),
      "email": details.get("email"),
      "address": details.get("address"),
  }


# Never returned by the API.
_PRIVATE_COLUMNS = frozenset({"webhook_token"})


def order_to_dict(order: db.Order) -> Dict[str, Any]:
  """Serializes an order row for API responses."""
  result = {}
  for column in db.Order.__table__.columns:
    if column.name in _PRIVATE_COLUMNS:
      continue
    value = getattr(order, column.name)
    if isinstance(value, (datetime.date, datetime.datetime)):
      value = value.isoformat()
    result[column.name] = value
  return result


class OrderLedger:
  """Reads and mutates orders under the lifecycle rules."""

  def __init__(self, session: AsyncSession):
    self.session = session

  async def get_order(self, order_id: str) -> db.Order:
    order = await db.get_order(self.session, order_id)
    if not order:
      raise ResourceNotFoundError(f"Order {order_id} not found")
    return order

  async def _find_by_keys(
      self,
      order_id: Optional[str],
      payment_intent_id: Optional[str],
      checkout_session_id: Optional[str],
  ) -> Optional[db.Order]:
    if order_id:
      order = await db.get_order(self.session, order_id)
      if order:
        return order
    if payment_intent_id:
      order = await db.get_order_by_payment_intent(
          self.session, payment_intent_id
      )
      if order:
        return order
    if checkout_session_id:
      return await db.get_order_by_checkout_session(
          self.session, checkout_session_id
      )
    return None

  async def create_order(self, **fields: Any) -> Tuple[db.Order, bool]:
    """Creates and commits a new order.

    If a concurrent writer already created the order for the same payment
    intent or checkout session, the conflict is treated as success.

    Args:
      **fields: Column values for the new order.

    Returns:
      A tuple of the order and whether this call created it.
    """
    now = db.utcnow()
    fields.setdefault("id", str(uuid.uuid4()))
    fields.setdefault("order_number", generate_order_number(now))
    fields.setdefault("status", OrderStatus.PENDING)
    fields.setdefault("payment_status", PaymentStatus.UNPAID)
    fields.setdefault("funding_status", FundingStatus.UNFUNDED)
    fields.setdefault("timeline_events", [])
    fields.setdefault("line_items", [])

    missing = ShippingAddress.model_validate(
        fields.get("shipping_address") or {}
    ).missing_fields()
    if missing and not fields.get("shipping_warning"):
      fields["shipping_warning"] = "missing_fields:" + ",".join(missing)
    if fields.get("shipping_warning"):
      logger.warning(
          "Order %s created with shipping warning: %s",
          fields["id"],
          fields["shipping_warning"],
      )

    order = db.Order(created_at=now, updated_at=now, **fields)
    self.session.add(order)
    try:
      await self.session.commit()
    except IntegrityError:
      await self.session.rollback()
      existing = await self._find_by_keys(
          fields["id"],
          fields.get("payment_intent_id"),
          fields.get("checkout_session_id"),
      )
      if existing is None:
        raise
      logger.info(
          "Order %s already exists for intent=%s session=%s",
          existing.id,
          fields.get("payment_intent_id"),
          fields.get("checkout_session_id"),
      )
      return existing, False
    logger.info("Created order %s (%s)", order.id, order.order_number)
    return order, True

  @staticmethod
  def can_transition(from_status: str, to_status: str) -> bool:
    allowed = ALLOWED_TRANSITIONS[OrderStatus(from_status)]
    return OrderStatus(to_status) in allowed

  async def transition(
      self, order: db.Order, to_status: OrderStatus, **values: Any
  ) -> bool:
    """Moves an order to a new state.

    Args:
      order: The order to move; refreshed from the database afterwards.
      to_status: The target state.
      **values: Extra column values written in the same UPDATE.

    Returns:
      True if this call changed the state, False if the order was already in
      the target state or a concurrent writer moved it first.

    Raises:
      InvalidTransitionError: the move is not allowed from the current state.
    """
    current = OrderStatus(order.status)
    to_status = OrderStatus(to_status)
    if current == to_status:
      return False
    if to_status not in ALLOWED_TRANSITIONS[current]:
      raise InvalidTransitionError(
          f"Cannot move order {order.id} from {current.value} to"
          f" {to_status.value}"
      )
    values.setdefault("updated_at", db.utcnow())
    changed = await db.transition_order_status(
        self.session, order.id, current.value, to_status.value, values
    )
    await self.session.refresh(order)
    if changed:
      logger.info(
          "Order %s: %s -> %s", order.id, current.value, to_status.value
      )
    else:
      logger.info(
          "Order %s left %s concurrently (now %s)",
          order.id,
          current.value,
          order.status,
      )
    return changed

  async def confirm_payment(
      self,
      order: db.Order,
      intent: Dict[str, Any],
      billing: Optional[Dict[str, Any]] = None,
  ) -> Optional[db.DispatchWorkItem]:
    """Applies a processor-verified payment intent to an order.

    A captured payment confirms the order and publishes its dispatch work
    item, unless delivery is scheduled for a future date. A held
    (authorized) payment parks the order in `scheduled`.

    Returns:
      The dispatch work item published by this call, if any.

    Raises:
      PaymentVerificationError: the processor does not report the intent as
        paid or authorized.
    """
    status = intent.get("status")
    now = db.utcnow()
    deferred = bool(
        order.scheduled_delivery_date
        and order.scheduled_delivery_date > today()
    )
    values: Dict[str, Any] = {"payment_verified_at": now}
    if billing:
      values["billing_snapshot"] = billing
    if status == "succeeded":
      values["payment_status"] = PaymentStatus.SUCCEEDED
      target = (
          OrderStatus.SCHEDULED if deferred else OrderStatus.PAYMENT_CONFIRMED
      )
    elif status == "requires_capture":
      values["payment_status"] = PaymentStatus.AUTHORIZED
      target = OrderStatus.SCHEDULED
    else:
      raise PaymentVerificationError(
          f"Payment {intent.get('id')} is {status}, not paid"
      )

    if order.status == target:
      if order.payment_status != values["payment_status"]:
        order.payment_status = values["payment_status"]
        order.payment_verified_at = now
        order.updated_at = now
      return None
    if not self.can_transition(order.status, target):
      logger.info(
          "Order %s is %s; payment %s needs no state change",
          order.id,
          order.status,
          intent.get("id"),
      )
      return None
    changed = await self.transition(order, target, **values)
    if changed and target == OrderStatus.PAYMENT_CONFIRMED:
      return await db.publish_work_item(self.session, order.id)
    return None

  async def publish_dispatch(
      self, order: db.Order
  ) -> Optional[db.DispatchWorkItem]:
    return await db.publish_work_item(self.session, order.id)

  def append_timeline(
      self, order: db.Order, events: Iterable[TimelineEvent]
  ) -> int:
    """Appends events not already on the order, in arrival order.

    Returns:
      The number of events added.
    """
    existing: List[Dict[str, Any]] = list(order.timeline_events or [])
    seen = {e.get("id") for e in existing}
    added = 0
    for event in events:
      if event.id in seen:
        continue
      existing.append(event.model_dump(mode="json"))
      seen.add(event.id)
      added += 1
    if added:
      # Reassign so the JSON column is flagged dirty.
      order.timeline_events = existing
      order.updated_at = db.utcnow()
    return added

  async def mark_failed(
      self,
      order: db.Order,
      reason: str,
      vendor_error: Optional[Dict[str, Any]] = None,
  ) -> bool:
    """Moves an order to `failed` and fails its auto-gift execution."""
    values: Dict[str, Any] = {"failure_reason": reason}
    if vendor_error is not None:
      values["vendor_error"] = vendor_error
    changed = await self.transition(order, OrderStatus.FAILED, **values)
    if changed:
      await self._update_executions(
          order, ExecutionStatus.FAILED, error_message=reason
      )
    return changed

  async def _update_executions(
      self,
      order: db.Order,
      status: ExecutionStatus,
      error_message: Optional[str] = None,
  ) -> int:
    executions = await db.list_executions(self.session, order_id=order.id)
    if order.auto_gift_execution_id and not any(
        e.id == order.auto_gift_execution_id for e in executions
    ):
      linked = await self.session.get(
          db.AutoGiftExecution, order.auto_gift_execution_id
      )
      if linked:
        executions.append(linked)
    updated = 0
    for execution in executions:
      if execution.status in (
          ExecutionStatus.CANCELLED,
          ExecutionStatus.FAILED,
      ):
        continue
      execution.status = status
      if error_message:
        execution.error_message = error_message
      execution.updated_at = db.utcnow()
      updated += 1
    return updated

  async def _return_funds(self, order: db.Order, gateway) -> PaymentStatus:
    """Refunds a captured payment or releases a held one."""
    payment_status = PaymentStatus(order.payment_status)
    if not order.payment_intent_id:
      return payment_status
    if payment_status == PaymentStatus.SUCCEEDED:
      await gateway.create_refund(
          order.payment_intent_id, idempotency_key=f"refund-{order.id}"
      )
      return PaymentStatus.REFUNDED
    if payment_status == PaymentStatus.AUTHORIZED:
      await gateway.cancel_payment_intent(order.payment_intent_id)
      return PaymentStatus.VOIDED
    if payment_status == PaymentStatus.UNPAID:
      try:
        await gateway.cancel_payment_intent(order.payment_intent_id)
      except PaymentProcessorError as e:
        logger.warning(
            "Could not cancel unpaid intent %s: %s",
            order.payment_intent_id,
            e.message,
        )
    return payment_status

  async def cancel_order(
      self,
      order_id: str,
      gateway,
      vendor_client,
      reason: str = "admin_cancelled",
  ) -> db.Order:
    """Cancels an order, returning or releasing any money taken.

    The order is moved to `cancelled` first; only the writer that wins that
    transition touches the payment, so a lost race never moves money.
    Captured payments are then refunded and held authorizations released,
    and linked auto-gift executions are cancelled. Cancelling a cancelled
    order is a no-op, except that a refund which failed earlier is retried.

    Raises:
      OrderNotModifiableError: the order can no longer be cancelled.
      PaymentProcessorError: a refund or release failed. The order stays
        cancelled with its payment untouched, and the failure is audited.
    """
    order = await self.get_order(order_id)
    if order.status == OrderStatus.CANCELLED:
      if order.payment_status not in (
          PaymentStatus.SUCCEEDED,
          PaymentStatus.AUTHORIZED,
      ):
        return order
      logger.warning(
          "Order %s is cancelled but its payment is still %s; retrying",
          order.id,
          order.payment_status,
      )
    else:
      if not self.can_transition(order.status, OrderStatus.CANCELLED):
        raise OrderNotModifiableError(
            f"Order {order.id} is {order.status} and cannot be cancelled"
        )
      changed = await self.transition(
          order, OrderStatus.CANCELLED, failure_reason=reason
      )
      if not changed:
        if order.status != OrderStatus.CANCELLED:
          raise OrderNotModifiableError(
              f"Order {order.id} changed state during cancellation"
          )
        # A concurrent cancellation won and owns the refund.
        return order
      await self._update_executions(
          order, ExecutionStatus.CANCELLED, error_message=reason
      )
      await self.session.commit()
      if order.vendor_order_id:
        await self._cancel_vendor_order(order, vendor_client)

    try:
      payment_status = await self._return_funds(order, gateway)
    except PaymentProcessorError as e:
      logger.error(
          "Refund for cancelled order %s failed: %s", order.id, e.message
      )
      db.add_audit_entry(
          self.session,
          order.id,
          AuditAction.CANCELLATION,
          AuditOutcome.FAILED,
          error_message=e.message,
          details={"reason": reason, "step": "refund"},
      )
      await self.session.commit()
      raise

    order.payment_status = payment_status
    order.updated_at = db.utcnow()
    db.add_audit_entry(
        self.session,
        order.id,
        AuditAction.CANCELLATION,
        AuditOutcome.COMPLETED,
        details={"reason": reason, "payment_status": payment_status.value},
    )
    await self.session.commit()
    return order

  async def _cancel_vendor_order(self, order: db.Order, vendor_client) -> None:
    try:
      await vendor_client.cancel_order(order.vendor_order_id)
    except (VendorUnavailableError, VendorRejectedError) as e:
      logger.warning(
          "Vendor cancel for order %s (%s) failed: %s",
          order.id,
          order.vendor_order_id,
          e.message,
      )
      order.vendor_error = {"code": e.code, "message": e.message}
      db.add_audit_entry(
          self.session,
          order.id,
          AuditAction.VENDOR_CANCEL,
          AuditOutcome.FAILED,
          error_message=e.message,
          details={"vendor_order_id": order.vendor_order_id},
      )
      await self.session.commit()

  async def update_scheduled_date(
      self, order_id: str, scheduled_delivery_date: datetime.date
  ) -> db.Order:
    """Moves the delivery date of an order that has not been dispatched.

    Raises:
      OrderNotModifiableError: the order was already handed to the vendor.
    """
    order = await self.get_order(order_id)
    if order.status not in RESCHEDULABLE_STATUSES or order.vendor_order_id:
      raise OrderNotModifiableError(
          f"Order {order.id} is {order.status} and cannot be rescheduled"
      )
    previous = order.scheduled_delivery_date
    order.scheduled_delivery_date = scheduled_delivery_date
    order.updated_at = db.utcnow()
    await self.session.commit()
    logger.info(
        "Order %s rescheduled from %s to %s",
        order.id,
        previous,
        scheduled_delivery_date,
    )
    return order
