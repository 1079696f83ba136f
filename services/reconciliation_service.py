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

"""Reconciliation of local orders against the payment processor.

Webhooks are not guaranteed to arrive, or to arrive before the customer lands
on the success page. This service re-derives order state directly from the
processor, which is the source of truth for payment:

- `reconcile_checkout_session` is called from the redirect-return page (or
  by an operator) with a checkout session ID and creates/confirms the order
  if the processor says it is paid.
- `reconcile_order` re-checks a single order; the recovery sweep uses it.
- `reconcile_recent_orders` is the scheduled batch audit over recent
  unconfirmed orders.

Order creation here races safely with webhook ingestion: both paths insert
under the same uniqueness constraints and the loser adopts the winner's row.
"""

import dataclasses
import datetime
import logging
from typing import Any, Dict, List, Optional, Tuple

import config
import db
from enums import AuditAction
from enums import AuditOutcome
from enums import OrderStatus
from enums import PaymentStatus
from exceptions import PaymentProcessorError
from exceptions import PaymentVerificationError
from services.order_ledger import billing_snapshot_from_intent
from services.order_ledger import OrderLedger
from services.payment_intent_service import order_fields_from_metadata
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

PAID_INTENT_STATUSES = ("succeeded", "requires_capture")
BATCH_LIMIT = 50


@dataclasses.dataclass
class ReconcileOutcome:
  order: db.Order
  created: bool
  dispatch_queued: bool


def intent_id_of(value: Any) -> Optional[str]:
  """Returns the ID of an expanded or unexpanded payment intent reference."""
  if isinstance(value, dict):
    return value.get("id")
  return value


def _shipping_from_checkout(checkout: Dict[str, Any]) -> Dict[str, Any]:
  details = (
      checkout.get("shipping_details")
      or (checkout.get("collected_information") or {}).get("shipping_details")
      or {}
  )
  address = details.get("address") or {}
  customer = checkout.get("customer_details") or {}
  shipping = {
      "name": details.get("name") or customer.get("name"),
      "address_line1": address.get("line1"),
      "address_line2": address.get("line2"),
      "city": address.get("city"),
      "state": address.get("state"),
      "zip_code": address.get("postal_code"),
      "country": address.get("country") or "US",
      "phone": customer.get("phone"),
  }
  return {k: v for k, v in shipping.items() if v}


def _line_items_from_checkout(
    checkout: Dict[str, Any],
) -> List[Dict[str, Any]]:
  items = []
  for line in (checkout.get("line_items") or {}).get("data") or []:
    price = line.get("price") or {}
    product = price.get("product")
    if isinstance(product, dict):
      product_id = (product.get("metadata") or {}).get("product_id") or (
          product.get("id")
      )
    else:
      product_id = product
    items.append({
        "product_id": product_id,
        "quantity": line.get("quantity") or 1,
        "unit_price": price.get("unit_amount") or 0,
        "title": line.get("description"),
    })
  return items


class ReconciliationService:
  """Re-derives order state from the payment processor."""

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

  async def billing_for(
      self, intent: Dict[str, Any], fallback: Optional[Dict[str, Any]] = None
  ) -> Optional[Dict[str, Any]]:
    """Returns the processor-side billing snapshot for an intent."""
    billing = billing_snapshot_from_intent(intent)
    if billing or not intent.get("id"):
      return billing or fallback
    try:
      full = await self.gateway.retrieve_payment_intent(intent["id"])
    except PaymentProcessorError as e:
      logger.warning(
          "Billing details unavailable for %s: %s", intent["id"], e.message
      )
      return fallback
    return billing_snapshot_from_intent(full) or fallback

  async def _adopt_by_metadata(
      self, fields: Dict[str, Any], **keys: str
  ) -> Optional[db.Order]:
    """Links correlation keys onto an order created earlier at checkout."""
    if not fields.get("id"):
      return None
    order = await db.get_order(self.session, fields["id"])
    if order is None:
      return None
    for key, value in keys.items():
      if value and not getattr(order, key):
        setattr(order, key, value)
    await self.session.flush()
    return order

  async def materialize_from_intent(
      self, intent: Dict[str, Any]
  ) -> Tuple[db.Order, bool]:
    """Finds or creates the order for a verified payment intent.

    The staged checkout payload is preferred; processor metadata is the
    fallback, and anything missing from both is flagged on the order.
    """
    intent_id = intent["id"]
    order = await db.get_order_by_payment_intent(self.session, intent_id)
    if order:
      return order, False

    fields = order_fields_from_metadata(intent.get("metadata") or {})
    record = await db.get_payment_intent_record(self.session, intent_id)
    if record and record.order_id:
      fields["id"] = record.order_id
    order = await self._adopt_by_metadata(fields, payment_intent_id=intent_id)
    if order:
      return order, False

    if record and record.payload:
      staged = record.payload
      fields.update(
          user_id=staged.get("user_id"),
          customer_email=staged.get("customer_email"),
          line_items=staged.get("cart_items") or [],
          shipping_address=staged.get("shipping_address"),
          gift_options=staged.get("gift_options"),
          group_gift_project_id=staged.get("group_gift_project_id"),
          is_auto_gift=bool(staged.get("is_auto_gift")),
          auto_gift_rule_id=staged.get("auto_gift_rule_id"),
          auto_gift_execution_id=staged.get("auto_gift_execution_id"),
      )
      if staged.get("scheduled_delivery_date"):
        fields["scheduled_delivery_date"] = datetime.date.fromisoformat(
            staged["scheduled_delivery_date"]
        )
      record.consumed_at = db.utcnow()
    else:
      logger.warning(
          "No staged payload for intent %s; rebuilding from metadata",
          intent_id,
      )
      if not fields.get("line_items"):
        fields["shipping_warning"] = "missing_fields:line_items"

    order, created = await self.ledger.create_order(
        payment_intent_id=intent_id,
        total_amount=intent.get("amount") or 0,
        currency=intent.get("currency") or self.settings.default_currency,
        **fields,
    )
    if created:
      logger.info("Materialized order %s from intent %s", order.id, intent_id)
    return order, created

  async def session_intent(
      self, checkout: Dict[str, Any]
  ) -> Optional[Dict[str, Any]]:
    """Returns the processor's payment intent behind a checkout session."""
    intent_ref = checkout.get("payment_intent")
    if isinstance(intent_ref, dict) and intent_ref.get("status"):
      return intent_ref
    intent_id = intent_id_of(intent_ref)
    if intent_id:
      return await self.gateway.retrieve_payment_intent(intent_id)
    if checkout.get("payment_status") in ("paid", "no_payment_required"):
      return {
          "id": None,
          "status": "succeeded",
          "amount": checkout.get("amount_total"),
      }
    return None

  async def materialize_from_checkout(
      self, checkout: Dict[str, Any], intent: Dict[str, Any]
  ) -> Tuple[db.Order, bool]:
    """Finds or creates the order for a paid checkout session.

    Order data comes from the session metadata first and the session's own
    shipping and line item fields second. Required fields missing from both
    are recorded as a shipping warning, never invented.
    """
    session_id = checkout["id"]
    intent_id = intent.get("id")
    order = await db.get_order_by_checkout_session(self.session, session_id)
    if order:
      if intent_id and not order.payment_intent_id:
        order.payment_intent_id = intent_id
      return order, False

    fields = order_fields_from_metadata(checkout.get("metadata") or {})
    order = await self._adopt_by_metadata(
        fields, checkout_session_id=session_id, payment_intent_id=intent_id
    )
    if order:
      return order, False

    if not fields.get("shipping_address"):
      fields["shipping_address"] = _shipping_from_checkout(checkout)
    if not fields.get("line_items"):
      fields["line_items"] = _line_items_from_checkout(checkout)
    if not fields.get("line_items"):
      fields["shipping_warning"] = "missing_fields:line_items"
    customer = checkout.get("customer_details") or {}
    if customer.get("email") and not fields.get("customer_email"):
      fields["customer_email"] = customer["email"]

    order, created = await self.ledger.create_order(
        checkout_session_id=session_id,
        payment_intent_id=intent_id,
        total_amount=checkout.get("amount_total") or intent.get("amount") or 0,
        currency=checkout.get("currency") or self.settings.default_currency,
        **fields,
    )
    if not created and not order.checkout_session_id:
      order.checkout_session_id = session_id
    if created:
      logger.info(
          "Materialized order %s from checkout session %s", order.id, session_id
      )
    return order, created

  async def apply_checkout_session(
      self, checkout: Dict[str, Any]
  ) -> ReconcileOutcome:
    """Creates (if needed) and confirms the order for a paid session.

    Raises:
      PaymentVerificationError: the processor does not report the session as
        paid. No order is created and no state changes.
    """
    intent = await self.session_intent(checkout)
    if intent is None or intent.get("status") not in PAID_INTENT_STATUSES:
      raise PaymentVerificationError(
          f"Checkout session {checkout.get('id')} is not paid"
      )
    order, created = await self.materialize_from_checkout(checkout, intent)
    customer = checkout.get("customer_details") or {}
    fallback = {
        "name": customer.get("name"),
        "email": customer.get("email"),
        "address": customer.get("address"),
    }
    billing = await self.billing_for(
        intent, fallback if any(fallback.values()) else None
    )
    item = await self.ledger.confirm_payment(order, intent, billing)
    return ReconcileOutcome(order, created, item is not None)

  async def reconcile_checkout_session(
      self, session_id: str
  ) -> ReconcileOutcome:
    """Ensures a paid checkout session has exactly one confirmed order.

    Raises:
      PaymentVerificationError: the session is not paid yet.
      PaymentProcessorError: the processor could not be queried.
    """
    order = await db.get_order_by_checkout_session(self.session, session_id)
    if order and order.status not in (
        OrderStatus.PENDING,
        OrderStatus.PAYMENT_VERIFICATION_FAILED,
        OrderStatus.PAYMENT_FAILED,
    ):
      return ReconcileOutcome(order, False, False)

    checkout = await self.gateway.retrieve_checkout_session(session_id)
    outcome = await self.apply_checkout_session(checkout)
    await self.session.commit()
    logger.info(
        "Reconciled session %s -> order %s (created=%s, dispatch=%s)",
        session_id,
        outcome.order.id,
        outcome.created,
        outcome.dispatch_queued,
    )
    return outcome

  async def _intent_for_order(
      self, order: db.Order
  ) -> Optional[Dict[str, Any]]:
    if order.payment_intent_id:
      return await self.gateway.retrieve_payment_intent(order.payment_intent_id)
    if order.checkout_session_id:
      checkout = await self.gateway.retrieve_checkout_session(
          order.checkout_session_id
      )
      return await self.session_intent(checkout)
    return None

  async def reconcile_order(self, order: db.Order) -> str:
    """Re-checks one order against the processor and applies the result.

    Returns:
      One of `confirmed`, `no_change`, `amount_mismatch`, `payment_failed`,
      `cancelled`, `still_pending` or `no_reference`.

    Raises:
      PaymentProcessorError: the processor could not be queried.
    """
    intent = await self._intent_for_order(order)
    if intent is None:
      return "no_reference"

    amount = intent.get("amount")
    if amount is not None and amount != order.total_amount:
      logger.error(
          "Amount mismatch on order %s: ledger %s, processor %s",
          order.id,
          order.total_amount,
          amount,
      )
      db.add_audit_entry(
          self.session,
          order.id,
          AuditAction.RECONCILIATION_CHECK,
          AuditOutcome.DISCREPANCY_FOUND,
          error_message="amount_mismatch",
          details={
              "ledger_amount": order.total_amount,
              "processor_amount": amount,
              "processor_status": intent.get("status"),
          },
      )
      if order.status == OrderStatus.PENDING:
        await self.ledger.transition(
            order,
            OrderStatus.PAYMENT_VERIFICATION_FAILED,
            failure_reason="amount_mismatch",
        )
      return "amount_mismatch"

    status = intent.get("status")
    if status in PAID_INTENT_STATUSES:
      billing = await self.billing_for(intent)
      item = await self.ledger.confirm_payment(order, intent, billing)
      return "confirmed" if item else "no_change"
    if status == "canceled":
      if self.ledger.can_transition(order.status, OrderStatus.CANCELLED):
        await self.ledger.transition(
            order,
            OrderStatus.CANCELLED,
            payment_status=PaymentStatus.VOIDED,
            failure_reason="payment_canceled_at_processor",
        )
        return "cancelled"
      return "no_change"
    error = intent.get("last_payment_error")
    if status == "requires_payment_method" and error:
      if self.ledger.can_transition(order.status, OrderStatus.PAYMENT_FAILED):
        await self.ledger.transition(
            order,
            OrderStatus.PAYMENT_FAILED,
            payment_status=PaymentStatus.FAILED,
            failure_reason=error.get("message") or error.get("code"),
        )
        return "payment_failed"
    return "still_pending"

  async def reconcile_recent_orders(self) -> Dict[str, Any]:
    """Audits recent unconfirmed orders against the processor.

    Covers orders in `pending` or `payment_verification_failed` created
    within the lookback window, at most 50 per run. Every check is written
    to the audit log; paid orders are confirmed and queued for dispatch.
    """
    since = db.utcnow() - datetime.timedelta(
        hours=self.settings.recovery_lookback_hours
    )
    orders = await db.list_orders(
        self.session,
        [OrderStatus.PENDING, OrderStatus.PAYMENT_VERIFICATION_FAILED],
        created_after=since,
        limit=BATCH_LIMIT,
    )
    report: Dict[str, Any] = {
        "checked": 0,
        "corrected": 0,
        "discrepancies": 0,
        "errors": 0,
        "dispatch_order_ids": [],
    }
    for order in orders:
      report["checked"] += 1
      try:
        outcome = await self.reconcile_order(order)
      except PaymentProcessorError as e:
        report["errors"] += 1
        db.add_audit_entry(
            self.session,
            order.id,
            AuditAction.RECONCILIATION_CHECK,
            AuditOutcome.FAILED,
            error_message=e.message,
        )
        await self.session.commit()
        continue

      if outcome == "amount_mismatch":
        report["discrepancies"] += 1
      elif outcome == "confirmed":
        report["corrected"] += 1
        report["dispatch_order_ids"].append(order.id)
        db.add_audit_entry(
            self.session,
            order.id,
            AuditAction.RECONCILIATION_AUTO_CORRECT,
            AuditOutcome.COMPLETED,
            details={"status": order.status},
        )
      else:
        db.add_audit_entry(
            self.session,
            order.id,
            AuditAction.RECONCILIATION_CHECK,
            AuditOutcome.COMPLETED,
            details={"outcome": outcome},
        )
      await self.session.commit()

    logger.info(
        "Reconciliation checked %d orders: %d corrected, %d discrepancies,"
        " %d errors",
        report["checked"],
        report["corrected"],
        report["discrepancies"],
        report["errors"],
    )
    return report
