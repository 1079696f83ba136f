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

"""Stuck-order recovery.

The sweep looks for orders that have not advanced within the SLA for their
current state and re-runs the step that should have moved them, re-checking
the external source of truth first:

- unverified or overdue payments are re-queried at the processor;
- paid orders with no vendor order are dispatched again;
- parked orders trigger a funding check;
- quiet vendor orders are polled;
- scheduled orders are captured and released when due, and authorizations
  close to expiry are captured early and escalated.

Every attempt is written to the audit log. A failed attempt is not repeated
within the backoff window, and dispatch is escalated to `failed` after the
configured number of failed attempts.
"""

import datetime
import logging
from typing import Any, Dict, List, Optional

import config
import db
from enums import AuditAction
from enums import AuditOutcome
from enums import OrderStatus
from enums import PaymentStatus
from exceptions import PaymentProcessorError
from exceptions import VendorRejectedError
from exceptions import VendorUnavailableError
from services.fulfillment_service import FulfillmentDispatcher
from services.funding_service import FundingMonitor
from services.funding_service import notify_ops
from services.order_ledger import OrderLedger
from services.order_ledger import today
from services.reconciliation_service import ReconciliationService
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

SWEEP_LIMIT = 50


class RecoveryService:
  """Finds orders that stopped making progress and moves them on."""

  def __init__(
      self,
      session: AsyncSession,
      gateway,
      vendor_client,
      settings: config.PipelineSettings,
  ):
    self.session = session
    self.gateway = gateway
    self.settings = settings
    self.ledger = OrderLedger(session)
    self.reconciler = ReconciliationService(session, gateway, settings)
    self.dispatcher = FulfillmentDispatcher(session, vendor_client, settings)
    self.funding = FundingMonitor(
        session, vendor_client, settings, self.dispatcher
    )

  async def _in_backoff(self, order_id: str, action: AuditAction) -> bool:
    since = db.utcnow() - datetime.timedelta(
        minutes=self.settings.recovery_backoff_minutes
    )
    return await db.has_recent_failure(self.session, order_id, action, since)

  async def _audit(
      self,
      order_id: str,
      action: AuditAction,
      outcome: AuditOutcome,
      error_message: Optional[str] = None,
      **details: Any,
  ) -> None:
    db.add_audit_entry(
        self.session,
        order_id,
        action,
        outcome,
        error_message=error_message,
        details=details or None,
    )
    await self.session.commit()

  async def recover_payment(
      self, order: db.Order, bypass_backoff: bool = False
  ) -> str:
    """Re-queries the processor for an order whose payment is unresolved."""
    action = AuditAction.PAYMENT_VERIFICATION_RECOVERY
    if not bypass_backoff and await self._in_backoff(order.id, action):
      return "backoff"
    try:
      outcome = await self.reconciler.reconcile_order(order)
    except PaymentProcessorError as e:
      logger.warning("Payment recovery for %s failed: %s", order.id, e.message)
      await self._audit(order.id, action, AuditOutcome.FAILED, e.message)
      return "error"
    await self._audit(
        order.id,
        action,
        AuditOutcome.COMPLETED,
        outcome=outcome,
        status=order.status,
    )
    return outcome

  async def recover_dispatch(
      self, order: db.Order, bypass_backoff: bool = False
  ) -> str:
    """Retries vendor submission for a paid order with no vendor order."""
    action = AuditAction.DISPATCH_RETRY
    failures = await db.get_audit_entries(
        self.session,
        order_id=order.id,
        action=action,
        outcome=AuditOutcome.FAILED,
    )
    if len(failures) >= self.settings.max_dispatch_attempts:
      return await self._escalate(order, len(failures))
    if not bypass_backoff and await self._in_backoff(order.id, action):
      return "backoff"

    try:
      outcome = await self.dispatcher.dispatch_order(order.id)
    except (VendorUnavailableError, VendorRejectedError) as e:
      logger.warning("Dispatch retry for %s failed: %s", order.id, e.message)
      await self._audit(
          order.id,
          action,
          AuditOutcome.FAILED,
          e.message,
          attempt=len(failures) + 1,
      )
      return "error"
    await self._audit(
        order.id,
        action,
        AuditOutcome.FAILED if outcome == "failed" else AuditOutcome.COMPLETED,
        outcome=outcome,
        attempt=len(failures) + 1,
    )
    return outcome

  async def _escalate(self, order: db.Order, attempts: int) -> str:
    logger.error(
        "Order %s failed dispatch %d times; escalating", order.id, attempts
    )
    if self.ledger.can_transition(order.status, OrderStatus.FAILED):
      await self.ledger.mark_failed(order, "max_retries_exceeded")
    await self._audit(
        order.id,
        AuditAction.DISPATCH_RETRY,
        AuditOutcome.ESCALATED,
        "max_retries_exceeded",
        attempts=attempts,
    )
    await notify_ops(
        self.settings,
        "order_escalated",
        {"order_id": order.id, "reason": "max_retries_exceeded"},
    )
    return "escalated"

  async def _capture(self, order: db.Order, action: AuditAction) -> bool:
    try:
      intent = await self.gateway.capture_payment_intent(
          order.payment_intent_id
      )
    except PaymentProcessorError as e:
      logger.error("Capture for order %s failed: %s", order.id, e.message)
      await self._audit(order.id, action, AuditOutcome.FAILED, e.message)
      return False
    await self.ledger.confirm_payment(order, intent)
    return True

  async def release_scheduled(self, order: db.Order) -> str:
    """Captures a due scheduled order and makes it dispatchable."""
    if order.status != OrderStatus.SCHEDULED:
      return "not_scheduled"
    scheduled = order.scheduled_delivery_date
    if scheduled and scheduled > today():
      return "not_due"
    action = AuditAction.SCHEDULED_RELEASE
    if order.payment_status == PaymentStatus.AUTHORIZED:
      if not await self._capture(order, action):
        return "error"
    elif order.payment_status == PaymentStatus.SUCCEEDED:
      await self.ledger.confirm_payment(
          order, {"id": order.payment_intent_id, "status": "succeeded"}
      )
    else:
      return "not_paid"
    await self._audit(
        order.id, action, AuditOutcome.COMPLETED, status=order.status
    )
    return "released"

  async def capture_expiring_authorization(self, order: db.Order) -> str:
    """Captures a held payment before the authorization lapses."""
    action = AuditAction.AUTHORIZATION_EXPIRING
    if await self._in_backoff(order.id, action):
      return "backoff"
    logger.warning(
        "Authorization for order %s (delivery %s) is about to expire",
        order.id,
        order.scheduled_delivery_date,
    )
    if not await self._capture(order, action):
      return "error"
    await self._audit(
        order.id,
        action,
        AuditOutcome.ESCALATED,
        scheduled_delivery_date=str(order.scheduled_delivery_date),
    )
    await notify_ops(
        self.settings,
        "authorization_expiring",
        {
            "order_id": order.id,
            "scheduled_delivery_date": str(order.scheduled_delivery_date),
        },
    )
    return "captured"

  async def release_due_scheduled(self) -> Dict[str, Any]:
    """Releases due scheduled orders and rescues expiring authorizations."""
    expiry_cutoff = db.utcnow() - datetime.timedelta(
        days=self.settings.authorization_max_age_days
    )
    orders = await db.list_orders(self.session, [OrderStatus.SCHEDULED])
    report = {"released": [], "captured_early": [], "errors": []}
    for order in orders:
      due = (
          order.scheduled_delivery_date is None
          or order.scheduled_delivery_date <= today()
      )
      if due:
        outcome = await self.release_scheduled(order)
        if outcome == "released":
          report["released"].append(order.id)
        elif outcome == "error":
          report["errors"].append(order.id)
        continue
      held_since = order.payment_verified_at or order.created_at
      if (
          order.payment_status == PaymentStatus.AUTHORIZED
          and held_since <= expiry_cutoff
      ):
        outcome = await self.capture_expiring_authorization(order)
        if outcome == "captured":
          report["captured_early"].append(order.id)
        elif outcome == "error":
          report["errors"].append(order.id)
    return report

  async def _stale(
      self, statuses: List[OrderStatus], minutes: int, **filters: Any
  ) -> List[db.Order]:
    return await db.list_orders(
        self.session,
        statuses,
        updated_before=db.utcnow() - datetime.timedelta(minutes=minutes),
        limit=SWEEP_LIMIT,
        **filters,
    )

  async def sweep(self, bypass_backoff: bool = False) -> Dict[str, Any]:
    """Runs one recovery pass over every kind of stuck order."""
    report: Dict[str, Any] = {}

    unverified = await db.list_orders(
        self.session,
        [OrderStatus.PAYMENT_VERIFICATION_FAILED],
        limit=SWEEP_LIMIT,
    )
    overdue = [
        o
        for o in await self._stale(
            [OrderStatus.PENDING], self.settings.pending_payment_sla_minutes
        )
        if o.payment_intent_id or o.checkout_session_id
    ]
    payment = {}
    for order in unverified + overdue:
      payment[order.id] = await self.recover_payment(order, bypass_backoff)
    report["payment_recovery"] = payment

    stuck = await self._stale(
        [OrderStatus.PAYMENT_CONFIRMED],
        self.settings.dispatch_sla_minutes,
        without_vendor_order=True,
    )
    dispatch = {}
    for order in stuck:
      dispatch[order.id] = await self.recover_dispatch(order, bypass_backoff)
    report["dispatch_recovery"] = dispatch

    awaiting = await db.list_orders(
        self.session, [OrderStatus.AWAITING_FUNDS], limit=1
    )
    if awaiting:
      try:
        report["funding"] = await self.funding.check_funding()
      except (VendorUnavailableError, VendorRejectedError) as e:
        logger.warning("Funding check skipped: %s", e.message)
        report["funding"] = {"error": e.message}

    report["vendor_sync"] = await self.dispatcher.sync_vendor_orders()
    report["scheduled"] = await self.release_due_scheduled()
    report["queue"] = await self.dispatcher.drain_queue()
    logger.info(
        "Recovery sweep: %d payment, %d dispatch, %d released",
        len(payment),
        len(dispatch),
        len(report["scheduled"]["released"]),
    )
    return report

  async def fix_all_stuck(self) -> Dict[str, Any]:
    """Operator-triggered sweep that ignores the retry backoff."""
    return await self.sweep(bypass_backoff=True)

  async def retry_order(self, order_id: str) -> Dict[str, Any]:
    """Re-runs the recovery step that fits one order's current state."""
    order = await self.ledger.get_order(order_id)
    before = order.status
    if before in (
        OrderStatus.PENDING,
        OrderStatus.PAYMENT_VERIFICATION_FAILED,
        OrderStatus.PAYMENT_FAILED,
    ):
      outcome = await self.recover_payment(order, bypass_backoff=True)
    elif before in (OrderStatus.PAYMENT_CONFIRMED, OrderStatus.AWAITING_FUNDS):
      outcome = await self.recover_dispatch(order, bypass_backoff=True)
    elif before == OrderStatus.SCHEDULED:
      outcome = await self.release_scheduled(order)
      if outcome == "released":
        outcome = await self.recover_dispatch(order, bypass_backoff=True)
    elif before in (OrderStatus.PROCESSING, OrderStatus.SHIPPED):
      if not order.vendor_order_id:
        outcome = "no_vendor_order"
      else:
        try:
          await self.dispatcher.sync_order(order)
          outcome = "synced"
        except (VendorUnavailableError, VendorRejectedError) as e:
          outcome = "error"
          logger.warning("Retry sync for %s failed: %s", order.id, e.message)
    else:
      outcome = "no_action"
    await self.session.refresh(order)
    logger.info(
        "Manual retry of order %s: %s (%s -> %s)",
        order.id,
        outcome,
        before,
        order.status,
    )
    return {
        "order_id": order.id,
        "outcome": outcome,
        "status_before": before,
        "status": order.status,
    }
