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

"""Payment processor webhook ingestion.

Events are authenticated before anything is parsed, then handled exactly
once: the processed-event ledger is committed together with the order state
change, so a redelivered event is a no-op. Dispatch is never run inline; a
confirmed order publishes a work item and the caller hands its order ID to a
background consumer after the response is sent.
"""

import dataclasses
import json
import logging
from typing import List, Optional

import config
import db
from enums import OrderStatus
from enums import PaymentStatus
from exceptions import PaymentVerificationError
from exceptions import WebhookSignatureError
from models import AmountCapturableEvent
from models import CheckoutCompletedEvent
from models import CheckoutExpiredEvent
from models import parse_processor_event
from models import PaymentFailedEvent
from models import PaymentSucceededEvent
from models import ProcessorEvent
from services.order_ledger import OrderLedger
from services.reconciliation_service import ReconciliationService
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class WebhookResult:
  event_id: str
  event_type: str
  outcome: str
  order_id: Optional[str] = None
  dispatch_order_ids: List[str] = dataclasses.field(default_factory=list)


class WebhookService:
  """Verifies and applies payment processor events."""

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
    self.reconciler = ReconciliationService(session, gateway, settings)

  async def handle(
      self, payload: bytes, signature_header: Optional[str]
  ) -> WebhookResult:
    """Authenticates, deduplicates and applies one processor event.

    Raises:
      WebhookSignatureError: the payload is not authentic. Nothing is parsed
        or written.
    """
    self.gateway.verify_webhook(payload, signature_header or "")
    try:
      event = parse_processor_event(json.loads(payload))
    except ValueError as e:
      raise WebhookSignatureError("Malformed webhook payload") from e

    if await db.get_processed_event(self.session, event.id):
      logger.info("Event %s (%s) already processed", event.id, event.type)
      return WebhookResult(event.id, event.type, "duplicate")

    result = await self._apply(event)
    db.record_processed_event(
        self.session, event.id, event.type, result.outcome
    )
    try:
      await self.session.commit()
    except IntegrityError:
      # A concurrent delivery of the same event committed first.
      await self.session.rollback()
      logger.info("Event %s processed concurrently", event.id)
      return WebhookResult(event.id, event.type, "duplicate")
    logger.info(
        "Event %s (%s): %s order=%s",
        event.id,
        event.type,
        result.outcome,
        result.order_id,
    )
    return result

  async def _apply(self, event: ProcessorEvent) -> WebhookResult:
    if isinstance(event, PaymentSucceededEvent):
      return await self._on_payment_succeeded(event)
    if isinstance(event, AmountCapturableEvent):
      return await self._on_payment_succeeded(event)
    if isinstance(event, PaymentFailedEvent):
      return await self._on_payment_failed(event)
    if isinstance(event, CheckoutCompletedEvent):
      return await self._on_checkout_completed(event)
    if isinstance(event, CheckoutExpiredEvent):
      return await self._on_checkout_expired(event)
    logger.info("Ignoring unhandled event type %s", event.type)
    return WebhookResult(event.id, event.type, "ignored")

  async def _on_payment_succeeded(self, event: ProcessorEvent) -> WebhookResult:
    intent = event.data_object
    order, _ = await self.reconciler.materialize_from_intent(intent)
    record = await db.get_payment_intent_record(self.session, intent["id"])
    if record and record.consumed_at is None:
      record.consumed_at = db.utcnow()
    billing = await self.reconciler.billing_for(intent)
    try:
      item = await self.ledger.confirm_payment(order, intent, billing)
    except PaymentVerificationError as e:
      logger.warning("Event %s not applied: %s", event.id, e.message)
      return WebhookResult(event.id, event.type, "not_paid", order.id)
    return WebhookResult(
        event.id,
        event.type,
        "confirmed" if item else "no_change",
        order.id,
        [order.id] if item else [],
    )

  async def _on_payment_failed(
      self, event: PaymentFailedEvent
  ) -> WebhookResult:
    intent = event.data_object
    order = await db.get_order_by_payment_intent(self.session, intent["id"])
    if not order:
      logger.warning("Payment failure for unknown intent %s", intent["id"])
      return WebhookResult(event.id, event.type, "unknown_order")
    error = intent.get("last_payment_error") or {}
    if not self.ledger.can_transition(order.status, OrderStatus.PAYMENT_FAILED):
      logger.info(
          "Order %s is %s; ignoring payment failure", order.id, order.status
      )
      return WebhookResult(event.id, event.type, "no_change", order.id)
    changed = await self.ledger.transition(
        order,
        OrderStatus.PAYMENT_FAILED,
        payment_status=PaymentStatus.FAILED,
        failure_reason=error.get("message") or error.get("code"),
    )
    return WebhookResult(
        event.id, event.type, "failed" if changed else "no_change", order.id
    )

  async def _on_checkout_completed(
      self, event: CheckoutCompletedEvent
  ) -> WebhookResult:
    try:
      outcome = await self.reconciler.apply_checkout_session(event.data_object)
    except PaymentVerificationError as e:
      logger.info(
          "Checkout %s not paid yet: %s", event.data_object.get("id"), e.message
      )
      return WebhookResult(event.id, event.type, "not_paid")
    return WebhookResult(
        event.id,
        event.type,
        "confirmed" if outcome.dispatch_queued else "no_change",
        outcome.order.id,
        [outcome.order.id] if outcome.dispatch_queued else [],
    )

  async def _on_checkout_expired(
      self, event: CheckoutExpiredEvent
  ) -> WebhookResult:
    session_id = event.data_object.get("id")
    order = await db.get_order_by_checkout_session(self.session, session_id)
    if not order:
      return WebhookResult(event.id, event.type, "unknown_order")
    if order.status != OrderStatus.PENDING:
      return WebhookResult(event.id, event.type, "no_change", order.id)
    await self.ledger.transition(
        order, OrderStatus.CANCELLED, failure_reason="checkout_expired"
    )
    return WebhookResult(event.id, event.type, "cancelled", order.id)
