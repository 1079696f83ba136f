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

"""Auto-gift execution.

Active rules are evaluated against their next occurrence date. Each rule
executes at most once per occurrence: the execution row is inserted under a
unique (rule, date) constraint before anything is bought, so overlapping
scheduler runs cannot place two orders for the same birthday.
"""

import datetime
import logging
from typing import Any, Dict, List, Optional
import uuid

import config
import db
from enums import AmountUnit
from enums import ExecutionStatus
from enums import GiftDateType
from enums import OrderStatus
from exceptions import GiftingError
from exceptions import ResourceNotFoundError
from exceptions import VendorRejectedError
from exceptions import VendorUnavailableError
from models import CartItem
from models import CreatePaymentIntentRequest
from models import GiftOptions
from models import ShippingAddress
from services.order_ledger import OrderLedger
from services.order_ledger import today as ledger_today
from services.payment_intent_service import PaymentIntentService
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Orders that have not been handed to the vendor and can still be unwound.
PRE_DISPATCH_STATUSES = frozenset({
    OrderStatus.PENDING,
    OrderStatus.PAYMENT_VERIFICATION_FAILED,
    OrderStatus.PAYMENT_FAILED,
    OrderStatus.SCHEDULED,
    OrderStatus.PAYMENT_CONFIRMED,
    OrderStatus.AWAITING_FUNDS,
})

_OPEN_EXECUTION_STATUSES = (
    ExecutionStatus.PENDING,
    ExecutionStatus.PROCESSING,
    ExecutionStatus.COMPLETED,
)


def _in_year(event_date: datetime.date, year: int) -> datetime.date:
  try:
    return event_date.replace(year=year)
  except ValueError:
    # February 29th outside a leap year.
    return datetime.date(year, 2, 28)


def next_occurrence(
    date_type: str, event_date: datetime.date, on_or_after: datetime.date
) -> Optional[datetime.date]:
  """Returns the next date a rule fires on, or None if it never will again.

  Birthdays and anniversaries recur yearly; custom dates fire once.
  """
  if GiftDateType(date_type) == GiftDateType.CUSTOM:
    return event_date if event_date >= on_or_after else None
  for year in (on_or_after.year, on_or_after.year + 1):
    candidate = _in_year(event_date, year)
    if candidate >= on_or_after:
      return candidate
  return None


class AutoGiftService:
  """Runs auto-gift rules and unwinds their executions on cancellation."""

  def __init__(
      self,
      session: AsyncSession,
      gateway,
      vendor_client,
      settings: config.PipelineSettings,
  ):
    self.session = session
    self.gateway = gateway
    self.vendor_client = vendor_client
    self.settings = settings
    self.ledger = OrderLedger(session)
    self.payments = PaymentIntentService(session, gateway, settings)

  async def select_gifts(self, rule: db.AutoGiftRule) -> List[Dict[str, Any]]:
    """Picks the best-rated products that fit within the rule's budget."""
    criteria = rule.gift_selection_criteria or {}
    query = criteria.get("query") or " ".join(
        list(criteria.get("categories") or []) + [rule.date_type, "gift"]
    )
    budget = rule.budget_limit
    min_price = criteria.get("min_price") or 0
    excluded = set(criteria.get("exclude_items") or [])
    max_items = criteria.get("max_items") or 1

    results = await self.vendor_client.search_products(query, max_price=budget)
    candidates = [
        p
        for p in results
        if p.get("product_id")
        and p["product_id"] not in excluded
        and p["price"] >= min_price
    ]
    candidates.sort(key=lambda p: (p["stars"], p["num_reviews"]), reverse=True)

    selected = []
    spent = 0
    for product in candidates:
      if len(selected) >= max_items:
        break
      if spent + product["price"] <= budget:
        selected.append(product)
        spent += product["price"]
    logger.info(
        "Rule %s: query %r -> %d candidates, %d selected (%d of %d)",
        rule.id,
        query,
        len(candidates),
        len(selected),
        spent,
        budget,
    )
    return selected

  async def _claim_execution(
      self, rule: db.AutoGiftRule, occurrence: datetime.date
  ) -> Optional[db.AutoGiftExecution]:
    rule_id = rule.id
    if await db.get_execution(self.session, rule_id, occurrence):
      logger.info("Rule %s already executed for %s", rule_id, occurrence)
      return None
    now = db.utcnow()
    execution = db.AutoGiftExecution(
        id=str(uuid.uuid4()),
        rule_id=rule_id,
        user_id=rule.user_id,
        execution_date=occurrence,
        status=ExecutionStatus.PROCESSING,
        created_at=now,
        updated_at=now,
    )
    self.session.add(execution)
    try:
      await self.session.commit()
    except IntegrityError:
      await self.session.rollback()
      logger.info("Rule %s already executed for %s", rule_id, occurrence)
      return None
    return execution

  async def _finish(
      self,
      execution: db.AutoGiftExecution,
      status: ExecutionStatus,
      error_message: Optional[str] = None,
  ) -> None:
    execution.status = status
    execution.error_message = error_message
    execution.updated_at = db.utcnow()
    await self.session.commit()
    if error_message:
      logger.warning(
          "Auto-gift execution %s (rule %s) failed: %s",
          execution.id,
          execution.rule_id,
          error_message,
      )

  async def execute_rule(
      self, rule: db.AutoGiftRule, execution: db.AutoGiftExecution
  ) -> db.AutoGiftExecution:
    """Selects gifts and places a paid order for one rule occurrence."""
    try:
      products = await self.select_gifts(rule)
    except (VendorUnavailableError, VendorRejectedError) as e:
      await self._finish(
          execution, ExecutionStatus.FAILED, f"product_search_failed: {e}"
      )
      return execution
    if not products:
      await self._finish(
          execution, ExecutionStatus.FAILED, "no_products_within_budget"
      )
      return execution
    if not rule.payment_method_id:
      await self._finish(
          execution, ExecutionStatus.FAILED, "no_saved_payment_method"
      )
      return execution

    total = sum(p["price"] for p in products)
    execution.selected_products = products
    execution.total_amount = total
    criteria = rule.gift_selection_criteria or {}
    request = CreatePaymentIntentRequest(
        amount=total,
        amount_unit=AmountUnit.MINOR,
        currency=self.settings.default_currency,
        cart_items=[
            CartItem(
                product_id=p["product_id"],
                quantity=1,
                unit_price=p["price"],
                title=p.get("title"),
                image_url=p.get("image"),
            )
            for p in products
        ],
        shipping_address=ShippingAddress.model_validate(
            rule.shipping_address or {}
        ),
        scheduled_delivery_date=execution.execution_date,
        gift_options=GiftOptions(
            message=criteria.get("gift_message"),
            recipient_name=rule.recipient_name,
        ),
        customer_email=rule.user_email,
        user_id=rule.user_id,
        payment_method_id=rule.payment_method_id,
        customer_id=rule.customer_id,
        is_auto_gift=True,
        auto_gift_rule_id=rule.id,
        auto_gift_execution_id=execution.id,
    )
    try:
      response = await self.payments.create_payment_intent(request)
    except GiftingError as e:
      await self._finish(execution, ExecutionStatus.FAILED, e.message)
      return execution

    execution.order_id = response.order_id
    execution.payment_intent_id = response.payment_intent_id
    if response.status in ("succeeded", "requires_capture"):
      await self._finish(execution, ExecutionStatus.COMPLETED)
      logger.info(
          "Auto-gift rule %s placed order %s for %s",
          rule.id,
          response.order_id,
          execution.execution_date,
      )
    else:
      await self._finish(
          execution, ExecutionStatus.FAILED, f"payment_{response.status}"
      )
    return execution

  async def process_due_rules(
      self, today: Optional[datetime.date] = None
  ) -> Dict[str, Any]:
    """Executes every active rule whose next occurrence is in the window."""
    today = today or ledger_today()
    horizon = today + datetime.timedelta(
        days=self.settings.auto_gift_days_ahead
    )
    rule_ids = [rule.id for rule in await db.get_active_rules(self.session)]
    report: Dict[str, Any] = {
        "evaluated": len(rule_ids),
        "completed": [],
        "failed": [],
        "skipped": 0,
        "dispatch_order_ids": [],
    }
    for rule_id in rule_ids:
      # A lost insert race rolls back the session and expires loaded rules.
      rule = await self.session.get(db.AutoGiftRule, rule_id)
      occurrence = next_occurrence(rule.date_type, rule.event_date, today)
      if occurrence is None or occurrence > horizon:
        continue
      execution = await self._claim_execution(rule, occurrence)
      if execution is None:
        report["skipped"] += 1
        continue
      await self.execute_rule(rule, execution)
      if execution.status == ExecutionStatus.COMPLETED:
        report["completed"].append(execution.id)
        order = await db.get_order(self.session, execution.order_id)
        if order and order.status == OrderStatus.PAYMENT_CONFIRMED:
          report["dispatch_order_ids"].append(order.id)
      else:
        report["failed"].append(execution.id)
    logger.info(
        "Auto-gift run for %s: %d rules, %d completed, %d failed, %d skipped",
        today,
        report["evaluated"],
        len(report["completed"]),
        len(report["failed"]),
        report["skipped"],
    )
    return report

  async def _cancel(
      self, execution: db.AutoGiftExecution, reason: str
  ) -> str:
    if execution.status not in _OPEN_EXECUTION_STATUSES:
      return "unchanged"
    if execution.order_id:
      order = await db.get_order(self.session, execution.order_id)
      if order and order.status not in PRE_DISPATCH_STATUSES:
        if order.status == OrderStatus.CANCELLED:
          await self._finish(execution, ExecutionStatus.CANCELLED, reason)
          return "cancelled"
        logger.info(
            "Execution %s order %s is %s; leaving it in place",
            execution.id,
            order.id,
            order.status,
        )
        return "already_dispatched"
      if order:
        # Refunds or releases the payment and cancels linked executions.
        await self.ledger.cancel_order(
            order.id, self.gateway, self.vendor_client, reason=reason
        )
        await self.session.refresh(execution)
        if execution.status != ExecutionStatus.CANCELLED:
          await self._finish(execution, ExecutionStatus.CANCELLED, reason)
        return "cancelled"
    await self._finish(execution, ExecutionStatus.CANCELLED, reason)
    return "cancelled"

  async def cancel_execution(self, execution_id: str) -> db.AutoGiftExecution:
    """Cancels one execution and unwinds its order if not yet dispatched."""
    execution = await self.session.get(db.AutoGiftExecution, execution_id)
    if execution is None:
      raise ResourceNotFoundError(f"Execution {execution_id} not found")
    await self._cancel(execution, "execution_cancelled")
    return execution

  async def cancel_rule(self, rule_id: str) -> Dict[str, Any]:
    """Deactivates a rule and cancels its executions that can be unwound."""
    rule = await self.session.get(db.AutoGiftRule, rule_id)
    if rule is None:
      raise ResourceNotFoundError(f"Auto-gift rule {rule_id} not found")
    rule.is_active = False
    await self.session.commit()
    outcomes = {}
    for execution in await db.list_executions(self.session, rule_id=rule_id):
      outcomes[execution.id] = await self._cancel(execution, "rule_cancelled")
    logger.info("Auto-gift rule %s cancelled: %s", rule_id, outcomes)
    return {"rule_id": rule_id, "executions": outcomes}
