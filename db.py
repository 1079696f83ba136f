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

"""Database management and persistence layer for the gifting order server.

This module provides the schema definitions, database session management, and
asynchronous data access helpers used by the pipeline. It utilizes SQLAlchemy
with SQLite (via aiosqlite).

Key features include:
- `DatabaseManager`: Handles asynchronous engine initialization and session
  factory setup for the order ledger database.
- WAL Mode: Enables SQLite Write-Ahead Logging so webhook handlers, admin
  actions and scheduled jobs can share the database file.
- Declarative Models: Defines tables for orders, payment intent staging,
  funding alerts, the append-only audit log, processed processor events, the
  internal dispatch work queue and auto-gift rules/executions.
- Uniqueness constraints on the order correlation keys act as the
  compare-and-set between racing webhook and reconciliation writers.
- Data Access Helpers: asynchronous functions for the queries the services
  share.
"""

import datetime
import logging
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Sequence

from enums import AuditOutcome
from enums import WorkItemStatus
from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import Date
from sqlalchemy import DateTime
from sqlalchemy import func
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import select
from sqlalchemy import String
from sqlalchemy import text
from sqlalchemy import UniqueConstraint
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime.datetime:
  """Returns the current UTC time as a naive datetime (SQLite storage)."""
  return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class DatabaseManager:
  """Manages the database engine and sessions without using global variables."""

  def __init__(self) -> None:
    self.engine: Optional[AsyncEngine] = None
    self.session_factory: Optional[sessionmaker] = None

  async def init_db(self, database_path: str) -> None:
    """Initializes the database engine and creates tables."""
    url = f"sqlite+aiosqlite:///{database_path}"
    self.engine = create_async_engine(url, echo=False)

    async with self.engine.connect() as conn:
      await conn.execute(text("PRAGMA journal_mode=WAL"))

    self.session_factory = sessionmaker(
        self.engine, expire_on_commit=False, class_=AsyncSession
    )

    async with self.engine.begin() as conn:
      await conn.run_sync(Base.metadata.create_all)

  async def close(self) -> None:
    """Closes the database engine."""
    if self.engine:
      await self.engine.dispose()
      self.engine = None


# Global manager instance (to be initialized via lifespan)
manager = DatabaseManager()


class Order(Base):
  """The aggregate root: one row per customer order."""

  __tablename__ = "orders"

  id = Column(String, primary_key=True)
  order_number = Column(String, unique=True, nullable=False)
  user_id = Column(String, nullable=True, index=True)
  customer_email = Column(String, nullable=True)

  # External correlation keys. NULLs do not collide in SQLite unique indexes.
  payment_intent_id = Column(String, unique=True, nullable=True)
  checkout_session_id = Column(String, unique=True, nullable=True)
  vendor_order_id = Column(String, nullable=True, index=True)
  # Bumped each time the vendor refuses a submission for funding, so the
  # next submission is a new purchase rather than a replay of the refusal.
  dispatch_attempt = Column(Integer, nullable=False, default=0)
  # Shared secret embedded in the vendor callback URLs for this order.
  webhook_token = Column(String, nullable=True)

  total_amount = Column(Integer, nullable=False)  # In minor units
  currency = Column(String, default="usd")
  payment_status = Column(String, nullable=False)
  status = Column(String, nullable=False, index=True)
  funding_status = Column(String, nullable=False)
  failure_reason = Column(String, nullable=True)

  billing_snapshot = Column(JSON, nullable=True)
  shipping_address = Column(JSON, nullable=True)
  shipping_warning = Column(String, nullable=True)
  line_items = Column(JSON, default=list)
  gift_options = Column(JSON, nullable=True)
  scheduled_delivery_date = Column(Date, nullable=True)

  is_auto_gift = Column(Boolean, default=False)
  auto_gift_rule_id = Column(String, nullable=True)
  auto_gift_execution_id = Column(String, nullable=True)
  group_gift_project_id = Column(String, nullable=True)

  timeline_events = Column(JSON, default=list)
  tracking = Column(JSON, nullable=True)
  vendor_error = Column(JSON, nullable=True)

  payment_verified_at = Column(DateTime, nullable=True)
  dispatch_claimed_at = Column(DateTime, nullable=True)
  last_vendor_update_at = Column(DateTime, nullable=True)
  created_at = Column(DateTime, nullable=False)
  updated_at = Column(DateTime, nullable=False)


class PaymentIntentRecord(Base):
  """Staging buffer for checkout payloads too large for processor metadata."""

  __tablename__ = "payment_intent_records"

  payment_intent_id = Column(String, primary_key=True)
  order_id = Column(String, nullable=True)
  user_id = Column(String, nullable=True)
  payload = Column(JSON)
  created_at = Column(DateTime, nullable=False)
  consumed_at = Column(DateTime, nullable=True)


class FundingAlert(Base):
  __tablename__ = "funding_alerts"

  id = Column(Integer, primary_key=True, autoincrement=True)
  alert_type = Column(String, nullable=False, index=True)
  vendor_balance = Column(Integer)  # In minor units
  pending_value = Column(Integer)
  recommended_topup = Column(Integer)
  orders_waiting = Column(Integer)
  created_at = Column(DateTime, nullable=False)
  resolved_at = Column(DateTime, nullable=True)


class AuditLogEntry(Base):
  """Append-only record of recovery and verification attempts."""

  __tablename__ = "audit_log"

  id = Column(Integer, primary_key=True, autoincrement=True)
  order_id = Column(String, nullable=True, index=True)
  action = Column(String, nullable=False)
  outcome = Column(String, nullable=False)
  error_message = Column(String, nullable=True)
  details = Column(JSON, nullable=True)
  created_at = Column(DateTime, nullable=False)


class ProcessedWebhookEvent(Base):
  __tablename__ = "processed_webhook_events"

  event_id = Column(String, primary_key=True)
  event_type = Column(String)
  outcome = Column(String)
  created_at = Column(DateTime, nullable=False)


class DispatchWorkItem(Base):
  """Internal work queue entry asking the dispatcher to submit an order."""

  __tablename__ = "dispatch_work_items"

  id = Column(Integer, primary_key=True, autoincrement=True)
  dedupe_key = Column(String, unique=True, nullable=False)
  order_id = Column(String, nullable=False, index=True)
  status = Column(String, nullable=False)
  attempts = Column(Integer, default=0)
  last_error = Column(String, nullable=True)
  created_at = Column(DateTime, nullable=False)
  updated_at = Column(DateTime, nullable=False)


class AutoGiftRule(Base):
  __tablename__ = "auto_gift_rules"

  id = Column(String, primary_key=True)
  user_id = Column(String, nullable=False, index=True)
  user_email = Column(String, nullable=True)
  recipient_name = Column(String, nullable=True)
  date_type = Column(String, nullable=False)
  event_date = Column(Date, nullable=False)
  budget_limit = Column(Integer, nullable=False)  # In minor units
  gift_selection_criteria = Column(JSON, nullable=True)
  notification_preferences = Column(JSON, nullable=True)
  shipping_address = Column(JSON, nullable=True)
  payment_method_id = Column(String, nullable=True)
  customer_id = Column(String, nullable=True)
  is_active = Column(Boolean, default=True)
  created_at = Column(DateTime, nullable=False)


class AutoGiftExecution(Base):
  __tablename__ = "auto_gift_executions"
  __table_args__ = (
      UniqueConstraint("rule_id", "execution_date", name="uq_rule_occurrence"),
  )

  id = Column(String, primary_key=True)
  rule_id = Column(String, nullable=False, index=True)
  user_id = Column(String, nullable=True)
  execution_date = Column(Date, nullable=False)
  status = Column(String, nullable=False)
  selected_products = Column(JSON, nullable=True)
  total_amount = Column(Integer, nullable=True)
  order_id = Column(String, nullable=True, index=True)
  payment_intent_id = Column(String, nullable=True)
  error_message = Column(String, nullable=True)
  created_at = Column(DateTime, nullable=False)
  updated_at = Column(DateTime, nullable=False)


# --- Data Access Helpers ---


async def get_order(session: AsyncSession, order_id: str) -> Optional[Order]:
  """Retrieves an order by ID."""
  return await session.get(Order, order_id)


async def get_order_by_payment_intent(
    session: AsyncSession, payment_intent_id: str
) -> Optional[Order]:
  """Retrieves the order correlated with a payment intent."""
  result = await session.execute(
      select(Order)
      .where(Order.payment_intent_id == payment_intent_id)
      .execution_options(populate_existing=True)
  )
  return result.scalar_one_or_none()


async def get_order_by_checkout_session(
    session: AsyncSession, checkout_session_id: str
) -> Optional[Order]:
  """Retrieves the order correlated with a checkout session."""
  result = await session.execute(
      select(Order)
      .where(Order.checkout_session_id == checkout_session_id)
      .execution_options(populate_existing=True)
  )
  return result.scalar_one_or_none()


async def list_orders(
    session: AsyncSession,
    statuses: Sequence[str],
    *,
    updated_before: Optional[datetime.datetime] = None,
    created_after: Optional[datetime.datetime] = None,
    without_vendor_order: bool = False,
    limit: Optional[int] = None,
) -> List[Order]:
  """Lists orders in the given states, oldest first.

  Args:
    session: The database session to use.
    statuses: Order status values to match.
    updated_before: Only orders untouched since this time.
    created_after: Only orders created after this time.
    without_vendor_order: Only orders not yet submitted to the vendor.
    limit: Maximum number of rows.

  Returns:
    A list of matching Order objects.
  """
  stmt = select(Order).where(Order.status.in_(list(statuses)))
  if updated_before is not None:
    stmt = stmt.where(Order.updated_at < updated_before)
  if created_after is not None:
    stmt = stmt.where(Order.created_at > created_after)
  if without_vendor_order:
    stmt = stmt.where(Order.vendor_order_id.is_(None))
  stmt = stmt.order_by(Order.created_at)
  if limit is not None:
    stmt = stmt.limit(limit)
  result = await session.execute(stmt)
  return list(result.scalars().all())


async def count_orders_by_status(session: AsyncSession) -> Dict[str, int]:
  """Returns a mapping of order status to row count."""
  result = await session.execute(
      select(Order.status, func.count()).group_by(Order.status)
  )
  return {status: count for status, count in result.all()}


async def transition_order_status(
    session: AsyncSession,
    order_id: str,
    from_status: str,
    to_status: str,
    values: Optional[Dict[str, Any]] = None,
) -> bool:
  """Atomically moves an order between states if it is still in `from_status`.

  Concurrent writers observing the same starting state race on this UPDATE;
  only one of them sees a matched row.
  """
  stmt = (
      update(Order)
      .where(Order.id == order_id)
      .where(Order.status == from_status)
      .values(status=to_status, **(values or {}))
      .execution_options(synchronize_session=False)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def claim_dispatch(
    session: AsyncSession,
    order_id: str,
    stale_before: datetime.datetime,
) -> bool:
  """Atomically marks an order as being submitted to the vendor.

  A claim older than `stale_before` is considered abandoned and may be taken
  over.
  """
  stmt = (
      update(Order)
      .where(Order.id == order_id)
      .where(Order.vendor_order_id.is_(None))
      .where(
          (Order.dispatch_claimed_at.is_(None))
          | (Order.dispatch_claimed_at < stale_before)
      )
      .values(dispatch_claimed_at=utcnow())
      .execution_options(synchronize_session=False)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def release_dispatch_claim(session: AsyncSession, order_id: str) -> None:
  """Drops a dispatch claim so the order may be submitted again."""
  await session.execute(
      update(Order)
      .where(Order.id == order_id)
      .values(dispatch_claimed_at=None)
      .execution_options(synchronize_session=False)
  )


async def save_payment_intent_record(
    session: AsyncSession,
    payment_intent_id: str,
    order_id: Optional[str],
    user_id: Optional[str],
    payload: Dict[str, Any],
) -> None:
  """Stages the full checkout payload for a payment intent."""
  existing = await session.get(PaymentIntentRecord, payment_intent_id)
  if existing:
    existing.payload = payload
    existing.order_id = order_id
  else:
    session.add(
        PaymentIntentRecord(
            payment_intent_id=payment_intent_id,
            order_id=order_id,
            user_id=user_id,
            payload=payload,
            created_at=utcnow(),
        )
    )


async def get_payment_intent_record(
    session: AsyncSession, payment_intent_id: str
) -> Optional[PaymentIntentRecord]:
  """Retrieves the staged checkout payload for a payment intent."""
  return await session.get(PaymentIntentRecord, payment_intent_id)


async def get_processed_event(
    session: AsyncSession, event_id: str
) -> Optional[ProcessedWebhookEvent]:
  """Retrieves a processed processor event by ID."""
  return await session.get(ProcessedWebhookEvent, event_id)


def record_processed_event(
    session: AsyncSession, event_id: str, event_type: str, outcome: str
) -> None:
  """Marks a processor event as handled (committed with its effects)."""
  session.add(
      ProcessedWebhookEvent(
          event_id=event_id,
          event_type=event_type,
          outcome=outcome,
          created_at=utcnow(),
      )
  )


async def publish_work_item(
    session: AsyncSession, order_id: str
) -> Optional[DispatchWorkItem]:
  """Publishes the dispatch work item for an order.

  Each order owns a single work item. Publishing again re-arms a completed
  item; publishing while one is still pending is a no-op.

  Returns:
    The armed work item, or None if one was already pending.
  """
  dedupe_key = f"dispatch:{order_id}"
  result = await session.execute(
      select(DispatchWorkItem).where(DispatchWorkItem.dedupe_key == dedupe_key)
  )
  item = result.scalar_one_or_none()
  now = utcnow()
  if item is None:
    item = DispatchWorkItem(
        dedupe_key=dedupe_key,
        order_id=order_id,
        status=WorkItemStatus.PENDING,
        attempts=0,
        created_at=now,
        updated_at=now,
    )
    session.add(item)
    await session.flush()
    return item
  if item.status == WorkItemStatus.PENDING:
    return None
  item.status = WorkItemStatus.PENDING
  item.last_error = None
  item.updated_at = now
  return item


async def get_work_item(
    session: AsyncSession, item_id: int
) -> Optional[DispatchWorkItem]:
  """Retrieves a work item by ID."""
  return await session.get(DispatchWorkItem, item_id)


async def get_work_item_for_order(
    session: AsyncSession, order_id: str
) -> Optional[DispatchWorkItem]:
  """Retrieves the dispatch work item owned by an order."""
  result = await session.execute(
      select(DispatchWorkItem)
      .where(DispatchWorkItem.dedupe_key == f"dispatch:{order_id}")
      .execution_options(populate_existing=True)
  )
  return result.scalar_one_or_none()


async def list_pending_work_items(
    session: AsyncSession, limit: int = 100
) -> List[DispatchWorkItem]:
  """Lists pending work items, oldest first."""
  result = await session.execute(
      select(DispatchWorkItem)
      .where(DispatchWorkItem.status == WorkItemStatus.PENDING)
      .order_by(DispatchWorkItem.id)
      .limit(limit)
  )
  return list(result.scalars().all())


def add_audit_entry(
    session: AsyncSession,
    order_id: Optional[str],
    action: str,
    outcome: str,
    error_message: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLogEntry:
  """Appends an entry to the audit log."""
  entry = AuditLogEntry(
      order_id=order_id,
      action=action,
      outcome=outcome,
      error_message=error_message,
      details=details,
      created_at=utcnow(),
  )
  session.add(entry)
  return entry


async def get_audit_entries(
    session: AsyncSession,
    order_id: Optional[str] = None,
    action: Optional[str] = None,
    outcome: Optional[str] = None,
    since: Optional[datetime.datetime] = None,
) -> List[AuditLogEntry]:
  """Lists audit entries matching the given filters, oldest first."""
  stmt = select(AuditLogEntry)
  if order_id is not None:
    stmt = stmt.where(AuditLogEntry.order_id == order_id)
  if action is not None:
    stmt = stmt.where(AuditLogEntry.action == action)
  if outcome is not None:
    stmt = stmt.where(AuditLogEntry.outcome == outcome)
  if since is not None:
    stmt = stmt.where(AuditLogEntry.created_at >= since)
  result = await session.execute(stmt.order_by(AuditLogEntry.id))
  return list(result.scalars().all())


async def has_recent_failure(
    session: AsyncSession,
    order_id: str,
    action: str,
    since: datetime.datetime,
) -> bool:
  """Checks whether an action failed for an order since the given time."""
  result = await session.execute(
      select(func.count())
      .select_from(AuditLogEntry)
      .where(AuditLogEntry.order_id == order_id)
      .where(AuditLogEntry.action == action)
      .where(AuditLogEntry.outcome == AuditOutcome.FAILED)
      .where(AuditLogEntry.created_at >= since)
  )
  return result.scalar_one() > 0


async def get_open_alerts(
    session: AsyncSession, alert_type: Optional[str] = None
) -> List[FundingAlert]:
  """Lists unresolved funding alerts, newest first."""
  stmt = select(FundingAlert).where(FundingAlert.resolved_at.is_(None))
  if alert_type is not None:
    stmt = stmt.where(FundingAlert.alert_type == alert_type)
  result = await session.execute(stmt.order_by(FundingAlert.id.desc()))
  return list(result.scalars().all())


async def get_active_rules(session: AsyncSession) -> List[AutoGiftRule]:
  """Lists active auto-gift rules."""
  result = await session.execute(
      select(AutoGiftRule)
      .where(AutoGiftRule.is_active.is_(True))
      .order_by(AutoGiftRule.created_at)
  )
  return list(result.scalars().all())


async def get_execution(
    session: AsyncSession, rule_id: str, execution_date: datetime.date
) -> Optional[AutoGiftExecution]:
  """Retrieves the execution of a rule for one occurrence date."""
  result = await session.execute(
      select(AutoGiftExecution)
      .where(AutoGiftExecution.rule_id == rule_id)
      .where(AutoGiftExecution.execution_date == execution_date)
  )
  return result.scalar_one_or_none()


async def list_executions(
    session: AsyncSession,
    rule_id: Optional[str] = None,
    order_id: Optional[str] = None,
) -> List[AutoGiftExecution]:
  """Lists auto-gift executions for a rule or an order."""
  stmt = select(AutoGiftExecution)
  if rule_id is not None:
    stmt = stmt.where(AutoGiftExecution.rule_id == rule_id)
  if order_id is not None:
    stmt = stmt.where(AutoGiftExecution.order_id == order_id)
  result = await session.execute(stmt.order_by(AutoGiftExecution.created_at))
  return list(result.scalars().all())
