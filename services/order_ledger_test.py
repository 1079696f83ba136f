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

"""Tests for the order ledger state machine."""

import datetime

from absl.testing import absltest
import db
from enums import AuditAction
from enums import AuditOutcome
from enums import ExecutionStatus
from enums import OrderStatus
from enums import PaymentStatus
from exceptions import InvalidTransitionError
from exceptions import OrderNotModifiableError
from exceptions import PaymentProcessorError
from exceptions import VendorUnavailableError
import fakes
from models import TimelineEvent
from services.order_ledger import generate_order_number
from services.order_ledger import OrderLedger
from services.order_ledger import today


class OrderLedgerTest(fakes.LedgerTestCase):

  def test_order_number_format(self):
    number = generate_order_number(datetime.datetime(2026, 1, 19, 12, 0))
    self.assertRegex(number, r"^GFT-20260119-[0-9A-F]{6}$")

  def test_create_order_flags_incomplete_shipping(self):
    async def run():
      async with self.session_factory() as session:
        address = dict(fakes.SHIPPING_ADDRESS)
        del address["city"]
        order, created = await OrderLedger(session).create_order(
            total_amount=2500, shipping_address=address
        )
        self.assertTrue(created)
        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertEqual(order.payment_status, PaymentStatus.UNPAID)
        self.assertEqual(order.shipping_warning, "missing_fields:city")

    self.run_async(run())

  def test_create_order_conflict_returns_existing(self):
    async def run():
      async with self.session_factory() as session:
        first, _ = await OrderLedger(session).create_order(
            total_amount=2500,
            payment_intent_id="pi_shared",
            shipping_address=fakes.SHIPPING_ADDRESS,
        )
      async with self.session_factory() as session:
        second, created = await OrderLedger(session).create_order(
            total_amount=2500,
            payment_intent_id="pi_shared",
            shipping_address=fakes.SHIPPING_ADDRESS,
        )
        self.assertFalse(created)
        self.assertEqual(second.id, first.id)

    self.run_async(run())

  def test_transition_rejects_illegal_move(self):
    async def run():
      async with self.session_factory() as session:
        order = await self.add_order(session, status=OrderStatus.PENDING)
        with self.assertRaises(InvalidTransitionError):
          await OrderLedger(session).transition(order, OrderStatus.SHIPPED)

    self.run_async(run())

  def test_transition_loses_to_concurrent_writer(self):
    async def run():
      async with self.session_factory() as session:
        order = await self.add_order(session, status=OrderStatus.PENDING)
        # Another writer confirms the order behind this session's back.
        await db.transition_order_status(
            session, order.id, "pending", "payment_confirmed"
        )
        changed = await OrderLedger(session).transition(
            order, OrderStatus.CANCELLED
        )
        self.assertFalse(changed)
        self.assertEqual(order.status, OrderStatus.PAYMENT_CONFIRMED)

    self.run_async(run())

  def test_confirm_payment_publishes_dispatch_once(self):
    async def run():
      async with self.session_factory() as session:
        ledger = OrderLedger(session)
        order = await self.add_order(
            session,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.UNPAID,
        )
        intent = {"id": order.payment_intent_id, "status": "succeeded"}
        item = await ledger.confirm_payment(order, intent)
        await session.commit()
        self.assertIsNotNone(item)
        self.assertEqual(order.status, OrderStatus.PAYMENT_CONFIRMED)
        self.assertEqual(order.payment_status, PaymentStatus.SUCCEEDED)
        self.assertIsNotNone(order.payment_verified_at)

        self.assertIsNone(await ledger.confirm_payment(order, intent))
        await session.commit()
        items = await db.list_pending_work_items(session)
        self.assertLen(items, 1)
        self.assertEqual(items[0].dedupe_key, f"dispatch:{order.id}")

    self.run_async(run())

  def test_confirm_authorized_future_delivery_is_scheduled(self):
    async def run():
      async with self.session_factory() as session:
        ledger = OrderLedger(session)
        order = await self.add_order(
            session,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.UNPAID,
            scheduled_delivery_date=today() + datetime.timedelta(days=5),
        )
        item = await ledger.confirm_payment(
            order, {"id": order.payment_intent_id, "status": "requires_capture"}
        )
        await session.commit()
        self.assertIsNone(item)
        self.assertEqual(order.status, OrderStatus.SCHEDULED)
        self.assertEqual(order.payment_status, PaymentStatus.AUTHORIZED)
        self.assertEmpty(await db.list_pending_work_items(session))

    self.run_async(run())

  def test_append_timeline_skips_known_events(self):
    async def run():
      async with self.session_factory() as session:
        ledger = OrderLedger(session)
        order = await self.add_order(session)
        event = TimelineEvent(
            id="vendor_tracking_obtained_1",
            type="tracking.obtained",
            title="Shipped",
            timestamp="2026-01-19T12:00:00",
        )
        self.assertEqual(ledger.append_timeline(order, [event]), 1)
        self.assertEqual(ledger.append_timeline(order, [event]), 0)
        await session.commit()
        await session.refresh(order)
        self.assertLen(order.timeline_events, 1)

    self.run_async(run())

  def test_cancel_refunds_captured_payment_once(self):
    async def run():
      async with self.session_factory() as session:
        ledger = OrderLedger(session)
        order = await self.add_order(session)
        cancelled = await ledger.cancel_order(
            order.id, self.gateway, self.vendor, reason="customer_request"
        )
        self.assertEqual(cancelled.status, OrderStatus.CANCELLED)
        self.assertEqual(cancelled.payment_status, PaymentStatus.REFUNDED)
        self.assertEqual(self.gateway.refunds, [order.payment_intent_id])

        await ledger.cancel_order(order.id, self.gateway, self.vendor)
        self.assertLen(self.gateway.refunds, 1)
        entries = await db.get_audit_entries(
            session, order_id=order.id, action=AuditAction.CANCELLATION
        )
        self.assertLen(entries, 1)

    self.run_async(run())

  def test_cancel_releases_authorization_and_execution(self):
    async def run():
      async with self.session_factory() as session:
        now = db.utcnow()
        order = await self.add_order(
            session,
            status=OrderStatus.SCHEDULED,
            payment_status=PaymentStatus.AUTHORIZED,
            auto_gift_execution_id="exec-1",
        )
        session.add(
            db.AutoGiftExecution(
                id="exec-1",
                rule_id="rule-1",
                execution_date=today(),
                status=ExecutionStatus.COMPLETED,
                order_id=order.id,
                created_at=now,
                updated_at=now,
            )
        )
        await session.commit()

        cancelled = await OrderLedger(session).cancel_order(
            order.id, self.gateway, self.vendor
        )
        self.assertEqual(cancelled.payment_status, PaymentStatus.VOIDED)
        self.assertEqual(self.gateway.cancelled, [order.payment_intent_id])
        self.assertEmpty(self.gateway.refunds)
        execution = await session.get(db.AutoGiftExecution, "exec-1")
        self.assertEqual(execution.status, ExecutionStatus.CANCELLED)

    self.run_async(run())

  def test_failed_refund_leaves_order_cancelled_and_is_retried(self):
    async def run():
      async with self.session_factory() as session:
        ledger = OrderLedger(session)
        order = await self.add_order(session)
        self.gateway.error = PaymentProcessorError("Processor unavailable")
        with self.assertRaises(PaymentProcessorError):
          await ledger.cancel_order(order.id, self.gateway, self.vendor)

        await session.refresh(order)
        self.assertEqual(order.status, OrderStatus.CANCELLED)
        self.assertEqual(order.payment_status, PaymentStatus.SUCCEEDED)
        failed = await db.get_audit_entries(
            session,
            order_id=order.id,
            action=AuditAction.CANCELLATION,
            outcome=AuditOutcome.FAILED,
        )
        self.assertLen(failed, 1)
        self.assertEqual(failed[0].details["step"], "refund")

        self.gateway.error = None
        cancelled = await ledger.cancel_order(
            order.id, self.gateway, self.vendor
        )
        self.assertEqual(cancelled.payment_status, PaymentStatus.REFUNDED)
        await ledger.cancel_order(order.id, self.gateway, self.vendor)
        self.assertEqual(self.gateway.refunds, [order.payment_intent_id])

    self.run_async(run())

  def test_vendor_cancel_failure_is_audited(self):
    async def run():
      async with self.session_factory() as session:
        order = await self.add_order(
            session, status=OrderStatus.PROCESSING, vendor_order_id="vreq_1"
        )
        self.vendor.cancel_error = VendorUnavailableError("vendor timed out")
        cancelled = await OrderLedger(session).cancel_order(
            order.id, self.gateway, self.vendor
        )
        self.assertEqual(cancelled.status, OrderStatus.CANCELLED)
        self.assertEqual(cancelled.payment_status, PaymentStatus.REFUNDED)
        self.assertEqual(
            cancelled.vendor_error["message"], "vendor timed out"
        )
        entries = await db.get_audit_entries(
            session,
            order_id=order.id,
            action=AuditAction.VENDOR_CANCEL,
            outcome=AuditOutcome.FAILED,
        )
        self.assertLen(entries, 1)
        self.assertEqual(entries[0].details["vendor_order_id"], "vreq_1")

    self.run_async(run())

  def test_cancel_shipped_order_is_rejected(self):
    async def run():
      async with self.session_factory() as session:
        order = await self.add_order(
            session, status=OrderStatus.SHIPPED, vendor_order_id="vreq_1"
        )
        with self.assertRaises(OrderNotModifiableError):
          await OrderLedger(session).cancel_order(
              order.id, self.gateway, self.vendor
          )
        self.assertEmpty(self.gateway.refunds)

    self.run_async(run())

  def test_reschedule_only_before_dispatch(self):
    async def run():
      async with self.session_factory() as session:
        ledger = OrderLedger(session)
        new_date = today() + datetime.timedelta(days=10)
        scheduled = await self.add_order(
            session,
            status=OrderStatus.SCHEDULED,
            payment_status=PaymentStatus.AUTHORIZED,
        )
        updated = await ledger.update_scheduled_date(scheduled.id, new_date)
        self.assertEqual(updated.scheduled_delivery_date, new_date)

        processing = await self.add_order(
            session, status=OrderStatus.PROCESSING, vendor_order_id="vreq_2"
        )
        with self.assertRaises(OrderNotModifiableError):
          await ledger.update_scheduled_date(processing.id, new_date)

    self.run_async(run())


if __name__ == "__main__":
  absltest.main()
