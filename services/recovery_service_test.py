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

"""Tests for stuck-order recovery."""

import datetime

from absl.testing import absltest
import db
from enums import AuditAction
from enums import AuditOutcome
from enums import OrderStatus
from enums import PaymentStatus
from exceptions import VendorRejectedError
from exceptions import VendorUnavailableError
import fakes
from services.order_ledger import today
from services.recovery_service import RecoveryService


class RecoveryServiceTest(fakes.LedgerTestCase):

  def _recovery(self, session) -> RecoveryService:
    return RecoveryService(session, self.gateway, self.vendor, self.settings)

  def test_sweep_redispatches_stuck_order_once(self):
    async def run():
      async with self.session_factory() as session:
        order = await self.add_order(session, updated_at=self.minutes_ago(30))
        await db.publish_work_item(session, order.id)
        await session.commit()

        report = await self._recovery(session).sweep()
        self.assertEqual(report["dispatch_recovery"], {order.id: "submitted"})
        self.assertEqual(
            report["queue"]["outcomes"], {"already_submitted": 1}
        )
        self.assertLen(self.vendor.placed, 1)

        retries = await db.get_audit_entries(
            session, order_id=order.id, action=AuditAction.DISPATCH_RETRY
        )
        self.assertLen(retries, 1)
        self.assertEqual(retries[0].outcome, AuditOutcome.COMPLETED)
        await session.refresh(order)
        self.assertEqual(order.status, OrderStatus.PROCESSING)

    self.run_async(run())

  def test_vendor_refusing_balance_reads_does_not_abort_sweep(self):
    async def run():
      async with self.session_factory() as session:
        stuck = await self.add_order(session, updated_at=self.minutes_ago(30))
        await db.publish_work_item(session, stuck.id)
        await self.add_order(session, status=OrderStatus.AWAITING_FUNDS)
        await session.commit()
        self.vendor.balance_error = VendorRejectedError(
            "Invalid API key", vendor_code="unauthorized"
        )

        report = await self._recovery(session).sweep()
        self.assertEqual(report["dispatch_recovery"], {stuck.id: "error"})
        self.assertEqual(report["funding"], {"error": "Invalid API key"})
        self.assertIn("vendor_sync", report)
        self.assertEqual(report["scheduled"]["released"], [])
        self.assertEqual(report["queue"]["outcomes"], {"retry": 1})
        self.assertEmpty(self.vendor.placed)

        item = await db.get_work_item_for_order(session, stuck.id)
        self.assertEqual(item.last_error, "Invalid API key")

    self.run_async(run())

  def test_fresh_order_is_left_alone(self):
    async def run():
      async with self.session_factory() as session:
        await self.add_order(session)
        report = await self._recovery(session).sweep()
        self.assertEqual(report["dispatch_recovery"], {})
        self.assertEmpty(self.vendor.placed)

    self.run_async(run())

  def test_failed_retry_backs_off(self):
    async def run():
      async with self.session_factory() as session:
        order = await self.add_order(session, updated_at=self.minutes_ago(30))
        self.vendor.error = VendorUnavailableError("vendor timed out")
        recovery = self._recovery(session)

        self.assertEqual(await recovery.recover_dispatch(order), "error")
        self.assertEqual(await recovery.recover_dispatch(order), "backoff")
        self.assertLen(self.vendor.placed, 1)

    self.run_async(run())

  def test_escalates_after_max_attempts(self):
    async def run():
      async with self.session_factory() as session:
        order = await self.add_order(session, updated_at=self.minutes_ago(30))
        self.vendor.error = VendorUnavailableError("vendor timed out")
        recovery = self._recovery(session)

        for _ in range(self.settings.max_dispatch_attempts):
          outcome = await recovery.recover_dispatch(order, bypass_backoff=True)
          self.assertEqual(outcome, "error")
        outcome = await recovery.recover_dispatch(order, bypass_backoff=True)
        self.assertEqual(outcome, "escalated")
        self.assertLen(self.vendor.placed, 3)

        await session.refresh(order)
        self.assertEqual(order.status, OrderStatus.FAILED)
        self.assertEqual(order.failure_reason, "max_retries_exceeded")
        escalations = await db.get_audit_entries(
            session, order_id=order.id, outcome=AuditOutcome.ESCALATED
        )
        self.assertLen(escalations, 1)

    self.run_async(run())

  def test_sweep_confirms_paid_unverified_order(self):
    async def run():
      async with self.session_factory() as session:
        order = await self.add_order(
            session,
            status=OrderStatus.PAYMENT_VERIFICATION_FAILED,
            payment_status=PaymentStatus.UNPAID,
        )
        self.gateway.add_intent(
            order.payment_intent_id, amount=5000, status="succeeded"
        )

        report = await self._recovery(session).sweep()
        self.assertEqual(report["payment_recovery"], {order.id: "confirmed"})
        self.assertEqual(report["queue"]["outcomes"], {"submitted": 1})

        await session.refresh(order)
        self.assertEqual(order.status, OrderStatus.PROCESSING)
        self.assertEqual(order.payment_status, PaymentStatus.SUCCEEDED)
        entries = await db.get_audit_entries(
            session,
            order_id=order.id,
            action=AuditAction.PAYMENT_VERIFICATION_RECOVERY,
        )
        self.assertLen(entries, 1)

    self.run_async(run())

  def test_due_scheduled_order_is_captured_and_released(self):
    async def run():
      async with self.session_factory() as session:
        order = await self.add_order(
            session,
            status=OrderStatus.SCHEDULED,
            payment_status=PaymentStatus.AUTHORIZED,
            scheduled_delivery_date=today(),
        )
        self.gateway.add_intent(
            order.payment_intent_id, status="requires_capture"
        )

        report = await self._recovery(session).release_due_scheduled()
        self.assertEqual(report["released"], [order.id])
        self.assertEqual(self.gateway.captured, [order.payment_intent_id])

        await session.refresh(order)
        self.assertEqual(order.status, OrderStatus.PAYMENT_CONFIRMED)
        self.assertEqual(order.payment_status, PaymentStatus.SUCCEEDED)
        self.assertIsNotNone(
            await db.get_work_item_for_order(session, order.id)
        )

    self.run_async(run())

  def test_expiring_authorization_is_captured_early(self):
    async def run():
      async with self.session_factory() as session:
        order = await self.add_order(
            session,
            status=OrderStatus.SCHEDULED,
            payment_status=PaymentStatus.AUTHORIZED,
            scheduled_delivery_date=today() + datetime.timedelta(days=10),
            payment_verified_at=db.utcnow() - datetime.timedelta(days=7),
        )
        self.gateway.add_intent(
            order.payment_intent_id, status="requires_capture"
        )

        report = await self._recovery(session).release_due_scheduled()
        self.assertEqual(report["captured_early"], [order.id])
        self.assertEmpty(report["released"])

        await session.refresh(order)
        self.assertEqual(order.status, OrderStatus.SCHEDULED)
        self.assertEqual(order.payment_status, PaymentStatus.SUCCEEDED)
        escalations = await db.get_audit_entries(
            session,
            order_id=order.id,
            action=AuditAction.AUTHORIZATION_EXPIRING,
        )
        self.assertEqual(
            [e.outcome for e in escalations], [AuditOutcome.ESCALATED]
        )

    self.run_async(run())

  def test_retry_order_syncs_submitted_order(self):
    async def run():
      async with self.session_factory() as session:
        order = await self.add_order(
            session, status=OrderStatus.PROCESSING, vendor_order_id="vreq_7"
        )
        self.vendor.orders["vreq_7"] = {
            "request_id": "vreq_7",
            "tracking": [{"tracking_number": "1Z1", "carrier": "UPS"}],
            "status_updates": [{
                "type": "shipment.shipped",
                "message": "Shipped",
                "_created_at": "2026-01-19T12:00:00",
            }],
        }
        result = await self._recovery(session).retry_order(order.id)
        self.assertEqual(result["outcome"], "synced")
        self.assertEqual(result["status_before"], OrderStatus.PROCESSING)
        self.assertEqual(result["status"], OrderStatus.SHIPPED)

    self.run_async(run())


if __name__ == "__main__":
  absltest.main()
