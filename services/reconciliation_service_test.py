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

"""Tests for reconciliation against the payment processor."""

import asyncio
import json

from absl.testing import absltest
import db
from enums import AuditAction
from enums import AuditOutcome
from enums import OrderStatus
from enums import PaymentStatus
from exceptions import PaymentVerificationError
import fakes
from models import CreateCheckoutSessionRequest
from services.payment_intent_service import PaymentIntentService
from services.reconciliation_service import ReconciliationService
from services.webhook_service import WebhookService
from sqlalchemy import func
from sqlalchemy import select

_CHECKOUT_METADATA = {
    "order_id": "order-lost",
    "order_number": "GFT-20260119-0A0B0C",
    "cart": json.dumps([{"p": "B000TEST01", "q": 1, "u": 5000}]),
    "ship_name": "Ada Lovelace",
    "ship_line1": "12 Analytical Way",
    "ship_city": "London",
    "ship_state": "CA",
    "ship_zip": "94016",
}


class ReconciliationServiceTest(fakes.LedgerTestCase):

  async def _count_orders(self, session) -> int:
    return await session.scalar(select(func.count()).select_from(db.Order))

  async def _processor_only_session(self, metadata=None):
    return await self.gateway.create_checkout_session(
        [{
            "price_data": {"currency": "usd", "unit_amount": 5000},
            "quantity": 1,
        }],
        success_url="https://shop.example.com/success",
        cancel_url="https://shop.example.com/cart",
        metadata=dict(metadata or _CHECKOUT_METADATA),
    )

  def test_paid_session_without_order_is_rebuilt(self):
    async def run():
      async with self.session_factory() as session:
        checkout = await self._processor_only_session()
        self.gateway.complete_checkout(checkout["id"])

        reconciler = ReconciliationService(
            session, self.gateway, self.settings
        )
        outcome = await reconciler.reconcile_checkout_session(checkout["id"])
        self.assertTrue(outcome.created)
        self.assertTrue(outcome.dispatch_queued)
        self.assertEqual(outcome.order.id, "order-lost")
        self.assertEqual(outcome.order.status, OrderStatus.PAYMENT_CONFIRMED)
        self.assertEqual(
            outcome.order.line_items[0]["product_id"], "B000TEST01"
        )

        again = await reconciler.reconcile_checkout_session(checkout["id"])
        self.assertFalse(again.created)
        self.assertFalse(again.dispatch_queued)
        self.assertEqual(await self._count_orders(session), 1)

    self.run_async(run())

  def test_session_without_metadata_is_flagged_not_invented(self):
    async def run():
      async with self.session_factory() as session:
        checkout = await self._processor_only_session(
            {"order_id": "order-bare"}
        )
        self.gateway.complete_checkout(checkout["id"])
        outcome = await ReconciliationService(
            session, self.gateway, self.settings
        ).reconcile_checkout_session(checkout["id"])
        self.assertEqual(outcome.order.line_items, [])
        self.assertIn("line_items", outcome.order.shipping_warning)

    self.run_async(run())

  def test_unpaid_session_creates_nothing(self):
    async def run():
      async with self.session_factory() as session:
        checkout = await self._processor_only_session()
        with self.assertRaises(PaymentVerificationError):
          await ReconciliationService(
              session, self.gateway, self.settings
          ).reconcile_checkout_session(checkout["id"])
        self.assertEqual(await self._count_orders(session), 0)

    self.run_async(run())

  def test_redirect_then_delayed_webhook_yields_one_order(self):
    async def run():
      async with self.session_factory() as session:
        payments = PaymentIntentService(session, self.gateway, self.settings)
        created = await payments.create_checkout_session(
            CreateCheckoutSessionRequest.model_validate({
                "amount": 5000,
                "cart_items": [
                    {"product_id": "B000TEST01", "unit_price": 5000}
                ],
                "shipping_address": fakes.SHIPPING_ADDRESS,
                "success_url": "https://shop.example.com/success",
                "cancel_url": "https://shop.example.com/cart",
            })
        )
        paid = self.gateway.complete_checkout(created.session_id)

        outcome = await ReconciliationService(
            session, self.gateway, self.settings
        ).reconcile_checkout_session(created.session_id)
        self.assertFalse(outcome.created)
        self.assertTrue(outcome.dispatch_queued)

        payload = fakes.processor_event("checkout.session.completed", paid)
        result = await WebhookService(
            session, self.gateway, self.settings
        ).handle(payload, fakes.sign_payload(payload))
        self.assertEqual(result.outcome, "no_change")
        self.assertEqual(result.order_id, created.order_id)
        self.assertEmpty(result.dispatch_order_ids)

        self.assertEqual(await self._count_orders(session), 1)
        self.assertLen(await db.list_pending_work_items(session), 1)

    self.run_async(run())

  def test_concurrent_redirect_and_webhook_yield_one_order(self):
    async def run():
      checkout = await self._processor_only_session()
      paid = self.gateway.complete_checkout(checkout["id"])
      payload = fakes.processor_event("checkout.session.completed", paid)

      async def redirect():
        async with self.session_factory() as session:
          return await ReconciliationService(
              session, self.gateway, self.settings
          ).reconcile_checkout_session(checkout["id"])

      async def webhook():
        async with self.session_factory() as session:
          return await WebhookService(
              session, self.gateway, self.settings
          ).handle(payload, fakes.sign_payload(payload))

      outcome, result = await asyncio.gather(redirect(), webhook())
      self.assertEqual(outcome.order.id, "order-lost")
      self.assertEqual(result.order_id, "order-lost")
      # Exactly one side wins the confirmation and queues the dispatch.
      self.assertNotEqual(
          outcome.dispatch_queued, bool(result.dispatch_order_ids)
      )

      async with self.session_factory() as session:
        self.assertEqual(await self._count_orders(session), 1)
        items = await session.scalar(
            select(func.count()).select_from(db.DispatchWorkItem)
        )
        self.assertEqual(items, 1)
        order = await db.get_order(session, "order-lost")
        self.assertEqual(order.status, OrderStatus.PAYMENT_CONFIRMED)

    self.run_async(run())

  def test_batch_corrects_paid_and_flags_mismatched_orders(self):
    async def run():
      async with self.session_factory() as session:
        paid = await self.add_order(
            session,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.UNPAID,
        )
        self.gateway.add_intent(
            paid.payment_intent_id, amount=5000, status="succeeded"
        )
        mismatched = await self.add_order(
            session,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.UNPAID,
        )
        self.gateway.add_intent(
            mismatched.payment_intent_id, amount=4000, status="succeeded"
        )
        unreachable = await self.add_order(
            session,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.UNPAID,
        )

        report = await ReconciliationService(
            session, self.gateway, self.settings
        ).reconcile_recent_orders()
        self.assertEqual(report["checked"], 3)
        self.assertEqual(report["corrected"], 1)
        self.assertEqual(report["discrepancies"], 1)
        self.assertEqual(report["errors"], 1)
        self.assertEqual(report["dispatch_order_ids"], [paid.id])

        await session.refresh(paid)
        await session.refresh(mismatched)
        self.assertEqual(paid.status, OrderStatus.PAYMENT_CONFIRMED)
        self.assertEqual(
            mismatched.status, OrderStatus.PAYMENT_VERIFICATION_FAILED
        )
        discrepancies = await db.get_audit_entries(
            session,
            order_id=mismatched.id,
            outcome=AuditOutcome.DISCREPANCY_FOUND,
        )
        self.assertLen(discrepancies, 1)
        corrections = await db.get_audit_entries(
            session, action=AuditAction.RECONCILIATION_AUTO_CORRECT
        )
        self.assertEqual([e.order_id for e in corrections], [paid.id])
        failures = await db.get_audit_entries(
            session, order_id=unreachable.id, outcome=AuditOutcome.FAILED
        )
        self.assertLen(failures, 1)

    self.run_async(run())


if __name__ == "__main__":
  absltest.main()
