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

"""Tests for payment processor webhook ingestion."""

import json

from absl.testing import absltest
import db
from enums import OrderStatus
from enums import PaymentStatus
from exceptions import WebhookSignatureError
import fakes
from models import CreatePaymentIntentRequest
from services.payment_intent_service import PaymentIntentService
from services.webhook_service import WebhookService
from sqlalchemy import func
from sqlalchemy import select


class WebhookServiceTest(fakes.LedgerTestCase):

  async def _create_pending_order(self, session):
    service = PaymentIntentService(session, self.gateway, self.settings)
    request = {
        "amount": 5000,
        "cart_items": [{"product_id": "B000TEST01", "unit_price": 5000}],
        "shipping_address": fakes.SHIPPING_ADDRESS,
    }
    return await service.create_payment_intent(
        CreatePaymentIntentRequest.model_validate(request)
    )

  async def _deliver(self, session, payload: bytes, signature=None):
    service = WebhookService(session, self.gateway, self.settings)
    return await service.handle(
        payload, signature or fakes.sign_payload(payload)
    )

  def test_rejects_unsigned_and_forged_events(self):
    async def run():
      async with self.session_factory() as session:
        payload = fakes.processor_event(
            "payment_intent.succeeded", {"id": "pi_x", "status": "succeeded"}
        )
        with self.assertRaises(WebhookSignatureError):
          await WebhookService(session, self.gateway, self.settings).handle(
              payload, None
          )
        forged = fakes.sign_payload(payload, secret="whsec_wrong")
        with self.assertRaises(WebhookSignatureError):
          await self._deliver(session, payload, forged)
        self.assertIsNone(
            await db.get_order_by_payment_intent(session, "pi_x")
        )

    self.run_async(run())

  def test_payment_succeeded_confirms_once(self):
    async def run():
      async with self.session_factory() as session:
        response = await self._create_pending_order(session)
        intent = self.gateway.set_intent_status(
            response.payment_intent_id, "succeeded"
        )
        payload = fakes.processor_event(
            "payment_intent.succeeded", intent, event_id="evt_1"
        )

        result = await self._deliver(session, payload)
        self.assertEqual(result.outcome, "confirmed")
        self.assertEqual(result.order_id, response.order_id)
        self.assertEqual(result.dispatch_order_ids, [response.order_id])

        replay = await self._deliver(session, payload)
        self.assertEqual(replay.outcome, "duplicate")
        self.assertEmpty(replay.dispatch_order_ids)

        order = await db.get_order(session, response.order_id)
        await session.refresh(order)
        self.assertEqual(order.status, OrderStatus.PAYMENT_CONFIRMED)
        self.assertEqual(order.payment_status, PaymentStatus.SUCCEEDED)
        self.assertLen(await db.list_pending_work_items(session), 1)
        processed = await db.get_processed_event(session, "evt_1")
        self.assertEqual(processed.outcome, "confirmed")

    self.run_async(run())

  def test_payment_succeeded_without_local_order_rebuilds_it(self):
    async def run():
      async with self.session_factory() as session:
        cart = json.dumps([{"p": "B000TEST01", "q": 2, "u": 2500}])
        intent = self.gateway.add_intent(
            "pi_orphan",
            amount=5000,
            status="succeeded",
            metadata={
                "order_id": "order-orphan",
                "order_number": "GFT-20260119-ABCDEF",
                "cart": cart,
                "ship_name": "Ada Lovelace",
                "ship_line1": "12 Analytical Way",
                "ship_city": "London",
                "ship_state": "CA",
                "ship_zip": "94016",
            },
        )
        result = await self._deliver(
            session, fakes.processor_event("payment_intent.succeeded", intent)
        )
        self.assertEqual(result.outcome, "confirmed")
        self.assertEqual(result.order_id, "order-orphan")

        order = await db.get_order(session, "order-orphan")
        self.assertEqual(order.total_amount, 5000)
        self.assertEqual(order.order_number, "GFT-20260119-ABCDEF")
        self.assertEqual(order.line_items[0]["quantity"], 2)
        self.assertEqual(order.shipping_address["city"], "London")
        self.assertIsNone(order.shipping_warning)

    self.run_async(run())

  def test_payment_failed_marks_order(self):
    async def run():
      async with self.session_factory() as session:
        response = await self._create_pending_order(session)
        intent = self.gateway.set_intent_status(
            response.payment_intent_id,
            "requires_payment_method",
            last_payment_error={
                "code": "card_declined",
                "message": "Your card was declined.",
            },
        )
        result = await self._deliver(
            session,
            fakes.processor_event("payment_intent.payment_failed", intent),
        )
        self.assertEqual(result.outcome, "failed")
        order = await db.get_order(session, response.order_id)
        self.assertEqual(order.status, OrderStatus.PAYMENT_FAILED)
        self.assertEqual(order.failure_reason, "Your card was declined.")

    self.run_async(run())

  def test_checkout_completed_confirms_session_order(self):
    async def run():
      async with self.session_factory() as session:
        checkout = await self.gateway.create_checkout_session(
            [{
                "price_data": {"currency": "usd", "unit_amount": 5000},
                "quantity": 1,
            }],
            success_url="https://shop.example.com/success",
            cancel_url="https://shop.example.com/cart",
            metadata={
                "order_id": "order-cs",
                "cart": json.dumps([{"p": "B000TEST01", "q": 1, "u": 5000}]),
                "ship_name": "Ada Lovelace",
                "ship_line1": "12 Analytical Way",
                "ship_city": "London",
                "ship_state": "CA",
                "ship_zip": "94016",
            },
        )
        paid = self.gateway.complete_checkout(checkout["id"])
        result = await self._deliver(
            session, fakes.processor_event("checkout.session.completed", paid)
        )
        self.assertEqual(result.outcome, "confirmed")
        self.assertEqual(result.dispatch_order_ids, ["order-cs"])
        order = await db.get_order(session, "order-cs")
        self.assertEqual(order.checkout_session_id, checkout["id"])
        self.assertEqual(order.payment_intent_id, paid["payment_intent"])

    self.run_async(run())

  def test_unknown_event_is_recorded_and_ignored(self):
    async def run():
      async with self.session_factory() as session:
        payload = fakes.processor_event(
            "customer.created", {"id": "cus_1"}, event_id="evt_unknown"
        )
        result = await self._deliver(session, payload)
        self.assertEqual(result.outcome, "ignored")
        processed = await db.get_processed_event(session, "evt_unknown")
        self.assertEqual(processed.outcome, "ignored")
        count = await session.scalar(select(func.count()).select_from(db.Order))
        self.assertEqual(count, 0)

    self.run_async(run())


if __name__ == "__main__":
  absltest.main()
