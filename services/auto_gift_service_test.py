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

"""Tests for auto-gift rule execution."""

import datetime

from absl.testing import absltest
import db
from enums import ExecutionStatus
from enums import GiftDateType
from enums import OrderStatus
from enums import PaymentStatus
import fakes
from services.auto_gift_service import AutoGiftService
from services.auto_gift_service import next_occurrence
from services.order_ledger import today

_PRODUCTS = [
    {
        "product_id": "B0CANDLE01",
        "title": "Soy candle",
        "price": 3000,
        "stars": 4.6,
        "num_reviews": 812,
    },
    {
        "product_id": "B0BOOK0001",
        "title": "Field guide",
        "price": 4500,
        "stars": 4.9,
        "num_reviews": 240,
    },
    {
        "product_id": "B0WATCH001",
        "title": "Watch",
        "price": 12000,
        "stars": 5.0,
        "num_reviews": 3000,
    },
]


class NextOccurrenceTest(absltest.TestCase):

  def test_leap_day_falls_back_to_february_28(self):
    self.assertEqual(
        next_occurrence(
            GiftDateType.BIRTHDAY,
            datetime.date(1992, 2, 29),
            datetime.date(2027, 1, 1),
        ),
        datetime.date(2027, 2, 28),
    )

  def test_passed_anniversary_rolls_to_next_year(self):
    self.assertEqual(
        next_occurrence(
            GiftDateType.ANNIVERSARY,
            datetime.date(2015, 3, 1),
            datetime.date(2026, 6, 1),
        ),
        datetime.date(2027, 3, 1),
    )

  def test_custom_date_fires_once(self):
    event = datetime.date(2026, 5, 1)
    self.assertEqual(
        next_occurrence(GiftDateType.CUSTOM, event, datetime.date(2026, 4, 1)),
        event,
    )
    self.assertIsNone(
        next_occurrence(GiftDateType.CUSTOM, event, datetime.date(2026, 6, 1))
    )


class AutoGiftServiceTest(fakes.LedgerTestCase):

  def setUp(self):
    super().setUp()
    self.vendor.search_results = [dict(p) for p in _PRODUCTS]

  async def _add_rule(self, session, **overrides) -> db.AutoGiftRule:
    fields = {
        "id": "rule-1",
        "user_id": "user-1",
        "user_email": "ada@example.com",
        "recipient_name": "Charles",
        "date_type": GiftDateType.BIRTHDAY,
        "event_date": (today() + datetime.timedelta(days=3)).replace(
            year=1992
        ),
        "budget_limit": 5000,
        "gift_selection_criteria": {"categories": ["books"]},
        "shipping_address": dict(fakes.SHIPPING_ADDRESS),
        "payment_method_id": "pm_card_visa",
        "is_active": True,
        "created_at": db.utcnow(),
    }
    fields.update(overrides)
    rule = db.AutoGiftRule(**fields)
    session.add(rule)
    await session.commit()
    return rule

  def _service(self, session) -> AutoGiftService:
    return AutoGiftService(session, self.gateway, self.vendor, self.settings)

  def test_rule_executes_once_per_occurrence(self):
    async def run():
      async with self.session_factory() as session:
        await self._add_rule(session)
        service = self._service(session)

        report = await service.process_due_rules()
        self.assertLen(report["completed"], 1)
        self.assertEmpty(report["dispatch_order_ids"])
        execution = await session.get(
            db.AutoGiftExecution, report["completed"][0]
        )
        self.assertEqual(execution.status, ExecutionStatus.COMPLETED)
        self.assertEqual(execution.total_amount, 4500)
        self.assertEqual(
            [p["product_id"] for p in execution.selected_products],
            ["B0BOOK0001"],
        )

        order = await db.get_order(session, execution.order_id)
        self.assertEqual(order.status, OrderStatus.SCHEDULED)
        self.assertEqual(order.payment_status, PaymentStatus.AUTHORIZED)
        self.assertTrue(order.is_auto_gift)
        self.assertEqual(order.auto_gift_execution_id, execution.id)

        again = await service.process_due_rules()
        self.assertEqual(again["skipped"], 1)
        self.assertEmpty(again["completed"])
        self.assertLen(self.gateway.created_intents, 1)

    self.run_async(run())

  def test_rule_outside_window_is_not_run(self):
    async def run():
      async with self.session_factory() as session:
        await self._add_rule(
            session,
            event_date=(today() + datetime.timedelta(days=30)).replace(
                year=1992
            ),
        )
        report = await self._service(session).process_due_rules()
        self.assertEqual(report["evaluated"], 1)
        self.assertEmpty(report["completed"])
        self.assertEmpty(report["failed"])

    self.run_async(run())

  def test_nothing_within_budget_fails_execution(self):
    async def run():
      async with self.session_factory() as session:
        await self._add_rule(session, budget_limit=1000)
        report = await self._service(session).process_due_rules()
        self.assertLen(report["failed"], 1)
        execution = await session.get(
            db.AutoGiftExecution, report["failed"][0]
        )
        self.assertEqual(execution.error_message, "no_products_within_budget")
        self.assertEmpty(self.gateway.created_intents)

    self.run_async(run())

  def test_missing_payment_method_fails_execution(self):
    async def run():
      async with self.session_factory() as session:
        await self._add_rule(session, payment_method_id=None)
        report = await self._service(session).process_due_rules()
        execution = await session.get(
            db.AutoGiftExecution, report["failed"][0]
        )
        self.assertEqual(execution.error_message, "no_saved_payment_method")

    self.run_async(run())

  def test_cancel_rule_unwinds_undispatched_order(self):
    async def run():
      async with self.session_factory() as session:
        await self._add_rule(session)
        service = self._service(session)
        report = await service.process_due_rules()
        execution_id = report["completed"][0]

        result = await service.cancel_rule("rule-1")
        self.assertEqual(result["executions"], {execution_id: "cancelled"})

        execution = await session.get(db.AutoGiftExecution, execution_id)
        await session.refresh(execution)
        self.assertEqual(execution.status, ExecutionStatus.CANCELLED)
        order = await db.get_order(session, execution.order_id)
        await session.refresh(order)
        self.assertEqual(order.status, OrderStatus.CANCELLED)
        self.assertEqual(order.payment_status, PaymentStatus.VOIDED)
        self.assertEqual(self.gateway.cancelled, [order.payment_intent_id])

        rule = await session.get(db.AutoGiftRule, "rule-1")
        self.assertFalse(rule.is_active)
        self.assertEqual(
            (await service.process_due_rules())["evaluated"], 0
        )

    self.run_async(run())


if __name__ == "__main__":
  absltest.main()
