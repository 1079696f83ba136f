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

"""Tests for the scheduled job runner."""

from absl.testing import absltest
import db
from enums import OrderStatus
from enums import PaymentStatus
import fakes
import run_jobs


class RunJobsTest(fakes.LedgerTestCase):

  def _run(self, job: str):
    return self.run_async(
        run_jobs.run_job(
            job, self.session_factory, self.gateway, self.vendor, self.settings
        )
    )

  def test_drain_queue_dispatches_published_orders(self):
    async def seed():
      async with self.session_factory() as session:
        order = await self.add_order(session)
        await db.publish_work_item(session, order.id)
        await session.commit()

    self.run_async(seed())
    report = self._run("drain_queue")
    self.assertEqual(report["outcomes"], {"submitted": 1})
    self.assertLen(self.vendor.placed, 1)

  def test_reconciliation_submits_what_it_confirms(self):
    async def seed():
      async with self.session_factory() as session:
        return await self.add_order(
            session,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.UNPAID,
        )

    order = self.run_async(seed())
    self.gateway.add_intent(order.payment_intent_id, status="succeeded")
    report = self._run("reconciliation")
    self.assertEqual(report["corrected"], 1)
    self.assertEqual(report["queue"]["outcomes"], {"submitted": 1})

  def test_funding_check_reports_balance(self):
    self.vendor.balance = 123456
    report = self._run("funding_check")
    self.assertEqual(report["vendor_balance"], 123456)
    self.assertTrue(report["sufficient"])


if __name__ == "__main__":
  absltest.main()
