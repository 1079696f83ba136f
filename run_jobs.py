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

"""Runs one scheduled pipeline job against the order ledger.

Meant to be invoked from cron or a scheduler. Every job is safe to run
concurrently with the server and with itself; the report is printed as JSON.

Usage:
  uv run run_jobs.py --database_path=... --job=recovery_sweep \
      --stripe_secret_key=... --vendor_api_key=...
"""

import asyncio
import json
import logging
import sys
from typing import Any, Dict

from absl import app as absl_app
from absl import flags
import config
import db
from services.auto_gift_service import AutoGiftService
from services.fulfillment_service import FulfillmentDispatcher
from services.funding_service import FundingMonitor
from services.payment_gateway import PaymentGateway
from services.reconciliation_service import ReconciliationService
from services.recovery_service import RecoveryService
from services.vendor_client import VendorClient

FLAGS = flags.FLAGS
flags.DEFINE_enum(
    "job",
    None,
    [
        "funding_check",
        "recovery_sweep",
        "reconciliation",
        "vendor_sync",
        "auto_gifts",
        "drain_queue",
    ],
    "Job to run",
)

logger = logging.getLogger(__name__)


async def run_job(
    job: str,
    session_factory,
    gateway: PaymentGateway,
    vendor_client: VendorClient,
    settings: config.PipelineSettings,
) -> Dict[str, Any]:
  """Runs a named job in a fresh session and returns its report."""
  async with session_factory() as session:
    dispatcher = FulfillmentDispatcher(session, vendor_client, settings)
    if job == "funding_check":
      monitor = FundingMonitor(session, vendor_client, settings, dispatcher)
      return await monitor.check_funding()
    if job == "recovery_sweep":
      recovery = RecoveryService(session, gateway, vendor_client, settings)
      return await recovery.sweep()
    if job == "reconciliation":
      reconciler = ReconciliationService(session, gateway, settings)
      report = await reconciler.reconcile_recent_orders()
      # No background tasks here; confirmed orders are submitted inline.
      report["queue"] = await dispatcher.drain_queue()
      return report
    if job == "vendor_sync":
      return await dispatcher.sync_vendor_orders()
    if job == "auto_gifts":
      auto_gifts = AutoGiftService(session, gateway, vendor_client, settings)
      report = await auto_gifts.process_due_rules()
      report["queue"] = await dispatcher.drain_queue()
      return report
    return await dispatcher.drain_queue()


async def _main() -> Dict[str, Any]:
  settings = config.settings_from_flags()
  await db.manager.init_db(FLAGS.database_path)
  try:
    return await run_job(
        FLAGS.job,
        db.manager.session_factory,
        PaymentGateway(
            settings.stripe_secret_key, settings.stripe_webhook_secret
        ),
        VendorClient(settings.vendor_api_key, settings.vendor_base_url),
        settings,
    )
  finally:
    await db.manager.close()


def main(argv):
  """Main entry point for the job runner."""
  del argv
  if not FLAGS.database_path or not FLAGS.job:
    print("Error: --database_path and --job are required.")
    sys.exit(1)

  logging.basicConfig(level=logging.INFO)
  report = asyncio.run(_main())
  logger.info("Job %s finished", FLAGS.job)
  print(json.dumps(report, indent=2, default=str))


if __name__ == "__main__":
  absl_app.run(main)
