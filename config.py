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

"""Shared configuration and startup logic for the gifting order server."""

import contextlib
from typing import Optional
import uuid

from absl import flags
import db
from fastapi import FastAPI
from pydantic import BaseModel
from pydantic import ConfigDict

FLAGS = flags.FLAGS

SERVER_VERSION = "2026-01-11"


# Define flags only if they haven't been defined yet (to avoid duplicates
# during tests or re-imports)
try:
  flags.DEFINE_string("database_path", None, "Path to the order ledger DB")
  flags.DEFINE_integer("port", None, "Port to run the server on")
  flags.DEFINE_string("stripe_secret_key", "", "Payment processor API key")
  flags.DEFINE_string(
      "stripe_webhook_secret", "", "Shared secret for processor webhooks"
  )
  flags.DEFINE_string("vendor_api_key", "", "Fulfillment vendor API key")
  flags.DEFINE_string(
      "vendor_base_url",
      "https://api.zinc.io/v1",
      "Base URL of the fulfillment vendor API",
  )
  flags.DEFINE_string(
      "public_base_url",
      "http://localhost:8182",
      "Externally reachable URL of this server (for vendor callbacks)",
  )
  flags.DEFINE_string(
      "admin_secret",
      str(uuid.uuid4()),
      "Secret key for administrative endpoints",
  )
  flags.DEFINE_string(
      "ops_alert_webhook_url", None, "Optional URL receiving operator alerts"
  )
  flags.DEFINE_integer(
      "low_balance_threshold", 100000, "Low vendor balance (minor units)"
  )
  flags.DEFINE_integer(
      "critical_balance_threshold",
      50000,
      "Critical vendor balance (minor units)",
  )
  flags.DEFINE_integer(
      "funding_buffer", 10000, "Fixed top-up buffer (minor units)"
  )
  flags.DEFINE_float(
      "funding_multiplier", 1.3, "Multiplier applied to pending order value"
  )
  flags.DEFINE_integer(
      "alert_cooldown_hours", 24, "Minimum hours between alerts of a type"
  )
  flags.DEFINE_integer(
      "dispatch_sla_minutes", 10, "Max minutes a paid order may wait"
  )
  flags.DEFINE_integer(
      "pending_payment_sla_minutes",
      30,
      "Minutes before a pending order is re-verified",
  )
  flags.DEFINE_integer(
      "vendor_silence_sla_minutes",
      60,
      "Minutes without vendor updates before polling",
  )
  flags.DEFINE_integer(
      "recovery_backoff_minutes", 15, "Backoff after a failed recovery"
  )
  flags.DEFINE_integer(
      "max_dispatch_attempts", 3, "Failed dispatches before escalation"
  )
  flags.DEFINE_integer(
      "auto_gift_days_ahead", 7, "Look-ahead window for auto-gift events"
  )
except flags.DuplicateFlagError:
  pass


class PipelineSettings(BaseModel):
  """Resolved runtime settings handed to services."""

  model_config = ConfigDict(frozen=True)

  admin_secret: str = ""
  stripe_secret_key: str = ""
  stripe_webhook_secret: str = ""
  webhook_tolerance_seconds: int = 300
  vendor_api_key: str = ""
  vendor_base_url: str = "https://api.zinc.io/v1"
  public_base_url: str = "http://localhost:8182"
  ops_alert_webhook_url: Optional[str] = None
  low_balance_threshold: int = 100000
  critical_balance_threshold: int = 50000
  funding_buffer: int = 10000
  funding_multiplier: float = 1.3
  alert_cooldown_hours: int = 24
  dispatch_sla_minutes: int = 10
  pending_payment_sla_minutes: int = 30
  vendor_silence_sla_minutes: int = 60
  recovery_backoff_minutes: int = 15
  max_dispatch_attempts: int = 3
  recovery_lookback_hours: int = 24
  authorization_max_age_days: int = 6
  auto_gift_days_ahead: int = 7
  default_currency: str = "usd"


def settings_from_flags() -> PipelineSettings:
  """Builds the settings object from parsed command line flags."""
  return PipelineSettings(
      admin_secret=FLAGS.admin_secret,
      stripe_secret_key=FLAGS.stripe_secret_key,
      stripe_webhook_secret=FLAGS.stripe_webhook_secret,
      vendor_api_key=FLAGS.vendor_api_key,
      vendor_base_url=FLAGS.vendor_base_url,
      public_base_url=FLAGS.public_base_url,
      ops_alert_webhook_url=FLAGS.ops_alert_webhook_url,
      low_balance_threshold=FLAGS.low_balance_threshold,
      critical_balance_threshold=FLAGS.critical_balance_threshold,
      funding_buffer=FLAGS.funding_buffer,
      funding_multiplier=FLAGS.funding_multiplier,
      alert_cooldown_hours=FLAGS.alert_cooldown_hours,
      dispatch_sla_minutes=FLAGS.dispatch_sla_minutes,
      pending_payment_sla_minutes=FLAGS.pending_payment_sla_minutes,
      vendor_silence_sla_minutes=FLAGS.vendor_silence_sla_minutes,
      recovery_backoff_minutes=FLAGS.recovery_backoff_minutes,
      max_dispatch_attempts=FLAGS.max_dispatch_attempts,
      auto_gift_days_ahead=FLAGS.auto_gift_days_ahead,
  )


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
  """Shared lifespan manager for initializing the ledger database."""
  del app  # Unused.
  # In tests the flag is not parsed; sessions come from dependency overrides.
  if FLAGS.is_parsed() and FLAGS.database_path:
    await db.manager.init_db(FLAGS.database_path)
  yield
  await db.manager.close()
