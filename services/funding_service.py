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

"""Funding monitor for the vendor's prepaid balance.

The balance is read, compared with the value of paid orders not yet
submitted, and either releases parked orders or raises a funding alert. The
gate is advisory: dispatch re-reads the balance per order and a transient
over-commit is corrected on the next check.
"""

import datetime
import logging
import math
from typing import Any, Dict, Optional

import config
import db
from enums import AlertType
from enums import FundingStatus
from enums import OrderStatus
from exceptions import ResourceNotFoundError
from exceptions import VendorRejectedError
from exceptions import VendorUnavailableError
import httpx
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


async def notify_ops(
    settings: config.PipelineSettings, event_type: str, payload: Dict[str, Any]
) -> None:
  """Posts an operator alert to the configured webhook, if any."""
  if not settings.ops_alert_webhook_url:
    return
  body = {"event_type": event_type, **payload}
  try:
    async with httpx.AsyncClient() as client:
      await client.post(settings.ops_alert_webhook_url, json=body, timeout=5.0)
  except Exception as e:  # pylint: disable=broad-exception-caught
    logger.error(
        "Failed to notify ops at %s: %s", settings.ops_alert_webhook_url, e
    )


def recommended_topup(
    balance: int, pending_value: int, settings: config.PipelineSettings
) -> int:
  """Returns the top-up that covers pending orders plus a safety margin."""
  shortfall = max(pending_value - balance, 0)
  target = math.ceil(pending_value * settings.funding_multiplier)
  return max(shortfall, target + settings.funding_buffer - balance)


class FundingMonitor:
  """Compares the vendor balance with paid, unsubmitted orders."""

  def __init__(
      self,
      session: AsyncSession,
      vendor_client,
      settings: config.PipelineSettings,
      dispatcher=None,
  ):
    self.session = session
    self.vendor_client = vendor_client
    self.settings = settings
    self.dispatcher = dispatcher

  def _alert_type(self, balance: int, awaiting: int) -> AlertType:
    # Blocked orders outrank a raw balance reading.
    if awaiting > 0:
      return AlertType.PENDING_ORDERS_WAITING
    if balance < self.settings.critical_balance_threshold:
      return AlertType.CRITICAL_BALANCE
    return AlertType.LOW_BALANCE

  async def _raise_alert(
      self,
      alert_type: AlertType,
      balance: int,
      pending_value: int,
      orders_waiting: int,
  ) -> Optional[db.FundingAlert]:
    cooldown_start = db.utcnow() - datetime.timedelta(
        hours=self.settings.alert_cooldown_hours
    )
    open_alerts = await db.get_open_alerts(self.session, alert_type)
    if open_alerts and open_alerts[0].created_at >= cooldown_start:
      logger.info(
          "Open %s alert %d is within cooldown; not raising another",
          alert_type.value,
          open_alerts[0].id,
      )
      return None

    alert = db.FundingAlert(
        alert_type=alert_type,
        vendor_balance=balance,
        pending_value=pending_value,
        recommended_topup=recommended_topup(
            balance, pending_value, self.settings
        ),
        orders_waiting=orders_waiting,
        created_at=db.utcnow(),
    )
    self.session.add(alert)
    await self.session.commit()
    logger.warning(
        "Funding alert %s: balance=%d pending=%d waiting=%d topup=%d",
        alert_type.value,
        balance,
        pending_value,
        orders_waiting,
        alert.recommended_topup,
    )
    await notify_ops(
        self.settings,
        "funding_alert",
        {
            "alert_id": alert.id,
            "alert_type": alert_type.value,
            "vendor_balance": balance,
            "pending_value": pending_value,
            "orders_waiting": orders_waiting,
            "recommended_topup": alert.recommended_topup,
        },
    )
    return alert

  async def resolve_alert(self, alert_id: int) -> db.FundingAlert:
    alert = await self.session.get(db.FundingAlert, alert_id)
    if alert is None:
      raise ResourceNotFoundError(f"Funding alert {alert_id} not found")
    if alert.resolved_at is None:
      alert.resolved_at = db.utcnow()
      await self.session.commit()
      logger.info("Funding alert %d resolved", alert_id)
    return alert

  async def _resolve_open_alerts(self) -> int:
    alerts = await db.get_open_alerts(self.session)
    now = db.utcnow()
    for alert in alerts:
      alert.resolved_at = now
    return len(alerts)

  async def check_funding(self) -> Dict[str, Any]:
    """Runs one funding check.

    If the balance covers every paid, unsubmitted order, parked orders are
    released to the dispatcher and open alerts are resolved. Otherwise a
    funding alert is raised, at most once per type per cooldown window.

    Raises:
      VendorUnavailableError: the balance could not be read.
      VendorRejectedError: the vendor refused the balance request.
    """
    balance = await self.vendor_client.get_balance()
    waiting = await db.list_orders(
        self.session,
        [OrderStatus.PAYMENT_CONFIRMED, OrderStatus.AWAITING_FUNDS],
        without_vendor_order=True,
    )
    pending_value = sum(o.total_amount for o in waiting)
    awaiting = [o for o in waiting if o.status == OrderStatus.AWAITING_FUNDS]
    report: Dict[str, Any] = {
        "vendor_balance": balance,
        "pending_value": pending_value,
        "orders_pending": len(waiting),
        "orders_awaiting_funds": len(awaiting),
        "sufficient": balance >= pending_value,
        "below_low_threshold": balance < self.settings.low_balance_threshold,
        "alert_id": None,
        "released": {},
    }

    if balance >= pending_value:
      for order in awaiting:
        order.funding_status = FundingStatus.FUNDED
      report["alerts_resolved"] = await self._resolve_open_alerts()
      await self.session.commit()
      if self.dispatcher is not None:
        for order_id in [o.id for o in awaiting]:
          try:
            outcome = await self.dispatcher.dispatch_order(order_id)
          except (VendorUnavailableError, VendorRejectedError) as e:
            logger.warning("Release of order %s deferred: %s", order_id, e)
            outcome = "retry"
          report["released"][order_id] = outcome
      logger.info(
          "Funding sufficient: balance=%d pending=%d released=%d",
          balance,
          pending_value,
          len(awaiting),
      )
      if report["below_low_threshold"]:
        logger.warning(
            "Vendor balance %d is below the low threshold %d",
            balance,
            self.settings.low_balance_threshold,
        )
      return report

    alert_type = self._alert_type(balance, len(awaiting))
    alert = await self._raise_alert(
        alert_type, balance, pending_value, len(awaiting)
    )
    report["alert_type"] = alert_type.value
    report["alert_id"] = alert.id if alert else None
    report["recommended_topup"] = recommended_topup(
        balance, pending_value, self.settings
    )
    return report
