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

"""FastAPI dependencies for the gifting order server.

This module contains dependency injection logic for FastAPI endpoints,
including:
- Runtime settings resolved from flags.
- Database session management for the order ledger.
- Clients for the payment processor and the fulfillment vendor.
- Service instantiation for every pipeline component.
- Admin secret verification for operator endpoints.
"""

from typing import AsyncGenerator, Iterable, Optional

import config
import db
from fastapi import BackgroundTasks
from fastapi import Depends
from fastapi import Header
from fastapi import HTTPException
from services.auto_gift_service import AutoGiftService
from services.fulfillment_service import FulfillmentDispatcher
from services.fulfillment_service import process_dispatch_in_background
from services.funding_service import FundingMonitor
from services.order_ledger import OrderLedger
from services.payment_gateway import PaymentGateway
from services.payment_intent_service import PaymentIntentService
from services.reconciliation_service import ReconciliationService
from services.recovery_service import RecoveryService
from services.vendor_client import VendorClient
from services.webhook_service import WebhookService
from sqlalchemy.ext.asyncio import AsyncSession


def get_settings() -> config.PipelineSettings:
  """Dependency provider for runtime settings."""
  if config.FLAGS.is_parsed():
    return config.settings_from_flags()
  return config.PipelineSettings()


async def get_session() -> AsyncGenerator[AsyncSession, None]:
  """Dependency provider for an order ledger DB session."""
  async with db.manager.session_factory() as session:
    yield session


def get_session_factory():
  """Dependency provider for the session factory used by background tasks."""
  return db.manager.session_factory


def get_payment_gateway(
    settings: config.PipelineSettings = Depends(get_settings),
) -> PaymentGateway:
  return PaymentGateway(
      settings.stripe_secret_key, settings.stripe_webhook_secret
  )


def get_vendor_client(
    settings: config.PipelineSettings = Depends(get_settings),
) -> VendorClient:
  return VendorClient(settings.vendor_api_key, settings.vendor_base_url)


async def verify_admin_secret(
    admin_secret: Optional[str] = Header(None, alias="Admin-Secret"),
    settings: config.PipelineSettings = Depends(get_settings),
) -> None:
  """Verifies the secret for administrative endpoints."""
  expected_secret = settings.admin_secret
  if not expected_secret:
    raise HTTPException(status_code=500, detail="Admin secret not configured")

  if not admin_secret or admin_secret != expected_secret:
    raise HTTPException(status_code=403, detail="Invalid Admin Secret")


def get_order_ledger(
    session: AsyncSession = Depends(get_session),
) -> OrderLedger:
  return OrderLedger(session)


def get_payment_intent_service(
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    settings: config.PipelineSettings = Depends(get_settings),
) -> PaymentIntentService:
  """Dependency provider for PaymentIntentService."""
  return PaymentIntentService(session, gateway, settings)


def get_webhook_service(
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    settings: config.PipelineSettings = Depends(get_settings),
) -> WebhookService:
  """Dependency provider for WebhookService."""
  return WebhookService(session, gateway, settings)


def get_reconciliation_service(
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    settings: config.PipelineSettings = Depends(get_settings),
) -> ReconciliationService:
  """Dependency provider for ReconciliationService."""
  return ReconciliationService(session, gateway, settings)


def get_dispatcher(
    session: AsyncSession = Depends(get_session),
    vendor_client: VendorClient = Depends(get_vendor_client),
    settings: config.PipelineSettings = Depends(get_settings),
) -> FulfillmentDispatcher:
  """Dependency provider for FulfillmentDispatcher."""
  return FulfillmentDispatcher(session, vendor_client, settings)


def get_funding_monitor(
    session: AsyncSession = Depends(get_session),
    vendor_client: VendorClient = Depends(get_vendor_client),
    settings: config.PipelineSettings = Depends(get_settings),
    dispatcher: FulfillmentDispatcher = Depends(get_dispatcher),
) -> FundingMonitor:
  """Dependency provider for FundingMonitor."""
  return FundingMonitor(session, vendor_client, settings, dispatcher)


def get_recovery_service(
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    vendor_client: VendorClient = Depends(get_vendor_client),
    settings: config.PipelineSettings = Depends(get_settings),
) -> RecoveryService:
  """Dependency provider for RecoveryService."""
  return RecoveryService(session, gateway, vendor_client, settings)


def get_auto_gift_service(
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    vendor_client: VendorClient = Depends(get_vendor_client),
    settings: config.PipelineSettings = Depends(get_settings),
) -> AutoGiftService:
  """Dependency provider for AutoGiftService."""
  return AutoGiftService(session, gateway, vendor_client, settings)


class DispatchTrigger:
  """Hands confirmed orders to the dispatcher after the response is sent."""

  def __init__(
      self,
      background_tasks: BackgroundTasks,
      session_factory,
      vendor_client: VendorClient,
      settings: config.PipelineSettings,
  ):
    self.background_tasks = background_tasks
    self.session_factory = session_factory
    self.vendor_client = vendor_client
    self.settings = settings

  def schedule(self, order_ids: Iterable[str]) -> None:
    for order_id in order_ids:
      self.background_tasks.add_task(
          process_dispatch_in_background,
          self.session_factory,
          self.vendor_client,
          self.settings,
          order_id,
      )


def get_dispatch_trigger(
    background_tasks: BackgroundTasks,
    session_factory=Depends(get_session_factory),
    vendor_client: VendorClient = Depends(get_vendor_client),
    settings: config.PipelineSettings = Depends(get_settings),
) -> DispatchTrigger:
  """Dependency provider for DispatchTrigger."""
  return DispatchTrigger(
      background_tasks, session_factory, vendor_client, settings
  )
