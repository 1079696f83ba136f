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

"""In-process fakes and shared fixtures for the pipeline tests.

`FakePaymentGateway` keeps payment intents and checkout sessions in memory but
inherits webhook verification from `PaymentGateway`, so signed test events go
through the real signature check. `FakeVendorClient` keeps a prepaid balance
and counts submissions.
"""

import asyncio
import copy
import datetime
import hashlib
import hmac
import json
import os
import time
from typing import Any, Dict, List, Optional
import uuid

from absl.testing import absltest
import config
import db
from enums import FundingStatus
from enums import OrderStatus
from enums import PaymentStatus
from exceptions import PaymentProcessorError
from exceptions import VendorRejectedError
from services.payment_gateway import PaymentGateway
from services.vendor_client import VendorClient
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_SECRET = "test-admin-secret"

SHIPPING_ADDRESS = {
    "name": "Ada Lovelace",
    "address_line1": "12 Analytical Way",
    "city": "London",
    "state": "CA",
    "zip_code": "94016",
    "country": "US",
}

LINE_ITEMS = [
    {"product_id": "B000TEST01", "quantity": 1, "unit_price": 5000},
]


def sign_payload(
    payload: bytes,
    secret: str = WEBHOOK_SECRET,
    timestamp: Optional[int] = None,
) -> str:
  """Builds a processor signature header for a webhook body."""
  timestamp = timestamp or int(time.time())
  signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
  signature = hmac.new(
      secret.encode("utf-8"), signed, hashlib.sha256
  ).hexdigest()
  return f"t={timestamp},v1={signature}"


def processor_event(
    event_type: str, data_object: Dict[str, Any], event_id: Optional[str] = None
) -> bytes:
  """Serializes a processor event envelope."""
  return json.dumps({
      "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
      "object": "event",
      "type": event_type,
      "created": int(time.time()),
      "data": {"object": data_object},
  }).encode("utf-8")


def new_order(**overrides: Any) -> db.Order:
  """Returns an unsaved, paid, dispatchable order."""
  now = db.utcnow()
  fields = {
      "id": str(uuid.uuid4()),
      "order_number": f"GFT-TEST-{uuid.uuid4().hex[:6].upper()}",
      "payment_intent_id": f"pi_{uuid.uuid4().hex[:12]}",
      "total_amount": 5000,
      "currency": "usd",
      "status": OrderStatus.PAYMENT_CONFIRMED,
      "payment_status": PaymentStatus.SUCCEEDED,
      "funding_status": FundingStatus.UNFUNDED,
      "shipping_address": dict(SHIPPING_ADDRESS),
      "line_items": copy.deepcopy(LINE_ITEMS),
      "timeline_events": [],
      "created_at": now,
      "updated_at": now,
  }
  fields.update(overrides)
  return db.Order(**fields)


class FakePaymentGateway(PaymentGateway):
  """Payment processor double holding its objects in memory."""

  def __init__(self, webhook_secret: str = WEBHOOK_SECRET):
    super().__init__("sk_test_fake", webhook_secret)
    self.intents: Dict[str, Dict[str, Any]] = {}
    self.checkout_sessions: Dict[str, Dict[str, Any]] = {}
    self.customers: Dict[str, str] = {}
    self.refunds: List[str] = []
    self.cancelled: List[str] = []
    self.captured: List[str] = []
    self.created_intents: List[Dict[str, Any]] = []
    self.error: Optional[Exception] = None
    # Status given to intents confirmed off-session with automatic capture.
    self.confirm_status = "succeeded"
    self._idempotent: Dict[str, Dict[str, Any]] = {}

  def _check(self) -> None:
    if self.error is not None:
      raise self.error

  def add_intent(self, intent_id: str, **fields: Any) -> Dict[str, Any]:
    intent = {
        "id": intent_id,
        "object": "payment_intent",
        "amount": 5000,
        "currency": "usd",
        "status": "requires_payment_method",
        "metadata": {},
    }
    intent.update(fields)
    self.intents[intent_id] = intent
    return copy.deepcopy(intent)

  def set_intent_status(self, intent_id: str, status: str, **fields: Any):
    self.intents[intent_id]["status"] = status
    self.intents[intent_id].update(fields)
    return copy.deepcopy(self.intents[intent_id])

  def complete_checkout(self, session_id: str) -> Dict[str, Any]:
    """Marks a checkout session as paid and returns its snapshot."""
    checkout = self.checkout_sessions[session_id]
    capture = checkout.get("capture_method", "automatic")
    intent = self.add_intent(
        f"pi_{uuid.uuid4().hex[:12]}",
        amount=checkout["amount_total"],
        status="requires_capture" if capture == "manual" else "succeeded",
        metadata=dict(checkout["metadata"]),
    )
    checkout.update(
        status="complete", payment_status="paid", payment_intent=intent["id"]
    )
    return copy.deepcopy(checkout)

  async def find_or_create_customer(
      self, email: str, name: Optional[str] = None
  ) -> str:
    self._check()
    if email not in self.customers:
      self.customers[email] = f"cus_{uuid.uuid4().hex[:12]}"
    return self.customers[email]

  async def create_payment_intent(
      self,
      amount: int,
      currency: str,
      *,
      customer_id: Optional[str] = None,
      capture_method: str = "automatic",
      metadata: Optional[Dict[str, str]] = None,
      payment_method_id: Optional[str] = None,
      idempotency_key: Optional[str] = None,
  ) -> Dict[str, Any]:
    self._check()
    if idempotency_key in self._idempotent:
      return copy.deepcopy(self._idempotent[idempotency_key])
    if payment_method_id:
      status = (
          "requires_capture"
          if capture_method == "manual"
          else self.confirm_status
      )
    else:
      status = "requires_payment_method"
    intent_id = f"pi_{uuid.uuid4().hex[:12]}"
    intent = self.add_intent(
        intent_id,
        amount=amount,
        currency=currency,
        status=status,
        capture_method=capture_method,
        customer=customer_id,
        metadata=dict(metadata or {}),
        client_secret=f"{intent_id}_secret",
    )
    self.created_intents.append(intent)
    if idempotency_key:
      self._idempotent[idempotency_key] = intent
    return copy.deepcopy(intent)

  async def retrieve_payment_intent(
      self, payment_intent_id: str
  ) -> Dict[str, Any]:
    self._check()
    if payment_intent_id not in self.intents:
      raise PaymentProcessorError(f"No such payment_intent {payment_intent_id}")
    return copy.deepcopy(self.intents[payment_intent_id])

  async def capture_payment_intent(
      self, payment_intent_id: str
  ) -> Dict[str, Any]:
    self._check()
    intent = self.intents[payment_intent_id]
    if intent["status"] != "succeeded":
      if intent["status"] != "requires_capture":
        raise PaymentProcessorError(
            f"Intent {payment_intent_id} cannot be captured"
        )
      self.captured.append(payment_intent_id)
      intent["status"] = "succeeded"
    return copy.deepcopy(intent)

  async def cancel_payment_intent(
      self, payment_intent_id: str
  ) -> Dict[str, Any]:
    self._check()
    self.cancelled.append(payment_intent_id)
    intent = self.intents.setdefault(
        payment_intent_id, {"id": payment_intent_id}
    )
    intent["status"] = "canceled"
    return copy.deepcopy(intent)

  async def create_refund(
      self, payment_intent_id: str, idempotency_key: str
  ) -> Dict[str, Any]:
    self._check()
    self.refunds.append(payment_intent_id)
    return {
        "id": f"re_{uuid.uuid4().hex[:12]}",
        "payment_intent": payment_intent_id,
        "status": "succeeded",
    }

  async def create_checkout_session(
      self,
      line_items: List[Dict[str, Any]],
      *,
      success_url: str,
      cancel_url: str,
      metadata: Dict[str, str],
      customer_id: Optional[str] = None,
      capture_method: str = "automatic",
      idempotency_key: Optional[str] = None,
  ) -> Dict[str, Any]:
    self._check()
    session_id = f"cs_test_{uuid.uuid4().hex[:12]}"
    checkout = {
        "id": session_id,
        "object": "checkout.session",
        "url": f"https://checkout.example.com/{session_id}",
        "status": "open",
        "payment_status": "unpaid",
        "payment_intent": None,
        "amount_total": sum(
            i["price_data"]["unit_amount"] * i["quantity"] for i in line_items
        ),
        "currency": "usd",
        "metadata": dict(metadata),
        "customer": customer_id,
        "capture_method": capture_method,
        "success_url": success_url,
        "cancel_url": cancel_url,
    }
    self.checkout_sessions[session_id] = checkout
    return copy.deepcopy(checkout)

  async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
    self._check()
    if session_id not in self.checkout_sessions:
      raise PaymentProcessorError(f"No such checkout session {session_id}")
    return copy.deepcopy(self.checkout_sessions[session_id])


class FakeVendorClient(VendorClient):
  """Fulfillment vendor double with a prepaid balance."""

  def __init__(self, balance: int = 1000000):
    super().__init__("vendor_test_key", "https://vendor.invalid/v1")
    self.balance = balance
    self.placed: List[Dict[str, Any]] = []
    self.orders: Dict[str, Dict[str, Any]] = {}
    self.search_results: List[Dict[str, Any]] = []
    self.cancelled: List[str] = []
    # Raised by place_order / get_balance / search_products / cancel_order
    # when set.
    self.error: Optional[Exception] = None
    self.balance_error: Optional[Exception] = None
    self.search_error: Optional[Exception] = None
    self.cancel_error: Optional[Exception] = None
    self._by_key: Dict[str, str] = {}

  async def place_order(
      self, order_request: Dict[str, Any], idempotency_key: str
  ) -> str:
    self.placed.append(
        {"request": order_request, "idempotency_key": idempotency_key}
    )
    if self.error is not None:
      raise self.error
    if idempotency_key not in self._by_key:
      request_id = f"vreq_{uuid.uuid4().hex[:12]}"
      self._by_key[idempotency_key] = request_id
      self.orders[request_id] = {
          "_type": "error",
          "code": "request_processing",
          "request_id": request_id,
      }
    return self._by_key[idempotency_key]

  async def get_order(self, vendor_order_id: str) -> Dict[str, Any]:
    if vendor_order_id not in self.orders:
      raise VendorRejectedError(
          f"Unknown request {vendor_order_id}", vendor_code="invalid_request_id"
      )
    return copy.deepcopy(self.orders[vendor_order_id])

  async def cancel_order(self, vendor_order_id: str) -> Dict[str, Any]:
    if self.cancel_error is not None:
      raise self.cancel_error
    self.cancelled.append(vendor_order_id)
    return {"request_id": vendor_order_id, "status": "cancelled"}

  async def get_balance(self) -> int:
    if self.balance_error is not None:
      raise self.balance_error
    return self.balance

  async def search_products(
      self, query: str, max_price: Optional[int] = None, limit: int = 20
  ) -> List[Dict[str, Any]]:
    if self.search_error is not None:
      raise self.search_error
    return [
        dict(p)
        for p in self.search_results
        if max_price is None or p["price"] <= max_price
    ][:limit]


class LedgerTestCase(absltest.TestCase):
  """Base test case with a temporary ledger database and fresh fakes."""

  def setUp(self) -> None:
    super().setUp()
    database_path = os.path.join(
        self.create_tempdir().full_path, "test_ledger.db"
    )
    # NullPool: every asyncio.run() gets its own connections.
    self.engine = create_async_engine(
        f"sqlite+aiosqlite:///{database_path}", poolclass=NullPool
    )
    self.session_factory = sessionmaker(
        self.engine, expire_on_commit=False, class_=AsyncSession
    )

    async def init_schema() -> None:
      async with self.engine.begin() as conn:
        await conn.run_sync(db.Base.metadata.create_all)

    asyncio.run(init_schema())
    self.settings = config.PipelineSettings(
        admin_secret=ADMIN_SECRET,
        stripe_secret_key="sk_test_fake",
        stripe_webhook_secret=WEBHOOK_SECRET,
    )
    self.gateway = FakePaymentGateway()
    self.vendor = FakeVendorClient()

  def tearDown(self) -> None:
    asyncio.run(self.engine.dispose())
    super().tearDown()

  def run_async(self, coro):
    return asyncio.run(coro)

  async def add_order(self, session: AsyncSession, **overrides) -> db.Order:
    order = new_order(**overrides)
    session.add(order)
    await session.commit()
    return order

  @staticmethod
  def minutes_ago(minutes: int) -> datetime.datetime:
    return db.utcnow() - datetime.timedelta(minutes=minutes)
