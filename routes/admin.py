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

"""Operator routes for the gifting order server.

Every route requires the `Admin-Secret` header. Each action is safe to repeat:
invoking it twice has the same effect as invoking it once.
"""

from typing import Any, Optional

import db
import dependencies
from enums import OrderStatus
from exceptions import InvalidRequestError
from exceptions import OrderNotModifiableError
from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Path
from fastapi import Query
from models import AdminActionRequest
from models import CancelRequest
from services.auto_gift_service import AutoGiftService
from services.fulfillment_service import DISPATCHABLE_STATUSES
from services.funding_service import FundingMonitor
from services.order_ledger import order_to_dict
from services.order_ledger import OrderLedger
from services.payment_gateway import PaymentGateway
from services.reconciliation_service import ReconciliationService
from services.recovery_service import RecoveryService
from services.vendor_client import VendorClient
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(
    prefix="/admin",
    dependencies=[Depends(dependencies.verify_admin_secret)],
)


def _alert_to_dict(alert: db.FundingAlert) -> dict[str, Any]:
  return {
      "id": alert.id,
      "alert_type": alert.alert_type,
      "vendor_balance": alert.vendor_balance,
      "pending_value": alert.pending_value,
      "recommended_topup": alert.recommended_topup,
      "orders_waiting": alert.orders_waiting,
      "created_at": alert.created_at.isoformat(),
      "resolved_at": (
          alert.resolved_at.isoformat() if alert.resolved_at else None
      ),
  }


def _audit_to_dict(entry: db.AuditLogEntry) -> dict[str, Any]:
  return {
      "id": entry.id,
      "order_id": entry.order_id,
      "action": entry.action,
      "outcome": entry.outcome,
      "error_message": entry.error_message,
      "details": entry.details,
      "created_at": entry.created_at.isoformat(),
  }


async def _status(
    session: AsyncSession, ledger: OrderLedger, order_id: Optional[str]
) -> dict[str, Any]:
  if order_id:
    order = await ledger.get_order(order_id)
    entries = await db.get_audit_entries(session, order_id=order_id)
    return {
        "order": order_to_dict(order),
        "audit_log": [_audit_to_dict(e) for e in entries],
    }
  pending_items = await db.list_pending_work_items(session)
  return {
      "orders_by_status": await db.count_orders_by_status(session),
      "open_alerts": [
          _alert_to_dict(a) for a in await db.get_open_alerts(session)
      ],
      "pending_dispatch_items": len(pending_items),
  }


@router.post(
    "/orders/actions",
    response_model=dict[str, Any],
    operation_id="admin_order_action",
)
async def order_action(
    request: AdminActionRequest = Body(...),
    session: AsyncSession = Depends(dependencies.get_session),
    ledger: OrderLedger = Depends(dependencies.get_order_ledger),
    recovery: RecoveryService = Depends(dependencies.get_recovery_service),
    funding: FundingMonitor = Depends(dependencies.get_funding_monitor),
) -> dict[str, Any]:
  """Run one operator action on the order pipeline."""
  if request.action == "get_status":
    return await _status(session, ledger, request.order_id)

  if request.action == "trigger_processing":
    if not request.order_id:
      raise InvalidRequestError("trigger_processing requires order_id")
    order = await ledger.get_order(request.order_id)
    if order.status not in DISPATCHABLE_STATUSES:
      raise OrderNotModifiableError(
          f"Order {order.id} is {order.status} and cannot be processed"
      )
    outcome = await recovery.recover_dispatch(order, bypass_backoff=True)
    return {"order_id": order.id, "outcome": outcome, "status": order.status}

  if request.action == "resolve_alert":
    if request.alert_id is None:
      raise InvalidRequestError("resolve_alert requires alert_id")
    alert = await funding.resolve_alert(request.alert_id)
    return {"alert": _alert_to_dict(alert)}

  if request.action == "update_order_date":
    if not request.order_id or not request.scheduled_delivery_date:
      raise InvalidRequestError(
          "update_order_date requires order_id and scheduled_delivery_date"
      )
    order = await ledger.update_scheduled_date(
        request.order_id, request.scheduled_delivery_date
    )
    return {"order": order_to_dict(order)}

  # check_missed_orders
  report = await recovery.release_due_scheduled()
  stuck = await db.list_orders(
      session, [OrderStatus.PAYMENT_CONFIRMED], without_vendor_order=True
  )
  report["queue"] = await recovery.dispatcher.drain_queue()
  report["awaiting_dispatch"] = [o.id for o in stuck]
  return report


@router.post(
    "/orders/fix-stuck",
    response_model=dict[str, Any],
    operation_id="admin_fix_stuck_orders",
)
async def fix_stuck_orders(
    recovery: RecoveryService = Depends(dependencies.get_recovery_service),
) -> dict[str, Any]:
  """Run the recovery sweep immediately, ignoring the retry backoff."""
  return await recovery.fix_all_stuck()


@router.post(
    "/orders/{id}/retry",
    response_model=dict[str, Any],
    operation_id="admin_retry_order",
)
async def retry_order(
    order_id: str = Path(..., alias="id"),
    recovery: RecoveryService = Depends(dependencies.get_recovery_service),
) -> dict[str, Any]:
  """Re-run the recovery step that fits one order's state."""
  return await recovery.retry_order(order_id)


@router.post(
    "/orders/{id}/cancel",
    response_model=dict[str, Any],
    operation_id="admin_cancel_order",
)
async def cancel_order(
    order_id: str = Path(..., alias="id"),
    request: Optional[CancelRequest] = Body(None),
    ledger: OrderLedger = Depends(dependencies.get_order_ledger),
    gateway: PaymentGateway = Depends(dependencies.get_payment_gateway),
    vendor_client: VendorClient = Depends(dependencies.get_vendor_client),
) -> dict[str, Any]:
  """Cancel an order, refunding or releasing its payment."""
  order = await ledger.cancel_order(
      order_id,
      gateway,
      vendor_client,
      reason=(request or CancelRequest()).reason,
  )
  return order_to_dict(order)


@router.post(
    "/funding/check",
    response_model=dict[str, Any],
    operation_id="admin_check_funding",
)
async def check_funding(
    funding: FundingMonitor = Depends(dependencies.get_funding_monitor),
) -> dict[str, Any]:
  """Run a funding check now."""
  return await funding.check_funding()


@router.post(
    "/recovery/sweep",
    response_model=dict[str, Any],
    operation_id="admin_recovery_sweep",
)
async def recovery_sweep(
    recovery: RecoveryService = Depends(dependencies.get_recovery_service),
) -> dict[str, Any]:
  """Run the scheduled recovery sweep."""
  return await recovery.sweep()


@router.post(
    "/reconciliation/run",
    response_model=dict[str, Any],
    operation_id="admin_run_reconciliation",
)
async def run_reconciliation(
    reconciler: ReconciliationService = Depends(
        dependencies.get_reconciliation_service
    ),
    dispatch: dependencies.DispatchTrigger = Depends(
        dependencies.get_dispatch_trigger
    ),
) -> dict[str, Any]:
  """Audit recent unconfirmed orders against the payment processor."""
  report = await reconciler.reconcile_recent_orders()
  dispatch.schedule(report["dispatch_order_ids"])
  return report


@router.post(
    "/auto-gifts/run",
    response_model=dict[str, Any],
    operation_id="admin_run_auto_gifts",
)
async def run_auto_gifts(
    auto_gifts: AutoGiftService = Depends(dependencies.get_auto_gift_service),
    dispatch: dependencies.DispatchTrigger = Depends(
        dependencies.get_dispatch_trigger
    ),
) -> dict[str, Any]:
  """Execute auto-gift rules that are due."""
  report = await auto_gifts.process_due_rules()
  dispatch.schedule(report["dispatch_order_ids"])
  return report


@router.post(
    "/auto-gifts/rules/{id}/cancel",
    response_model=dict[str, Any],
    operation_id="admin_cancel_auto_gift_rule",
)
async def cancel_auto_gift_rule(
    rule_id: str = Path(..., alias="id"),
    auto_gifts: AutoGiftService = Depends(dependencies.get_auto_gift_service),
) -> dict[str, Any]:
  """Deactivate a rule and unwind its open executions."""
  return await auto_gifts.cancel_rule(rule_id)


@router.post(
    "/auto-gifts/executions/{id}/cancel",
    response_model=dict[str, Any],
    operation_id="admin_cancel_auto_gift_execution",
)
async def cancel_auto_gift_execution(
    execution_id: str = Path(..., alias="id"),
    auto_gifts: AutoGiftService = Depends(dependencies.get_auto_gift_service),
) -> dict[str, Any]:
  """Cancel one auto-gift execution and its order."""
  execution = await auto_gifts.cancel_execution(execution_id)
  return {
      "id": execution.id,
      "rule_id": execution.rule_id,
      "status": execution.status,
      "order_id": execution.order_id,
  }


@router.get(
    "/audit-log",
    response_model=dict[str, Any],
    operation_id="admin_audit_log",
)
async def audit_log(
    order_id: Optional[str] = Query(None),
    session: AsyncSession = Depends(dependencies.get_session),
) -> dict[str, Any]:
  """List audit log entries, optionally for one order."""
  entries = await db.get_audit_entries(session, order_id=order_id)
  return {"entries": [_audit_to_dict(e) for e in entries]}
