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

"""Enumerations for the gifting order pipeline.

This module defines the states used throughout the server to describe an
order's lifecycle, its payment and funding state, funding alerts, audit log
entries, queued work items and auto-gift executions.
"""

import enum


class OrderStatus(str, enum.Enum):
  PENDING = "pending"
  PAYMENT_CONFIRMED = "payment_confirmed"
  PROCESSING = "processing"
  SCHEDULED = "scheduled"
  SHIPPED = "shipped"
  DELIVERED = "delivered"
  PAYMENT_FAILED = "payment_failed"
  PAYMENT_VERIFICATION_FAILED = "payment_verification_failed"
  AWAITING_FUNDS = "awaiting_funds"
  CANCELLED = "cancelled"
  RETURNED = "returned"
  FAILED = "failed"


TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.FAILED,
})


class PaymentStatus(str, enum.Enum):
  UNPAID = "unpaid"
  AUTHORIZED = "authorized"
  SUCCEEDED = "succeeded"
  FAILED = "failed"
  REFUNDED = "refunded"
  VOIDED = "voided"


class FundingStatus(str, enum.Enum):
  UNFUNDED = "unfunded"
  AWAITING_FUNDS = "awaiting_funds"
  FUNDED = "funded"


class AlertType(str, enum.Enum):
  LOW_BALANCE = "low_balance"
  CRITICAL_BALANCE = "critical_balance"
  PENDING_ORDERS_WAITING = "pending_orders_waiting"


class AuditAction(str, enum.Enum):
  PAYMENT_VERIFICATION_RECOVERY = "payment_verification_recovery"
  RECONCILIATION_CHECK = "reconciliation_check"
  RECONCILIATION_AUTO_CORRECT = "reconciliation_auto_correct"
  DISPATCH_RETRY = "dispatch_retry"
  VENDOR_SYNC = "vendor_sync"
  SCHEDULED_RELEASE = "scheduled_release"
  AUTHORIZATION_EXPIRING = "authorization_expiring"
  CANCELLATION = "cancellation"
  VENDOR_CANCEL = "vendor_cancel"


class AuditOutcome(str, enum.Enum):
  COMPLETED = "completed"
  FAILED = "failed"
  SKIPPED = "skipped"
  DISCREPANCY_FOUND = "discrepancy_found"
  ESCALATED = "escalated"


class WorkItemStatus(str, enum.Enum):
  PENDING = "pending"
  DONE = "done"


class ExecutionStatus(str, enum.Enum):
  PENDING = "pending"
  PROCESSING = "processing"
  COMPLETED = "completed"
  FAILED = "failed"
  CANCELLED = "cancelled"


class GiftDateType(str, enum.Enum):
  BIRTHDAY = "birthday"
  ANNIVERSARY = "anniversary"
  CUSTOM = "custom"


class AmountUnit(str, enum.Enum):
  MINOR = "minor"
  MAJOR = "major"
