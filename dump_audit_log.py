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

"""Utility script to dump the recovery audit log from the database.

This script prints every audit log entry: timestamp, action, outcome and the
associated order. It can optionally filter by order and show the current
status of each order.

Usage:
  uv run dump_audit_log.py --database_path=... [--order_id=...] [--show_order]
"""

import asyncio
import json
import sys
from absl import app as absl_app
from absl import flags
from db import AuditLogEntry
from db import Order
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker

FLAGS = flags.FLAGS
flags.DEFINE_string("database_path", None, "Path to the order ledger DB")
flags.DEFINE_string("order_id", None, "Only show entries for this order")
flags.DEFINE_bool("show_order", False, "Show the current order status")


async def dump_audit_log():
  """Queries the database and prints audit log entries."""
  if not FLAGS.database_path:
    print("Error: --database_path is required.")
    sys.exit(1)

  db_url = f"sqlite+aiosqlite:///{FLAGS.database_path}"
  engine = create_async_engine(db_url, echo=False)
  session_factory = sessionmaker(
      engine, expire_on_commit=False, class_=AsyncSession
  )

  async with session_factory() as session:
    print("=== AUDIT LOG ===")
    query = select(AuditLogEntry).order_by(AuditLogEntry.id)
    if FLAGS.order_id:
      query = query.where(AuditLogEntry.order_id == FLAGS.order_id)
    result = await session.execute(query)
    entries = result.scalars().all()

    if not entries:
      print("No audit log entries found.")
      await engine.dispose()
      return

    for entry in entries:
      print(f"[{entry.created_at}] {entry.action} -> {entry.outcome}")
      if entry.order_id:
        print(f"  Order ID: {entry.order_id}")

        if FLAGS.show_order:
          order = await session.get(Order, entry.order_id)
          if order:
            print(f"  Order Status: {order.status}")

      if entry.error_message:
        print(f"  Error: {entry.error_message}")
      if entry.details:
        print(f"  Details: {json.dumps(entry.details, indent=2)}")
      print("-" * 40)

  await engine.dispose()


def main(argv):
  """Main entry point for the audit log dump script."""
  del argv
  asyncio.run(dump_audit_log())


if __name__ == "__main__":
  absl_app.run(main)
