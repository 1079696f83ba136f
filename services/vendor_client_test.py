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

"""Tests for the vendor HTTP client's error mapping."""

import asyncio

from absl.testing import absltest
from exceptions import VendorRejectedError
from exceptions import VendorUnavailableError
import httpx
from services.vendor_client import VendorClient


def _client(status_code: int, **response) -> VendorClient:
  def handler(request: httpx.Request) -> httpx.Response:
    del request  # Unused.
    return httpx.Response(status_code, **response)

  return VendorClient(
      "vendor_key",
      "https://vendor.invalid/v1",
      transport=httpx.MockTransport(handler),
  )


class VendorClientTest(absltest.TestCase):

  def test_error_body_maps_to_rejection(self):
    client = _client(
        400, json={"code": "invalid_address", "message": "Bad zip code"}
    )
    with self.assertRaises(VendorRejectedError) as cm:
      asyncio.run(client.get_order("vreq_1"))
    self.assertEqual(cm.exception.vendor_code, "invalid_address")
    self.assertEqual(cm.exception.message, "Bad zip code")

  def test_non_object_error_body_is_still_a_rejection(self):
    client = _client(403, json=["forbidden"])
    with self.assertRaises(VendorRejectedError) as cm:
      asyncio.run(client.get_balance())
    self.assertIsNone(cm.exception.vendor_code)

  def test_non_object_success_body_is_transient(self):
    client = _client(200, json="ok")
    with self.assertRaises(VendorUnavailableError):
      asyncio.run(client.get_balance())

  def test_server_error_is_transient(self):
    client = _client(502, text="Bad gateway")
    with self.assertRaises(VendorUnavailableError):
      asyncio.run(client.place_order({"products": []}, idempotency_key="o1"))

  def test_balance_is_read_in_minor_units(self):
    client = _client(200, json={"balance": 123456})
    self.assertEqual(asyncio.run(client.get_balance()), 123456)


if __name__ == "__main__":
  absltest.main()
