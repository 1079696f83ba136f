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

"""HTTP client for the third-party order-execution vendor.

The vendor places real retail purchases on our behalf from a prepaid balance.
Failures are split into two classes the dispatcher treats differently:
transient ones (network, 5xx) leave the order untouched for a later retry,
rejections (4xx, or an error body) are final for that submission.
"""

import logging
from typing import Any, Dict, List, Optional

from exceptions import VendorRejectedError
from exceptions import VendorUnavailableError
import httpx

logger = logging.getLogger(__name__)

# Error codes meaning "top up the prepaid balance and resubmit".
INSUFFICIENT_FUNDS_CODES = frozenset(
    {"insufficient_zma_balance", "insufficient_funds", "max_price_exceeded"}
)


class VendorClient:
  """Async client for the vendor order, balance and product APIs."""

  def __init__(
      self,
      api_key: str,
      base_url: str,
      timeout: float = 30.0,
      transport: Optional[httpx.AsyncBaseTransport] = None,
  ):
    self._api_key = api_key
    self._base_url = base_url.rstrip("/")
    self._timeout = timeout
    self._transport = transport

  async def _request(
      self,
      method: str,
      path: str,
      *,
      json_body: Optional[Dict[str, Any]] = None,
      params: Optional[Dict[str, Any]] = None,
  ) -> Dict[str, Any]:
    url = f"{self._base_url}{path}"
    try:
      async with httpx.AsyncClient(
          timeout=self._timeout, transport=self._transport
      ) as client:
        response = await client.request(
            method,
            url,
            json=json_body,
            params=params,
            auth=(self._api_key, ""),
        )
    except httpx.HTTPError as e:
      logger.warning("Vendor request %s %s failed: %s", method, path, e)
      raise VendorUnavailableError(f"Vendor unreachable: {e}") from e

    if response.status_code >= 500:
      raise VendorUnavailableError(
          f"Vendor returned HTTP {response.status_code}"
      )
    try:
      body = response.json()
    except ValueError as e:
      raise VendorUnavailableError("Vendor returned a non-JSON body") from e
    if not isinstance(body, dict):
      if response.status_code < 400:
        raise VendorUnavailableError("Vendor returned an unexpected body")
      body = {"message": str(body)}
    if response.status_code >= 400:
      raise VendorRejectedError(
          body.get("message") or f"Vendor returned {response.status_code}",
          vendor_code=body.get("code"),
      )
    return body

  async def place_order(
      self, order_request: Dict[str, Any], idempotency_key: str
  ) -> str:
    """Submits an order and returns the vendor's request ID.

    The idempotency key makes a replayed submission return the original
    request instead of purchasing twice.
    """
    body = dict(order_request)
    body["idempotency_key"] = idempotency_key
    result = await self._request("POST", "/orders", json_body=body)
    if result.get("_type") == "error":
      raise VendorRejectedError(
          result.get("message") or "Vendor rejected the order",
          vendor_code=result.get("code"),
      )
    request_id = result.get("request_id")
    if not request_id:
      raise VendorUnavailableError("Vendor response missing request_id")
    return request_id

  async def get_order(self, vendor_order_id: str) -> Dict[str, Any]:
    """Fetches the raw status document for a submitted order."""
    return await self._request("GET", f"/orders/{vendor_order_id}")

  async def cancel_order(self, vendor_order_id: str) -> Dict[str, Any]:
    return await self._request("POST", f"/orders/{vendor_order_id}/cancel")

  async def get_balance(self) -> int:
    """Returns the prepaid balance in minor units."""
    result = await self._request("GET", "/addax/balance")
    return int(result.get("balance", 0))

  async def search_products(
      self, query: str, max_price: Optional[int] = None, limit: int = 20
  ) -> List[Dict[str, Any]]:
    """Searches the vendor catalog.

    Returns:
      Normalised product dicts with `product_id`, `title`, `price` (minor
      units), `stars`, `num_reviews` and `image`.
    """
    params: Dict[str, Any] = {"query": query, "retailer": "amazon"}
    result = await self._request("GET", "/search", params=params)
    products = []
    for raw in result.get("results") or []:
      price = raw.get("price")
      if price is None:
        continue
      if max_price is not None and price > max_price:
        continue
      products.append({
          "product_id": raw.get("product_id"),
          "title": raw.get("title"),
          "price": int(price),
          "stars": float(raw.get("stars") or 0),
          "num_reviews": int(raw.get("num_reviews") or 0),
          "image": raw.get("image"),
      })
      if len(products) >= limit:
        break
    return products
