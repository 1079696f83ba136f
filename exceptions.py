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

"""Custom exceptions for the gifting order pipeline."""

from typing import Optional


class GiftingError(Exception):
  """Base class for all pipeline exceptions."""

  def __init__(
      self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500
  ):
    self.message = message
    self.code = code
    self.status_code = status_code
    super().__init__(self.message)


class ResourceNotFoundError(GiftingError):
  """Raised when a requested resource is not found."""

  def __init__(self, message: str):
    super().__init__(message, code="RESOURCE_NOT_FOUND", status_code=404)


class InvalidRequestError(GiftingError):
  """Raised when the request is invalid (e.g. missing fields)."""

  def __init__(self, message: str):
    super().__init__(message, code="INVALID_REQUEST", status_code=400)


class WebhookSignatureError(GiftingError):
  """Raised when an inbound processor event fails authentication."""

  def __init__(self, message: str):
    super().__init__(message, code="INVALID_SIGNATURE", status_code=400)


class PaymentVerificationError(GiftingError):
  """Raised when the processor does not (yet) report a payment as paid."""

  def __init__(self, message: str):
    super().__init__(message, code="PAYMENT_NOT_VERIFIED", status_code=409)


class PaymentFailedError(GiftingError):
  """Raised when the processor declines a charge."""

  def __init__(
      self, message: str, code: str = "PAYMENT_FAILED", status_code: int = 402
  ):
    super().__init__(message, code=code, status_code=status_code)


class PaymentProcessorError(GiftingError):
  """Raised when the payment processor cannot be reached or errors."""

  def __init__(self, message: str):
    super().__init__(message, code="PROCESSOR_ERROR", status_code=502)


class InvalidTransitionError(GiftingError):
  """Raised when an order state change is not allowed."""

  def __init__(self, message: str):
    super().__init__(message, code="INVALID_TRANSITION", status_code=409)


class OrderNotModifiableError(GiftingError):
  """Raised when attempting to modify an order that no longer allows it."""

  def __init__(self, message: str):
    super().__init__(message, code="ORDER_NOT_MODIFIABLE", status_code=409)


class VendorUnavailableError(GiftingError):
  """Raised on transient fulfillment vendor failures (network, 5xx)."""

  def __init__(self, message: str):
    super().__init__(message, code="VENDOR_UNAVAILABLE", status_code=503)


class VendorRejectedError(GiftingError):
  """Raised when the fulfillment vendor refuses a request."""

  def __init__(self, message: str, vendor_code: Optional[str] = None):
    self.vendor_code = vendor_code
    super().__init__(message, code="VENDOR_REJECTED", status_code=422)
