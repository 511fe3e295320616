"""
Payment gateway clients for booking payments and wallet deposits.

Uses PlaceholderPaymentGateway when no PAYMENT_GATEWAY_URL is configured,
otherwise HttpPaymentGateway.
"""
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class ChargeResult:
    success: bool
    transaction_reference: Optional[str] = None
    error_code: Optional[str] = None


class PaymentGateway:
    """Interface: charge(amount, method, metadata) -> ChargeResult"""

    def charge(self, amount: Decimal, method: str, metadata: Optional[Dict[str, Any]] = None) -> ChargeResult:
        raise NotImplementedError


class PlaceholderPaymentGateway(PaymentGateway):
    """Logs the charge and reports success"""

    def charge(self, amount: Decimal, method: str, metadata: Optional[Dict[str, Any]] = None) -> ChargeResult:
        reference = f"placeholder_{uuid.uuid4().hex[:16]}"
        logger.info(f"[PLACEHOLDER] Would charge {amount} via {method} ({metadata or {}}) -> {reference}")
        return ChargeResult(success=True, transaction_reference=reference)


class HttpPaymentGateway(PaymentGateway):
    """
    Hosted gateway client.

    POSTs to `<base_url>/v2/ExecutePayment` with a bearer API key and reads
    `IsSuccess` / `Data.InvoiceId` from the JSON body. Transport errors and
    non-2xx responses are failed charges, never exceptions.
    """
    EXECUTE_PATH = "/v2/ExecutePayment"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        currency: str = "SAR",
        timeout: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.currency = currency
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    def charge(self, amount: Decimal, method: str, metadata: Optional[Dict[str, Any]] = None) -> ChargeResult:
        metadata = metadata or {}
        payload = {
            "InvoiceValue": str(amount),
            "DisplayCurrencyIso": self.currency,
            "PaymentMethod": method,
            "CustomerReference": metadata.get("reference"),
            "UserDefinedField": metadata,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            with self._client() as client:
                response = client.post(self.EXECUTE_PATH, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Payment gateway unreachable: {e}")
            return ChargeResult(success=False, error_code="gateway_unavailable")

        if response.status_code >= 400:
            logger.error(f"Payment gateway request failed: {response.status_code} - {response.text}")
            return ChargeResult(success=False, error_code=f"http_{response.status_code}")

        try:
            body = response.json()
        except ValueError:
            logger.error(f"Payment gateway returned non-JSON body: {response.text}")
            return ChargeResult(success=False, error_code="invalid_response")

        if not body.get("IsSuccess"):
            error_code = body.get("ErrorCode") or "declined"
            logger.warning(f"Payment declined: {body.get('Message')} ({error_code})")
            return ChargeResult(success=False, error_code=error_code)

        data = body.get("Data") or {}
        reference = data.get("InvoiceId") or data.get("PaymentId")
        logger.info(f"Charged {amount} {self.currency} via {method}, ref {reference}")
        return ChargeResult(success=True, transaction_reference=str(reference) if reference else None)


def get_payment_gateway() -> PaymentGateway:
    """FastAPI dependency returning the configured gateway"""
    if settings.PAYMENT_GATEWAY_URL:
        return HttpPaymentGateway(
            base_url=settings.PAYMENT_GATEWAY_URL,
            api_key=settings.PAYMENT_GATEWAY_API_KEY,
            currency=settings.CURRENCY,
            timeout=settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS,
        )
    return PlaceholderPaymentGateway()
