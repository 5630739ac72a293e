"""
Midtrans Payment Gateway client.

Only the operations the engine needs:
- refund a settled transaction (idempotent on ``refund_key``)
- fetch a transaction's current status
- verify notification signatures

API Docs: https://docs.midtrans.com/reference/refund-transaction
"""
import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import httpx

from backoffice.config import settings
from backoffice.core.exceptions import PaymentGatewayError


logger = logging.getLogger(__name__)


@dataclass
class RefundResult:
    """Outcome of a refund request."""
    success: bool
    refund_id: Optional[str] = None
    error: Optional[str] = None
    already_applied: bool = False


class PaymentGateway(Protocol):
    async def refund(
        self,
        payment_reference: str,
        amount: Decimal,
        refund_key: str,
        reason: str = "",
    ) -> RefundResult:
        ...

    async def get_transaction_status(self, reference: str) -> Dict[str, Any]:
        ...


def find_refund(status: Dict[str, Any], refund_key: str) -> Optional[Dict[str, Any]]:
    """Return the refund entry with the given key from a status response."""
    for refund in status.get("refunds") or []:
        if refund.get("refund_key") == refund_key:
            return refund
    return None


def compute_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    """Midtrans notification signature: SHA512(order_id + status_code + gross_amount + server_key)."""
    raw = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(raw.encode("utf-8")).hexdigest()


def verify_signature(
    order_id: str,
    status_code: str,
    gross_amount: str,
    signature_key: Optional[str],
    server_key: Optional[str] = None,
) -> bool:
    server_key = server_key if server_key is not None else settings.MIDTRANS_SERVER_KEY
    if not signature_key or not server_key:
        return False
    expected = compute_signature(order_id, status_code, gross_amount, server_key)
    return hmac.compare_digest(expected, signature_key)


class MidtransGateway:
    """Midtrans Core API over httpx."""

    def __init__(
        self,
        server_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.server_key = server_key if server_key is not None else settings.MIDTRANS_SERVER_KEY
        self.base_url = (base_url or settings.midtrans_base_url).rstrip("/")
        self.timeout = timeout or settings.MIDTRANS_TIMEOUT_SECONDS
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        token = base64.b64encode(f"{self.server_key}:".encode()).decode()
        return {
            "Authorization": f"Basic {token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, endpoint: str, data: Optional[Dict] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.request(method, url, headers=self._headers(), json=data)

        if response.status_code >= 500:
            logger.error(f"Midtrans API error: {response.status_code} - {response.text}")
            raise PaymentGatewayError(
                f"Payment gateway error ({response.status_code})",
                details={"status_code": response.status_code},
            )
        return response.json() if response.text else {}

    async def get_transaction_status(self, reference: str) -> Dict[str, Any]:
        """GET /v2/{order_id or transaction_id}/status"""
        try:
            return await self._request("GET", f"{reference}/status")
        except httpx.HTTPError as e:
            logger.error(f"Midtrans status lookup for {reference} failed: {e}")
            raise PaymentGatewayError(
                "Payment gateway unreachable",
                details={"reference": reference, "error": str(e)},
            ) from e

    async def refund(
        self,
        payment_reference: str,
        amount: Decimal,
        refund_key: str,
        reason: str = "",
    ) -> RefundResult:
        """
        Refund ``amount`` on a transaction.

        A refund already recorded under ``refund_key`` (e.g. the previous
        attempt succeeded at the gateway but the local commit was lost) is
        reported as success without issuing a second refund.
        """
        try:
            status = await self._request("GET", f"{payment_reference}/status")
            existing = find_refund(status, refund_key)
            if existing is not None:
                logger.info(f"Refund {refund_key} already applied on {payment_reference}")
                return RefundResult(
                    success=True,
                    refund_id=str(existing.get("refund_chargeback_id") or refund_key),
                    already_applied=True,
                )

            result = await self._request(
                "POST",
                f"{payment_reference}/refund",
                {
                    "refund_key": refund_key,
                    "amount": int(amount) if amount == amount.to_integral_value() else float(amount),
                    "reason": reason,
                },
            )
        except (httpx.HTTPError, PaymentGatewayError) as e:
            message = e.message if isinstance(e, PaymentGatewayError) else str(e)
            logger.error(f"Refund {refund_key} on {payment_reference} failed: {message}")
            return RefundResult(success=False, error=message)

        if str(result.get("status_code")) == "200":
            return RefundResult(
                success=True,
                refund_id=str(result.get("refund_chargeback_id") or result.get("refund_key") or refund_key),
            )

        error = result.get("status_message") or "Refund rejected by payment gateway"
        logger.warning(f"Refund {refund_key} on {payment_reference} rejected: {error}")
        return RefundResult(success=False, error=error)
