"""
Paystack REST client.

Amounts go over the wire in minor units (pesewas for GHS). Every payment is
re-verified here, server side, before an order is trusted as paid.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from config import Settings
from errors import PaymentInitializationError, PaymentProviderError

logger = logging.getLogger(__name__)


def to_minor_units(amount) -> int:
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    return int((value * 100).to_integral_value(rounding=ROUND_HALF_UP))


@dataclass
class VerificationResult:
    status: str
    reference: str
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
    channel: Optional[str] = None
    paid_at: Optional[str] = None
    customer: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "reference": self.reference,
            "amount": self.amount_minor / 100 if self.amount_minor is not None else None,
            "currency": self.currency,
            "channel": self.channel,
            "paid_at": self.paid_at,
            "customer": self.customer,
        }


class PaystackClient:
    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None):
        self.settings = settings
        self._transport = transport

    def _client(self) -> httpx.Client:
        secret = self.settings.paystack_secret_key
        if not secret:
            raise PaymentInitializationError()
        return httpx.Client(
            base_url=self.settings.paystack_base_url,
            headers={"Authorization": f"Bearer {secret}", "Content-Type": "application/json"},
            timeout=self.settings.paystack_timeout,
            transport=self._transport,
        )

    def _request(self, method: str, path: str, fallback: str, **kwargs) -> Dict[str, Any]:
        with self._client() as client:
            try:
                resp = client.request(method, path, **kwargs)
            except httpx.HTTPError as e:
                logger.warning("Paystack %s %s failed: %s", method, path, e)
                raise PaymentProviderError(fallback) from e
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        if resp.status_code >= 400:
            message = body.get("message") or fallback
            logger.warning("Paystack %s %s returned %s: %s", method, path, resp.status_code, message)
            raise PaymentProviderError(message)
        return body

    def initialize_transaction(self, email: str, amount, metadata: Optional[Dict[str, Any]] = None,
                               reference: Optional[str] = None,
                               currency: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "email": email,
            "amount": to_minor_units(amount),
            "currency": currency or self.settings.pricing.currency,
            "metadata": metadata or {},
            "callback_url": f"{self.settings.frontend_url}/order/success",
        }
        if reference:
            payload["reference"] = reference
        body = self._request("POST", "/transaction/initialize", "Transaction initialization failed", json=payload)
        data = body.get("data")
        return data if isinstance(data, dict) else {}

    def verify_transaction(self, reference: str) -> VerificationResult:
        body = self._request("GET", f"/transaction/verify/{quote(reference, safe='')}",
                             "Transaction verification failed")
        data = body.get("data")
        if not isinstance(data, dict):
            data = {}
        amount = data.get("amount")
        return VerificationResult(
            status=str(data.get("status") or "failed"),
            reference=str(data.get("reference") or reference),
            amount_minor=int(amount) if amount is not None else None,
            currency=data.get("currency"),
            channel=data.get("channel"),
            paid_at=data.get("paid_at"),
            customer=data.get("customer") or {},
        )

    def verify_webhook_signature(self, body: bytes, signature: Optional[str]) -> bool:
        if not signature or not self.settings.paystack_secret_key:
            return False
        expected = hmac.new(self.settings.paystack_secret_key.encode(), body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature)
