from __future__ import annotations

import hashlib
import hmac
import logging
from functools import lru_cache
from typing import Any, Protocol

import requests

from ..config import settings
from ..errors import PaymentNotConfigured, PaymentProviderError


logger = logging.getLogger(__name__)


class PaymentProvider(Protocol):
    enabled: bool
    key_id: str

    def create_order(self, amount_minor: int, currency: str, receipt: str, notes: dict[str, str]) -> dict[str, Any]:
        ...

    def fetch_payment(self, payment_id: str) -> dict[str, Any]:
        ...

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        ...


def compute_signature(secret: str, order_id: str, payment_id: str) -> str:
    body = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class RazorpayProvider:
    enabled = True

    def __init__(self, key_id: str, key_secret: str, api_base: str, timeout: float):
        self.key_id = key_id
        self._key_secret = key_secret
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = requests.request(
                method,
                f"{self._api_base}{path}",
                auth=(self.key_id, self._key_secret),
                timeout=self._timeout,
                **kwargs,
            )
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Razorpay %s %s failed: %s", method, path, exc)
            raise PaymentProviderError(str(exc)) from exc

    def create_order(self, amount_minor: int, currency: str, receipt: str, notes: dict[str, str]) -> dict[str, Any]:
        return self._request(
            "POST",
            "/orders",
            json={"amount": amount_minor, "currency": currency, "receipt": receipt, "notes": notes},
        )

    def fetch_payment(self, payment_id: str) -> dict[str, Any]:
        return self._request("GET", f"/payments/{payment_id}")

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        expected = compute_signature(self._key_secret, order_id, payment_id)
        return hmac.compare_digest(expected.encode("utf-8"), (signature or "").encode("utf-8"))


class DisabledPaymentProvider:
    enabled = False
    key_id = ""

    def _unavailable(self) -> PaymentNotConfigured:
        return PaymentNotConfigured(
            "Payment system not configured. Please contact admin.",
            extra={"needsSetup": True},
        )

    def create_order(self, amount_minor: int, currency: str, receipt: str, notes: dict[str, str]) -> dict[str, Any]:
        raise self._unavailable()

    def fetch_payment(self, payment_id: str) -> dict[str, Any]:
        raise self._unavailable()

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        raise self._unavailable()


@lru_cache
def get_payment_provider() -> PaymentProvider:
    if not settings.payment_provider_configured:
        logger.info("Razorpay not configured - payment features disabled")
        return DisabledPaymentProvider()
    logger.info("Razorpay payment system initialized")
    return RazorpayProvider(
        settings.razorpay_key_id.strip(),
        settings.razorpay_key_secret.strip(),
        settings.razorpay_api_base,
        settings.payment_timeout_seconds,
    )
