import asyncio
import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

import requests

from ordersync.config import Settings
from ordersync.errors import GatewayConfigError, GatewayRequestError
from ordersync.gateway.base import PaymentGateway
from ordersync.types.order_types import Authorization, UserInteraction, Verification

logger = logging.getLogger("paystack")

PAYMENT_CHANNELS = ["card", "mobile_money", "bank_transfer"]


def sign_payload(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha512).hexdigest()


class PaystackGateway(PaymentGateway):
    name = "paystack"

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.secret_key = settings.paystack_secret_key
        self.base_url = settings.paystack_base_url
        self.currency = settings.paystack_currency
        self.callback_url = settings.paystack_callback_url
        self.timeout = settings.paystack_timeout_seconds
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        if not self.secret_key:
            logger.error("[Paystack] PAYSTACK_SECRET_KEY not configured")
            raise GatewayConfigError("Payment service configuration error")
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _call(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = self._headers()
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, json=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"[Paystack] {method} {path} transport error: {e}")
            raise GatewayRequestError("Payment service temporarily unavailable") from e

        if resp.status_code >= 400:
            logger.error(f"[Paystack] {method} {path} HTTP {resp.status_code}: {resp.text}")
            raise GatewayRequestError(
                "Payment service temporarily unavailable", status_code=resp.status_code
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise GatewayRequestError("Invalid response from payment service") from e
        if not data.get("status"):
            logger.error(f"[Paystack] {method} {path} rejected: {data.get('message')}")
            raise GatewayRequestError(data.get("message") or "Payment request rejected")
        return data

    async def initialize(self, email: str, amount_minor: int, reference: str,
                         metadata: Dict[str, Any]) -> Authorization:
        body = {
            "email": email,
            "amount": amount_minor,
            "currency": self.currency,
            "reference": reference,
            "metadata": metadata,
            "channels": PAYMENT_CHANNELS,
        }
        if self.callback_url:
            body["callback_url"] = self.callback_url

        data = await asyncio.to_thread(self._call, "POST", "/transaction/initialize", body)
        payload = data.get("data") or {}
        if not payload.get("authorization_url") or not payload.get("reference"):
            raise GatewayRequestError("Missing authorization URL or reference in payment response")
        logger.info(f"[Paystack] initialized: {reference}")
        return Authorization(
            reference=payload["reference"],
            authorization_url=payload["authorization_url"],
            access_code=payload.get("access_code"),
        )

    async def open_user_interaction(self, authorization: Authorization) -> UserInteraction:
        return UserInteraction(
            reference=authorization.reference,
            authorization_url=authorization.authorization_url,
            access_code=authorization.access_code,
        )

    async def verify_by_reference(self, reference: str) -> Verification:
        data = await asyncio.to_thread(self._call, "GET", f"/transaction/verify/{reference}")
        payload = data.get("data") or {}
        status = payload.get("status", "unknown")
        logger.info(f"[Paystack] verified: {reference} status={status}")
        return Verification(
            reference=reference,
            verified=True,
            status=status,
            amount_minor=payload.get("amount"),
            payload=payload,
        )

    def verify_signature(self, raw_body: bytes, signature: str) -> bool:
        if not self.secret_key:
            logger.error("[Paystack] cannot check webhook signature without PAYSTACK_SECRET_KEY")
            return False
        if not signature:
            return False
        return hmac.compare_digest(sign_payload(self.secret_key, raw_body), signature)
