"""Payment gateway boundary.

``PaymentGateway`` is the narrow port the lifecycle controller and the
reconciliation job depend on; ``RazorpayGateway`` implements it over the
Razorpay REST API. Nothing in here knows about orders or stock.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Protocol

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from storefront import config
from storefront.errors import GatewayError, GatewayUnavailable

logger = logging.getLogger(__name__)

SUCCESSFUL_PAYMENT_STATES = frozenset({"captured", "authorized"})


@dataclass(frozen=True)
class GatewayPayment:
    id: str
    status: str
    amount: Decimal
    currency: str = "INR"
    method: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None
    captured_at: Optional[datetime] = None

    @property
    def is_successful(self) -> bool:
        return self.status in SUCCESSFUL_PAYMENT_STATES


class PaymentGateway(Protocol):
    async def create_payment_order(self, amount: Decimal, currency: str, receipt: str, notes: dict) -> str:
        ...

    async def fetch_payments(self, gateway_order_id: str) -> List[GatewayPayment]:
        ...

    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        ...

    def verify_signature(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        ...


def to_subunits(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_subunits(value) -> Decimal:
    return (Decimal(int(value)) / 100).quantize(Decimal("0.01"))


def compute_signature(secret: str, gateway_order_id: str, payment_id: str) -> str:
    body = f"{gateway_order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _parse_payment(data: dict) -> GatewayPayment:
    created = data.get("created_at")
    return GatewayPayment(
        id=data["id"],
        status=data.get("status", ""),
        amount=from_subunits(data.get("amount", 0)),
        currency=data.get("currency", "INR"),
        method=data.get("method"),
        email=data.get("email"),
        contact=data.get("contact"),
        captured_at=datetime.fromtimestamp(created, tz=timezone.utc) if created and data.get("captured") else None,
    )


class RazorpayGateway:
    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        max_attempts: int = 3,
        retry_wait=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not key_id or not key_secret:
            raise GatewayError("Razorpay is not configured: RAZORPAY_KEY_ID and RAZORPAY_SECRET_KEY are required")
        self._secret = key_secret
        self._max_attempts = max_attempts
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=2, max=10)
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_env(cls) -> "RazorpayGateway":
        return cls(
            key_id=config.RAZORPAY_KEY_ID,
            key_secret=config.RAZORPAY_SECRET_KEY,
            base_url=config.RAZORPAY_API_URL,
            timeout=config.GATEWAY_TIMEOUT_SECONDS,
        )

    async def aclose(self):
        await self._client.aclose()

    async def _send(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TransportError as e:
            raise GatewayUnavailable(f"Payment gateway unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise GatewayUnavailable(f"Payment gateway returned HTTP {response.status_code}")
        if response.status_code >= 400:
            try:
                description = response.json().get("error", {}).get("description")
            except ValueError:
                description = None
            raise GatewayError(description or f"Payment gateway rejected the request (HTTP {response.status_code})")
        return response.json()

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=self._retry_wait,
            retry=retry_if_exception_type(GatewayUnavailable),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning("Retrying %s %s (attempt %d)", method, path, attempt.retry_state.attempt_number)
                return await self._send(method, path, json=json)

    async def create_payment_order(self, amount: Decimal, currency: str, receipt: str, notes: dict) -> str:
        data = await self._request(
            "POST",
            "/orders",
            json={"amount": to_subunits(amount), "currency": currency, "receipt": receipt, "notes": notes},
        )
        logger.info("Created gateway order %s for receipt %s", data["id"], receipt)
        return data["id"]

    async def fetch_payments(self, gateway_order_id: str) -> List[GatewayPayment]:
        data = await self._request("GET", f"/orders/{gateway_order_id}/payments")
        return [_parse_payment(item) for item in data.get("items", [])]

    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        data = await self._request("GET", f"/payments/{payment_id}")
        return _parse_payment(data)

    def verify_signature(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        expected = compute_signature(self._secret, gateway_order_id, payment_id)
        return hmac.compare_digest(expected, signature or "")
