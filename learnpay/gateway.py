# learnpay/gateway.py
"""
Razorpay adapter: order creation over the REST API and the callback
signature scheme (HMAC-SHA256 of "order_id|payment_id" keyed with the API
secret).
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional

import httpx

from learnpay.errors import GatewayRejected, GatewayUnavailable

logger = logging.getLogger("learnpay.gateway")


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class GatewayOrder:
    id: str
    amount: int
    currency: str
    receipt: str
    notes: Dict[str, str] = field(default_factory=dict)


def compute_signature(secret: str, order_id: str, payment_id: str) -> str:
    message = f"{order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class RazorpayGateway:
    provider = "razorpay"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        api_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.key_id = key_id
        self._key_secret = key_secret
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def create_order(self, amount: Decimal, currency: str, receipt: str, notes: Optional[Dict[str, str]] = None) -> GatewayOrder:
        payload = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        try:
            if self._client is not None:
                response = self._post_orders(self._client, payload)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = self._post_orders(client, payload)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.warning("Gateway timed out creating order receipt=%s: %s", receipt, exc)
            raise GatewayUnavailable("Payment gateway timed out. Please try again.") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.error("Gateway rejected order receipt=%s status=%s body=%s", receipt, status, exc.response.text)
            raise GatewayRejected("Payment gateway rejected the order.", upstream_status=status) from exc
        except httpx.TransportError as exc:
            logger.warning("Gateway unreachable creating order receipt=%s: %s", receipt, exc)
            raise GatewayUnavailable("Payment gateway is not reachable. Please try again.") from exc

        try:
            data = response.json()
            order = GatewayOrder(
                id=data["id"],
                amount=int(data["amount"]),
                currency=data["currency"],
                receipt=data.get("receipt") or receipt,
                notes=data.get("notes") or {},
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.error("Malformed gateway response receipt=%s status=%s body=%s", receipt, response.status_code, response.text[:200])
            raise GatewayRejected("Malformed gateway response.", upstream_status=response.status_code) from exc

        logger.info("Created gateway order id=%s receipt=%s amount=%s %s", order.id, receipt, order.amount, order.currency)
        return order

    def _post_orders(self, client: httpx.Client, payload: dict) -> httpx.Response:
        return client.post(
            f"{self.api_url}/orders",
            json=payload,
            auth=(self.key_id, self._key_secret),
            timeout=self.timeout,
        )

    def compute_signature(self, order_id: str, payment_id: str) -> str:
        return compute_signature(self._key_secret, order_id, payment_id)

    def verify_signature(self, order_id: str, payment_id: str, signature: Optional[str]) -> bool:
        if not signature or not order_id or not payment_id:
            return False
        return hmac.compare_digest(self.compute_signature(order_id, payment_id), signature)
