"""
Razorpay client.

Orders are created server-side; the browser opens the checkout overlay with
the returned order id and hands back ``payment_id`` and ``signature`` on
success. Amounts are in minor units (paise for INR).
"""

import hmac
import hashlib
import time
from typing import Any, Dict, Optional

import requests
import structlog
from fastapi import Depends

from storefront.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


class GatewayError(Exception):
    def __init__(self, status_code: int, detail: Any):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"gateway error {status_code}: {detail}")


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def make_receipt() -> str:
    return f"receipt_order_{int(time.time() * 1000)}"


class RazorpayClient:
    def __init__(self, key_id: Optional[str], key_secret: Optional[str],
                 base_url: str = "https://api.razorpay.com/v1", timeout: float = 10):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _require_keys(self) -> None:
        if not self.key_id or not self.key_secret:
            raise GatewayError(500, "Razorpay not configured on server")

    def _post(self, path: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self._require_keys()
        url = f"{self.base_url}{path}"
        try:
            r = requests.post(url, auth=(self.key_id, self.key_secret), json=data, timeout=self.timeout)
            r.raise_for_status()
            return r.json()
        except requests.Timeout:
            raise GatewayError(504, "Razorpay timeout")
        except requests.HTTPError:
            try:
                err = r.json()
            except ValueError:
                err = {"message": r.text}
            raise GatewayError(r.status_code, err)
        except requests.RequestException as e:
            raise GatewayError(502, f"Razorpay error: {str(e)}")

    def create_order(self, amount: int, currency: str, receipt: Optional[str] = None,
                     notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Create a gateway order; ``amount`` is already in minor units."""
        order = self._post("/orders", {
            "amount": amount,
            "currency": currency,
            "receipt": receipt or make_receipt(),
            "payment_capture": 1,
            "notes": notes or {},
        })
        logger.info("gateway_order_created", gateway_order_id=order.get("id"), amount=amount, currency=currency)
        return order

    def refund(self, payment_id: str, amount: Optional[int] = None) -> Dict[str, Any]:
        data = {"amount": amount} if amount is not None else {}
        refund = self._post(f"/payments/{payment_id}/refund", data)
        logger.info("gateway_refund_created", payment_id=payment_id, refund_id=refund.get("id"), amount=amount)
        return refund

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        self._require_keys()
        generated = hmac.new(
            self.key_secret.encode("utf-8"),
            f"{order_id}|{payment_id}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(generated, signature)


def get_gateway(settings: Settings = Depends(get_settings)) -> RazorpayClient:
    return RazorpayClient(settings.razorpay_key_id, settings.razorpay_key_secret, settings.razorpay_base_url)
