import hashlib
import hmac
from functools import lru_cache
from typing import Dict

import structlog

import config
from errors import Unavailable

logger = structlog.get_logger(__name__)


def expected_signature(gateway_order_id: str, payment_id: str, secret: str) -> str:
    body = f"{gateway_order_id}|{payment_id}"
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


def verify_signature(gateway_order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    return hmac.compare_digest(expected_signature(gateway_order_id, payment_id, secret), signature or "")


class PaymentGateway:
    secret: str = ""

    def create_order(self, amount: int, currency: str, receipt: str) -> Dict:
        raise NotImplementedError


class RazorpayGateway(PaymentGateway):
    def __init__(self, key_id: str = config.RAZORPAY_KEY_ID, key_secret: str = config.RAZORPAY_KEY_SECRET):
        import razorpay

        self.secret = key_secret
        self.client = razorpay.Client(auth=(key_id, key_secret))

    def create_order(self, amount: int, currency: str, receipt: str) -> Dict:
        """amount is in the smallest currency unit (paise for INR)."""
        try:
            return self.client.order.create(data={
                "amount": int(amount),
                "currency": currency,
                "receipt": receipt,
                "payment_capture": 1,
            })
        except Exception as e:
            logger.error("gateway_order_failed", receipt=receipt, error=str(e))
            raise Unavailable("Failed to create payment order")


@lru_cache
def get_payment_gateway() -> PaymentGateway:
    return RazorpayGateway()
