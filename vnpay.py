"""
VNPAY payment gateway adapter.

Builds signed redirect URLs and verifies signed return callbacks. Nothing
here talks to the network: the redirect is plain URL construction and the
callback is checked against the shared secret only.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Mapping, Optional
from urllib.parse import urlencode

from database import utcnow
from errors import GatewayMisconfigured, InvalidSignature

logger = logging.getLogger(__name__)

VNPAY_VERSION = "2.1.0"
SUCCESS_CODE = "00"
SIGNATURE_FIELDS = ("vnp_SecureHash", "vnp_SecureHashType")
GATEWAY_TZ = timezone(timedelta(hours=7))


def canonical_query(params: Mapping[str, str]) -> str:
    items = sorted((k, str(v)) for k, v in params.items() if k.startswith("vnp_") and k not in SIGNATURE_FIELDS)
    return urlencode(items)


def sign(secret: str, data: str) -> str:
    return hmac.new(secret.encode("utf-8"), data.encode("utf-8"), hashlib.sha512).hexdigest()


def _gateway_time(now: datetime) -> str:
    return now.replace(tzinfo=timezone.utc).astimezone(GATEWAY_TZ).strftime("%Y%m%d%H%M%S")


@dataclass
class CallbackResult:
    transaction_ref: str
    response_code: str
    amount: Optional[int]
    gateway_transaction_no: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.response_code == SUCCESS_CODE


class VnpayGateway:
    def __init__(self, tmn_code: str = None, hash_secret: str = None, payment_url: str = None,
                 return_url: str = None, expire_minutes: int = 15):
        self.tmn_code = tmn_code
        self.hash_secret = hash_secret
        self.payment_url = payment_url
        self.return_url = return_url
        self.expire_minutes = expire_minutes

    @classmethod
    def from_settings(cls, settings) -> "VnpayGateway":
        return cls(
            tmn_code=settings.vnpay_tmn_code,
            hash_secret=settings.vnpay_hash_secret,
            payment_url=settings.vnpay_payment_url,
            return_url=settings.vnpay_return_url,
            expire_minutes=settings.vnpay_expire_minutes,
        )

    def _require(self, *names: str) -> None:
        missing = [n for n in names if not getattr(self, n)]
        if missing:
            raise GatewayMisconfigured(f"Missing gateway settings: {', '.join(missing)}")

    def build_payment_url(self, amount: int, transaction_ref: str, order_info: str, client_ip: str,
                          now: datetime = None) -> str:
        self._require("tmn_code", "hash_secret", "payment_url", "return_url")
        now = now or utcnow()
        params: Dict[str, str] = {
            "vnp_Version": VNPAY_VERSION,
            "vnp_Command": "pay",
            "vnp_TmnCode": self.tmn_code,
            "vnp_Amount": str(int(amount) * 100),
            "vnp_CurrCode": "VND",
            "vnp_TxnRef": transaction_ref,
            "vnp_OrderInfo": order_info,
            "vnp_OrderType": "other",
            "vnp_Locale": "vn",
            "vnp_ReturnUrl": self.return_url,
            "vnp_IpAddr": client_ip or "127.0.0.1",
            "vnp_CreateDate": _gateway_time(now),
            "vnp_ExpireDate": _gateway_time(now + timedelta(minutes=self.expire_minutes)),
        }
        query = canonical_query(params)
        return f"{self.payment_url}?{query}&vnp_SecureHash={sign(self.hash_secret, query)}"

    def verify_callback(self, raw_params: Mapping[str, str]) -> CallbackResult:
        """Check the signature of a return callback and decode its outcome.

        Raises InvalidSignature on any mismatch; a valid signature with a non
        success response code is returned, not raised.
        """
        self._require("hash_secret")
        params = dict(raw_params)
        provided = params.pop("vnp_SecureHash", None)
        params.pop("vnp_SecureHashType", None)
        if not provided:
            raise InvalidSignature("Callback is missing vnp_SecureHash")
        expected = sign(self.hash_secret, canonical_query(params))
        if not hmac.compare_digest(expected.encode("utf-8"), provided.lower().encode("utf-8")):
            logger.warning("VNPAY signature mismatch for TxnRef=%s, possible tampering", params.get("vnp_TxnRef"))
            raise InvalidSignature()

        amount = params.get("vnp_Amount")
        return CallbackResult(
            transaction_ref=params.get("vnp_TxnRef", ""),
            response_code=params.get("vnp_ResponseCode", ""),
            amount=int(amount) // 100 if amount and amount.isdigit() else None,
            gateway_transaction_no=params.get("vnp_TransactionNo"),
        )
