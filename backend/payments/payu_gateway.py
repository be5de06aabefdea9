"""
PayU Gateway: Signer & Verifier
===============================
Prepares the signed hosted-checkout payload for the browser and authenticates
the responses the gateway sends back through the redirect and the webhook.

Forward hash (outbound request):
    sha512(key|txnid|amount|productinfo|firstname|email|udf1|...|udf5|||||salt)

Reverse hash (inbound response):
    sha512(salt|status|udf10|...|udf1|email|firstname|productinfo|amount|txnid|key)

The gateway is never called from here; only payloads are built and checked.
"""

import hashlib
import hmac
import time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping, Optional

import structlog
from pydantic import BaseModel, Field

from orders.errors import InvalidSignature, ValidationError
from payments.config import GatewayConfig

AMOUNT_TOLERANCE = Decimal("0.01")
UDF_SLOTS = 10
REQUIRED_RESPONSE_FIELDS = ("status", "txnid", "amount", "productinfo", "firstname", "email", "hash")

FAILURE_REASONS = {
    "failure": "Payment failed due to insufficient funds or other payment issues.",
    "cancel": "Payment was cancelled by the user.",
    "pending": "Payment is pending. Please wait for confirmation.",
}
UNKNOWN_FAILURE = "Payment failed due to unknown error."


def sha512_hex(value: str) -> str:
    return hashlib.sha512(value.encode("utf-8")).hexdigest()


def format_amount(amount: Decimal) -> str:
    """Fixed-point string with two decimals, the only form ever hashed"""
    return str(Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def parse_amount(raw: Any) -> Decimal:
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid payment amount: {raw!r}") from None
    if not value.is_finite():
        raise ValidationError(f"Invalid payment amount: {raw!r}")
    return value


def amounts_match(expected: Decimal, received: Decimal) -> bool:
    return abs(Decimal(expected) - Decimal(received)) < AMOUNT_TOLERANCE


# =============================================================================
# PAYLOADS
# =============================================================================

class PaymentRequest(BaseModel):
    """Form fields the browser posts to the gateway"""
    key: str
    txnid: str
    amount: str
    productinfo: str
    firstname: str
    email: str
    phone: str
    surl: str
    furl: str
    udf1: str = ""
    udf2: str = ""
    udf3: str = ""
    udf4: str = ""
    udf5: str = ""
    hash: str


class GatewayResponse(BaseModel):
    """Canonical shape of a redirect or webhook payload"""
    status: str
    txnid: str
    amount: str
    productinfo: str
    firstname: str
    email: str
    hash: str
    phone: Optional[str] = None
    mihpayid: Optional[str] = None
    mode: Optional[str] = None
    bank_ref_num: Optional[str] = None
    bankcode: Optional[str] = None
    error: Optional[str] = None
    error_message: Optional[str] = None
    addedon: Optional[str] = None
    udf: list[str] = Field(default_factory=lambda: [""] * UDF_SLOTS)

    @property
    def order_id(self) -> str:
        return self.udf[0]

    @property
    def amount_value(self) -> Decimal:
        return parse_amount(self.amount)

    def redacted(self) -> dict[str, Any]:
        """Copy safe to persist and log (signature dropped)"""
        data = self.model_dump(exclude={"hash", "udf"}, exclude_none=True)
        for index, value in enumerate(self.udf, start=1):
            if value:
                data[f"udf{index}"] = value
        return data


def parse_response(raw: Mapping[str, Any]) -> GatewayResponse:
    """Normalise an untrusted redirect/webhook field map"""
    fields = {k: "" if v is None else str(v) for k, v in raw.items()}
    missing = [name for name in REQUIRED_RESPONSE_FIELDS if not fields.get(name)]
    if missing:
        raise ValidationError(
            "Invalid payment response",
            errors=[{"field": name, "message": "Field required"} for name in missing],
        )
    return GatewayResponse(
        status=fields["status"],
        txnid=fields["txnid"],
        amount=fields["amount"],
        productinfo=fields["productinfo"],
        firstname=fields["firstname"],
        email=fields["email"],
        hash=fields["hash"],
        phone=fields.get("phone") or None,
        mihpayid=fields.get("mihpayid") or None,
        mode=fields.get("mode") or None,
        bank_ref_num=fields.get("bank_ref_num") or None,
        bankcode=fields.get("bankcode") or None,
        error=fields.get("error") or None,
        error_message=fields.get("error_Message") or fields.get("error_message") or None,
        addedon=fields.get("addedon") or None,
        udf=[fields.get(f"udf{i}", "") for i in range(1, UDF_SLOTS + 1)],
    )


# =============================================================================
# SIGNER
# =============================================================================

class GatewaySigner:
    """Builds the outbound payment request and its forward hash"""

    def __init__(self, config: GatewayConfig):
        self._config = config
        self._logger = structlog.get_logger().bind(component="gateway_signer")

    @property
    def gateway_url(self) -> str:
        return self._config.gateway_url

    @staticmethod
    def generate_transaction_id(order_id: str, timestamp_ms: Optional[int] = None) -> str:
        if timestamp_ms is None:
            timestamp_ms = int(time.time() * 1000)
        return f"TXN_{order_id}_{timestamp_ms}"

    def payment_hash(
        self,
        txnid: str,
        amount: str,
        productinfo: str,
        firstname: str,
        email: str,
        udfs: tuple[str, ...] = (),
    ) -> str:
        user_fields = list(udfs[:5]) + [""] * (5 - len(udfs[:5]))
        parts = [
            self._config.merchant_key,
            txnid,
            amount,
            productinfo,
            firstname.strip(),
            email,
            *user_fields,
            "", "", "", "", "",
            self._config.salt,
        ]
        return sha512_hex("|".join(parts))

    def prepare_payment_request(
        self,
        order_id: str,
        amount: Decimal,
        product_info: str,
        customer_name: str,
        customer_email: str,
        customer_phone: str,
        success_url: str,
        failure_url: str,
        txnid: Optional[str] = None,
    ) -> PaymentRequest:
        txnid = txnid or self.generate_transaction_id(order_id)
        amount_str = format_amount(amount)
        firstname = customer_name.strip()
        udfs = (order_id, "", "", "", "")

        signature = self.payment_hash(
            txnid, amount_str, product_info, firstname, customer_email, udfs
        )
        self._logger.info("payment_request_signed", order_id=order_id, txnid=txnid, amount=amount_str)

        return PaymentRequest(
            key=self._config.merchant_key,
            txnid=txnid,
            amount=amount_str,
            productinfo=product_info,
            firstname=firstname,
            email=customer_email,
            phone=customer_phone,
            surl=success_url,
            furl=failure_url,
            udf1=order_id,
            hash=signature,
        )


# =============================================================================
# VERIFIER
# =============================================================================

class GatewayVerifier:
    """Authenticates inbound gateway responses before any field is trusted"""

    def __init__(self, config: GatewayConfig):
        self._config = config
        self._logger = structlog.get_logger().bind(component="gateway_verifier")

    def reverse_hash(self, response: GatewayResponse) -> str:
        parts = [
            self._config.salt,
            response.status,
            *reversed(response.udf),
            response.email,
            response.firstname,
            response.productinfo,
            response.amount,
            response.txnid,
            self._config.merchant_key,
        ]
        return sha512_hex("|".join(parts))

    def is_authentic(self, response: GatewayResponse) -> bool:
        expected = self.reverse_hash(response)
        return hmac.compare_digest(expected.encode(), response.hash.encode())

    def verify(self, raw: Mapping[str, Any]) -> GatewayResponse:
        """Parse and authenticate; raises InvalidSignature on any mismatch"""
        response = parse_response(raw)
        if not self.is_authentic(response):
            self._logger.warning(
                "gateway_signature_invalid",
                txnid=response.txnid,
                order_id=response.order_id or None,
                status=response.status,
            )
            raise InvalidSignature(response.txnid)
        return response

    @staticmethod
    def is_successful(response: GatewayResponse) -> bool:
        return response.status == "success"

    @staticmethod
    def failure_reason(response: GatewayResponse) -> str:
        if response.error_message:
            return response.error_message
        return FAILURE_REASONS.get(response.status, UNKNOWN_FAILURE)
