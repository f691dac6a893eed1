from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, TypedDict

import orjson

from .errors import PayloadIncorrect, Unauthorized
from .helpers import sign_payload, ct_equal, to_amount

SUCCESS_STATUSES = frozenset({"successful", "succeeded"})
FAILURE_STATUSES = frozenset({"failed", "cancelled", "canceled"})


class VirtualAccount(TypedDict, total=False):
    id: str
    amount: float
    account_number: str
    reference: str
    account_bank_name: str
    account_type: str
    status: str
    account_expiration_datetime: str
    customer_id: str
    created_datetime: str


class Customer(TypedDict, total=False):
    id: str
    email: str
    name: Dict[str, str]


@dataclass
class PaymentNotification:
    """Provider-agnostic view of one webhook `data` object or poll result."""
    status: str
    reference: Optional[str]
    transaction_id: Optional[str]
    amount: Optional[float]
    currency: Optional[str]
    customer_email: Optional[str]
    failure_reason: str
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_data(cls, data: Mapping[str, Any]) -> "PaymentNotification":
        customer = data.get("customer")
        if not isinstance(customer, Mapping):
            customer = {}
        tx_id = data.get("id")
        return cls(
            status=str(data.get("status") or "").lower(),
            reference=data.get("tx_ref") or data.get("reference"),
            transaction_id=str(tx_id) if tx_id is not None else None,
            amount=to_amount(data.get("amount")),
            currency=data.get("currency"),
            customer_email=customer.get("email"),
            failure_reason=(
                data.get("processor_response")
                or data.get("gateway_response")
                or "Payment failed"
            ),
            raw=dict(data),
        )

    # "succeeded" | "failed" | "other"
    @property
    def kind(self) -> str:
        if self.status in SUCCESS_STATUSES:
            return "succeeded"
        if self.status in FAILURE_STATUSES:
            return "failed"
        return "other"


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    name: str = "abstract"
    signature_header: str = ""

    def __init__(self, secret: str) -> None:
        self._secret = secret

    @abstractmethod
    async def create_customer(
            self, first_name: str, last_name: str, email: str
    ) -> Customer: ...

    @abstractmethod
    async def create_virtual_account(
            self, *, reference: str, customer_id: str, amount: float,
            currency: str, narration: str, expiry_minutes: int
    ) -> VirtualAccount: ...

    # {"status": "success" | ..., "data": {...}}
    @abstractmethod
    async def verify_transaction(self, transaction_id: str) -> Dict[str, Any]:
        ...

    async def aclose(self) -> None:
        return None

    def is_valid_signature(self, payload: bytes,
                           signature: Optional[str]) -> bool:
        # must run on the raw body; re-serialised JSON will not match
        if not signature or not self._secret:
            return False
        return ct_equal(sign_payload(self._secret, payload), signature)

    def verify_webhook(self, payload: bytes,
                       headers: Mapping[str, str]) -> Dict[str, Any]:
        sig = _header(headers, self.signature_header)
        if not self.is_valid_signature(payload, sig):
            raise Unauthorized("Invalid signature")
        try:
            body = orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise PayloadIncorrect("Invalid JSON")
        if not isinstance(body, dict) or not isinstance(body.get("data"),
                                                        dict):
            raise PayloadIncorrect("Missing data object")
        return body


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for k, v in headers.items():
            if k.lower() == lowered:
                return v
    return value
