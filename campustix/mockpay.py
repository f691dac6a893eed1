import uuid
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import orjson

from .errors import UnableToComplete
from .gateway import Customer, PaymentAdapter, VirtualAccount
from .helpers import sign_payload

MOCK_SIGNATURE_HEADER = "x-mockpay-signature"


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """
    Sandbox provider. Virtual accounts and charges live in memory; webhooks
    are signed with the same HMAC scheme as the real provider so the whole
    reconciliation path runs unchanged.
    """
    name = "mock"
    signature_header = MOCK_SIGNATURE_HEADER

    def __init__(self, secret: str) -> None:
        super().__init__(secret)
        self.accounts: Dict[str, VirtualAccount] = {}
        self.charges: Dict[str, Dict[str, Any]] = {}
        # flip to simulate the provider being unreachable
        self.outage = False
        self.calls: list[str] = []

    def _check_up(self, what: str) -> None:
        self.calls.append(what)
        if self.outage:
            raise UnableToComplete(f"Payment provider unavailable ({what})")

    async def create_customer(self, first_name: str, last_name: str,
                              email: str) -> Customer:
        self._check_up("create_customer")
        return {
            "id": f"cus_{uuid.uuid4().hex[:12]}",
            "email": email,
            "name": {"first": first_name, "last": last_name},
        }

    async def create_virtual_account(
            self, *, reference: str, customer_id: str, amount: float,
            currency: str, narration: str, expiry_minutes: int
    ) -> VirtualAccount:
        self._check_up("create_virtual_account")
        now = datetime.now(timezone.utc)
        va: VirtualAccount = {
            "id": f"va_{uuid.uuid4().hex[:12]}",
            "amount": amount,
            "account_number": f"99{uuid.uuid4().int % 10**8:08d}",
            "reference": reference,
            "account_bank_name": "MockPay Bank",
            "account_type": "dynamic",
            "status": "active",
            "account_expiration_datetime": (
                now + timedelta(minutes=expiry_minutes)
            ).isoformat(),
            "customer_id": customer_id,
            "created_datetime": now.isoformat(),
        }
        self.accounts[reference] = va
        return va

    def settle(self, reference: str, status: str,
               amount: Optional[float] = None,
               currency: str = "NGN",
               email: Optional[str] = None,
               reason: Optional[str] = None) -> Dict[str, Any]:
        """Record the outcome of a payment into `reference`; returns data."""
        va = self.accounts.get(reference, {})
        charge_id = f"chg_{uuid.uuid4().hex[:12]}"
        data = {
            "id": charge_id,
            "tx_ref": reference,
            "status": status,
            "amount": va.get("amount") if amount is None else amount,
            "currency": currency,
            "customer": {"email": email},
            "created_at": int(time.time()),
        }
        if reason:
            data["processor_response"] = reason
        self.charges[charge_id] = data
        self.charges[reference] = data
        return data

    def build_webhook(self, data: Dict[str, Any]
                      ) -> Tuple[bytes, Dict[str, str]]:
        payload = orjson.dumps({
            "webhook_id": f"wbk_{uuid.uuid4().hex[:12]}",
            "type": "charge.completed",
            "data": data,
        })
        headers = {
            MOCK_SIGNATURE_HEADER: sign_payload(self._secret, payload),
            "content-type": "application/json",
        }
        return payload, headers

    async def verify_transaction(self, transaction_id: str) -> Dict[str, Any]:
        self._check_up("verify_transaction")
        data = self.charges.get(transaction_id)
        if data is None:
            return {"status": "error", "data": {}}
        return {"status": "success", "data": dict(data)}
