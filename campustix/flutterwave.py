"""
Flutterwave v4 adapter: OAuth client-credentials token, customers, dynamic
virtual accounts (pay with bank transfer) and charge lookups.
"""
from __future__ import annotations
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .errors import UnableToComplete
from .gateway import Customer, PaymentAdapter, VirtualAccount
from .infra.timings import timeit

logger = logging.getLogger(__name__)

# refresh a little early so a token never expires mid-request
TOKEN_EXPIRY_MARGIN_SECONDS = 30


@dataclass(frozen=True)
class TokenState:
    token: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return bool(self.token) and now < self.expires_at


class FlutterwaveAdapter(PaymentAdapter):
    name = "flutterwave"
    signature_header = "flutterwave-signature"

    def __init__(self, *, client_id: str, client_secret: str,
                 secret_hash: str, base_url: str, token_url: str,
                 http: httpx.AsyncClient) -> None:
        super().__init__(secret_hash)
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self.token_url = token_url
        self.http = http
        self._token: Optional[TokenState] = None
        self._token_lock = asyncio.Lock()

    async def _authenticate(self) -> TokenState:
        data = await self._call(
            "POST", self.token_url,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "client_credentials",
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            what="authenticate",
        )
        token = data.get("access_token")
        if not token:
            raise UnableToComplete("Failed to initialize payment")
        expires_in = float(data.get("expires_in") or 0)
        return TokenState(
            token=token,
            expires_at=time.time() + expires_in - TOKEN_EXPIRY_MARGIN_SECONDS,
        )

    async def access_token(self) -> str:
        state = self._token
        if state is not None and state.is_valid(time.time()):
            return state.token
        async with self._token_lock:
            # another coroutine may have refreshed while we waited
            state = self._token
            if state is None or not state.is_valid(time.time()):
                state = await self._authenticate()
                self._token = state
        return state.token

    async def _authorized_headers(self, idempotent: bool = False
                                  ) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {await self.access_token()}",
        }
        if idempotent:
            headers["X-Idempotency-Key"] = uuid.uuid4().hex
        return headers

    async def _call(self, method: str, url: str, *, what: str,
                    **kw: Any) -> Dict[str, Any]:
        try:
            async with timeit(f"gateway.{what}"):
                r = await self.http.request(method, url, **kw)
            r.raise_for_status()
            return r.json()
        except httpx.TimeoutException as e:
            logger.warning("flutterwave %s timed out: %s", what, e)
            raise UnableToComplete(f"Payment provider timed out ({what})")
        except httpx.HTTPStatusError as e:
            logger.error(
                "flutterwave %s failed: %s %s",
                what, e.response.status_code, e.response.text[:500],
            )
            raise UnableToComplete(f"Payment provider rejected {what}")
        except (httpx.HTTPError, ValueError) as e:
            logger.error("flutterwave %s failed: %s", what, e)
            raise UnableToComplete(f"Payment provider unavailable ({what})")

    async def create_customer(self, first_name: str, last_name: str,
                              email: str) -> Customer:
        data = await self._call(
            "POST", f"{self.base_url}/customers",
            json={
                "name": {"first": first_name, "last": last_name},
                "email": email,
            },
            headers=await self._authorized_headers(idempotent=True),
            what="create_customer",
        )
        return data.get("data") or {}

    async def create_virtual_account(
            self, *, reference: str, customer_id: str, amount: float,
            currency: str, narration: str, expiry_minutes: int
    ) -> VirtualAccount:
        data = await self._call(
            "POST", f"{self.base_url}/virtual-accounts",
            json={
                "reference": reference,
                "customer_id": customer_id,
                "expiry": expiry_minutes,
                "amount": amount,
                "currency": currency,
                "account_type": "dynamic",
                "narration": narration,
            },
            headers=await self._authorized_headers(idempotent=True),
            what="create_virtual_account",
        )
        return data.get("data") or {}

    async def verify_transaction(self, transaction_id: str) -> Dict[str, Any]:
        data = await self._call(
            "GET", f"{self.base_url}/charges/{transaction_id}",
            headers=await self._authorized_headers(),
            what="verify_transaction",
        )
        return {
            "status": data.get("status", "error"),
            "data": data.get("data") or {},
        }
