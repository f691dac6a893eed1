import time
import re
from datetime import datetime, timezone
import hmac
import base64
import hashlib
from typing import Optional

# paid amounts within this distance of the order total are a match
AMOUNT_EPSILON = 0.01


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and _EMAIL_RE.match(email.strip()) is not None


def ct_equal(a: str, b: Optional[str]) -> bool:
    if b is None:
        return False
    return hmac.compare_digest(a.encode(), b.encode())


def sign_payload(secret: str, payload: bytes) -> str:
    """base64(HMAC-SHA256(secret, payload)), as sent by the provider."""
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


def to_amount(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def amounts_match(paid, expected: float) -> bool:
    paid = to_amount(paid)
    if paid is None:
        return False
    return abs(paid - float(expected)) <= AMOUNT_EPSILON


def full_name(first: Optional[str], last: Optional[str]) -> str:
    return " ".join(p for p in (first, last) if p) or "Guest"
