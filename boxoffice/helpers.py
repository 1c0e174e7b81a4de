import time
import re
import uuid
import hashlib
from datetime import datetime, timezone
import hmac
from typing import Iterable, List, Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def unique_emails(emails: Iterable[Optional[str]]) -> List[str]:
    out: List[str] = []
    for e in emails:
        e = normalize_email(e)
        if is_valid_email(e) and e not in out:
            out.append(e)
    return out


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def idempotency_key(hold_id: str, payment_id: str) -> str:
    # stable per (hold, payment) so provider retries map to one session
    raw = f"{hold_id}:{payment_id}".encode()
    return hashlib.sha256(raw).hexdigest()[:32]
