import base64
import hashlib
import hmac
import json
import uuid
from typing import Any, Dict, Mapping, Optional, Tuple

from .base import (
    CreateSessionResult, PaymentAdapter, ProviderCallback, ProviderStatus,
)
from ..config import MOCK_SECRET
from ..errors import ProviderAuthenticityFailure
from ..helpers import ct_equal, now_ts
from ..model.db import PAY_CANCELLED, PAY_FAILED, PAY_PAID, PAY_PENDING

# "payment.<kind>"
STATUS_BY_KIND = {
    "succeeded": PAY_PAID,
    "failed": PAY_FAILED,
    "canceled": PAY_CANCELLED,
    "cancelled": PAY_CANCELLED,
}
OUTCOMES = ("succeeded", "failed", "canceled")


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """
    In-process card provider with a hosted checkout page (/mockpay/{psid}).
    Webhooks carry base64(HMAC-SHA256(body)) in `x-mockpay-signature`; the
    browser return carries a hex HMAC of the session id.
    """
    name = "mockpay"

    def __init__(self, secret: str = MOCK_SECRET):
        self.secret = secret
        # provider side state: psid -> session
        self._sessions: Dict[str, Dict[str, Any]] = {}

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def sign_return(self, psid: str) -> str:
        return hmac.new(
            self.secret.encode(), f"return:{psid}".encode(), hashlib.sha256
        ).hexdigest()

    def return_url(self, psid: str) -> str:
        return (
            f"/payments/mockpay/return?psid={psid}"
            f"&sig={self.sign_return(psid)}"
        )

    def session(self, psid: str) -> Optional[Dict[str, Any]]:
        return self._sessions.get(psid)

    async def create_session(self, payment, idempotency_key: str
                             ) -> CreateSessionResult:
        # same key -> same session
        psid = f"mock_{idempotency_key}"
        self._sessions.setdefault(psid, {
            "psid": psid,
            "payment_id": payment.id,
            "amount_minor": payment.amount_minor,
            "currency": payment.currency,
            "status": PAY_PENDING,
            "created_at": now_ts(),
        })
        return {"provider_ref": psid, "redirect_url": f"/mockpay/{psid}"}

    async def get_status(self, provider_ref: str) -> ProviderStatus:
        sess = self._sessions.get(provider_ref)
        status = sess["status"] if sess else PAY_PENDING
        return ProviderStatus(
            local_status=status, raw={"psid": provider_ref, "status": status}
        )

    def complete(self, psid: str, outcome: str) -> Tuple[bytes, Dict[str, str]]:
        """
        Settle the session on the provider side and build the signed webhook
        request announcing it. Returns (body, headers).
        """
        sess = self._sessions.get(psid)
        if sess is not None and sess["status"] == PAY_PENDING:
            sess["status"] = STATUS_BY_KIND.get(outcome, PAY_PENDING)
        event = {
            "id": f"evt_{uuid.uuid4().hex}",
            "type": f"payment.{outcome}",
            "payment_session_id": psid,
            "payment_id": sess["payment_id"] if sess else None,
            "created": now_ts(),
        }
        body = json.dumps(event).encode()
        return body, {
            "content-type": "application/json",
            "x-mockpay-signature": self.sign(body),
        }

    async def verify_callback(self, payload: bytes, headers: Mapping[str, str],
                              params: Mapping[str, str]) -> ProviderCallback:
        sig = headers.get("x-mockpay-signature")
        if not sig or not hmac.compare_digest(self.sign(payload), sig):
            raise ProviderAuthenticityFailure("invalid mockpay signature")
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ProviderAuthenticityFailure("invalid mockpay payload")
        if not isinstance(event, dict):
            raise ProviderAuthenticityFailure("invalid mockpay payload")

        psid = event.get("payment_session_id", "")
        if not psid:
            raise ProviderAuthenticityFailure("missing payment_session_id")
        kind = event.get("type", "").split(".")[-1]
        return ProviderCallback(
            provider_ref=psid,
            raw_status=kind,
            local_status=STATUS_BY_KIND.get(kind, PAY_PENDING),
            event_id=event.get("id"),
            payment_id=event.get("payment_id"),
            raw=event,
        )

    async def verify_return(self, payload: bytes, headers: Mapping[str, str],
                            params: Mapping[str, str]) -> ProviderCallback:
        psid = params.get("psid", "")
        sig = params.get("sig", "")
        if not psid or not sig or not ct_equal(sig, self.sign_return(psid)):
            raise ProviderAuthenticityFailure("invalid mockpay return")
        st = await self.get_status(psid)
        return ProviderCallback(
            provider_ref=psid,
            raw_status=st.local_status.lower(),
            local_status=st.local_status,
            raw=st.raw,
        )
