import hashlib
import hmac
import json
from typing import Any, Dict, Mapping
from urllib.parse import parse_qsl

import httpx

from .base import (
    CreateSessionResult, PaymentAdapter, ProviderCallback, ProviderStatus,
)
from ..config import (
    FLOW_API_KEY, FLOW_BASE_URL, FLOW_SECRET_KEY, PUBLIC_BASE_URL,
)
from ..errors import ProviderAuthenticityFailure, ProviderUnavailable
from ..helpers import ct_equal
from ..logs import get_logger
from ..model.db import PAY_CANCELLED, PAY_FAILED, PAY_PAID, PAY_PENDING

log = get_logger("flow")

# 1 pending, 2 paid, 3 rejected, 4 cancelled
FLOW_STATUS = {
    1: PAY_PENDING,
    2: PAY_PAID,
    3: PAY_FAILED,
    4: PAY_CANCELLED,
}


def sign_params(params: Mapping[str, str], secret_key: str) -> str:
    """HMAC-SHA256 (hex) over key+value pairs in alphabetical key order."""
    to_sign = "".join(f"{k}{params[k]}" for k in sorted(params))
    return hmac.new(
        secret_key.encode(), to_sign.encode(), hashlib.sha256
    ).hexdigest()


def map_status(code: Any) -> str:
    try:
        return FLOW_STATUS.get(int(code), PAY_PENDING)
    except (TypeError, ValueError):
        return PAY_PENDING


class Flow(PaymentAdapter):
    """Bank-transfer redirect provider (flow.cl)."""
    name = "flow"

    def __init__(self, http: httpx.AsyncClient, *,
                 api_key: str = FLOW_API_KEY,
                 secret_key: str = FLOW_SECRET_KEY,
                 base_url: str = FLOW_BASE_URL,
                 public_base_url: str = PUBLIC_BASE_URL):
        self.http = http
        self.api_key = api_key
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.public_base_url = public_base_url.rstrip("/")

    def _signed(self, params: Dict[str, Any]) -> Dict[str, str]:
        p = {k: str(v) for k, v in params.items()}
        p["s"] = sign_params(p, self.secret_key)
        return p

    async def _call(self, method: str, path: str,
                    params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key or not self.secret_key:
            raise ProviderUnavailable("flow is not configured")
        url = f"{self.base_url}{path}"
        signed = self._signed(params)
        try:
            if method == "GET":
                r = await self.http.get(url, params=signed)
            else:
                r = await self.http.post(url, data=signed)
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"flow {path}: {e}") from e
        if r.status_code >= 400:
            raise ProviderUnavailable(
                f"flow {path} failed: {r.status_code} {r.text[:200]}"
            )
        try:
            return r.json()
        except ValueError as e:
            raise ProviderUnavailable(f"flow {path}: invalid JSON") from e

    async def create_session(self, payment, idempotency_key: str
                             ) -> CreateSessionResult:
        data = await self._call("POST", "/payment/create", {
            "apiKey": self.api_key,
            "commerceOrder": payment.id,
            "subject": f"Tickets {payment.event_title}".strip()[:255],
            "currency": payment.currency.upper(),
            "amount": int(payment.amount_minor),
            "email": payment.buyer_email,
            "urlReturn": f"{self.public_base_url}/payments/flow/return",
            "urlConfirmation": f"{self.public_base_url}/payments/flow/webhook",
            "optional": json.dumps(
                {"holdId": payment.hold_id, "idempotencyKey": idempotency_key},
                separators=(",", ":"),
            ),
        })
        url = str(data.get("url") or "")
        token = str(data.get("token") or "")
        if not url or not token:
            raise ProviderUnavailable("flow create: response without url/token")
        return {"provider_ref": token, "redirect_url": f"{url}?token={token}"}

    async def get_status(self, provider_ref: str) -> ProviderStatus:
        data = await self._call("GET", "/payment/getStatus", {
            "apiKey": self.api_key,
            "token": provider_ref,
        })
        return ProviderStatus(
            local_status=map_status(data.get("status")), raw=data
        )

    async def verify_callback(self, payload: bytes, headers: Mapping[str, str],
                              params: Mapping[str, str]) -> ProviderCallback:
        # POST x-www-form-urlencoded token=..., GET ?token=... is accepted too
        fields: Dict[str, str] = dict(params)
        if payload:
            try:
                fields.update(parse_qsl(payload.decode()))
            except UnicodeDecodeError:
                raise ProviderAuthenticityFailure("invalid flow payload")
        token = (fields.get("token") or "").strip()
        if not token:
            raise ProviderAuthenticityFailure("missing flow token")

        sig = fields.get("s")
        if sig:
            unsigned = {k: v for k, v in fields.items() if k != "s"}
            if not ct_equal(sig, sign_params(unsigned, self.secret_key)):
                raise ProviderAuthenticityFailure("invalid flow signature")

        # the token alone proves nothing: the status we act on is always the
        # one Flow reports on our own signed request
        st = await self.get_status(token)
        payment_id = str(st.raw.get("commerceOrder") or "").strip() or None
        return ProviderCallback(
            provider_ref=token,
            raw_status=str(st.raw.get("status", "")),
            local_status=st.local_status,
            payment_id=payment_id,
            raw=st.raw,
        )
