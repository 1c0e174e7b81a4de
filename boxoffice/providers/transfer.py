import json
from typing import Any, Dict, Mapping, Optional

from .base import (
    CreateSessionResult, PaymentAdapter, ProviderCallback, ProviderStatus,
)
from ..config import OPERATOR_TOKEN, TRANSFER_BANK
from ..errors import InvalidRequest, ProviderAuthenticityFailure
from ..helpers import ct_equal
from ..model.db import PAY_CANCELLED, PAY_FAILED, PAY_PAID, PAY_PENDING

OPERATOR_HEADER = "x-operator-token"
OPERATOR_STATUSES = (PAY_PAID, PAY_FAILED, PAY_CANCELLED)


def reference_for(payment_id: str) -> str:
    return f"TC-{payment_id[-6:].upper()}"


class ManualTransfer(PaymentAdapter):
    """
    Manual bank transfer. There is no hosted page: the buyer gets bank
    details plus a reference, and an operator confirms the money arrived.
    """
    name = "transfer"

    def __init__(self, operator_token: str = OPERATOR_TOKEN,
                 bank: Optional[Dict[str, str]] = None):
        self.operator_token = operator_token
        self.bank = dict(bank or TRANSFER_BANK)

    def session_extra(self, payment) -> Dict[str, Any]:
        return {
            "reference": reference_for(payment.id),
            "instructions": {
                **self.bank,
                "amountMinor": payment.amount_minor,
                "currency": payment.currency,
                "note": "Use the exact reference in the transfer comment.",
            },
        }

    async def create_session(self, payment, idempotency_key: str
                             ) -> CreateSessionResult:
        return {
            "provider_ref": reference_for(payment.id),
            "redirect_url": None,
            "extra": self.session_extra(payment),
        }

    async def get_status(self, provider_ref: str) -> ProviderStatus:
        # nobody to ask; only the operator moves it forward
        return ProviderStatus(
            local_status=PAY_PENDING, raw={"reference": provider_ref}
        )

    async def verify_callback(self, payload: bytes, headers: Mapping[str, str],
                              params: Mapping[str, str]) -> ProviderCallback:
        """
        Operator confirmation: {"paymentId": "...", "status": "PAID"}
        authenticated by the shared operator token.
        """
        token = headers.get(OPERATOR_HEADER) or ""
        if not token or not ct_equal(token, self.operator_token):
            raise ProviderAuthenticityFailure("invalid operator token")
        try:
            body = json.loads(payload.decode() or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise InvalidRequest("invalid JSON body")
        if not isinstance(body, dict):
            raise InvalidRequest("body must be a JSON object")

        payment_id = str(body.get("paymentId") or "").strip()
        if not payment_id:
            raise InvalidRequest("paymentId is required")
        status = str(body.get("status") or PAY_PAID).upper()
        if status not in OPERATOR_STATUSES:
            raise InvalidRequest(f"status must be one of {OPERATOR_STATUSES}")
        return ProviderCallback(
            provider_ref=reference_for(payment_id),
            raw_status=status,
            local_status=status,
            payment_id=payment_id,
            raw=body,
        )
