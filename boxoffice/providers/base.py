from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, TypedDict, TYPE_CHECKING

from ..model.db import PAY_PENDING

if TYPE_CHECKING:
    from ..model.payments import PaymentRecord


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict, total=False):
    provider_ref: str
    redirect_url: Optional[str]
    # extra fields passed through to the create response
    # (e.g. transfer reference and bank instructions)
    extra: Dict[str, Any]


@dataclass
class ProviderStatus:
    local_status: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderCallback:
    provider_ref: str
    raw_status: str = ""
    local_status: str = PAY_PENDING
    event_id: Optional[str] = None
    # set when the provider echoes our payment id back
    payment_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentAdapter(ABC):
    """
    One adapter per provider. Everything provider specific (signatures,
    status codes, HTTP shapes) stays behind this interface.
    """
    name: str = ""

    @abstractmethod
    async def create_session(
            self, payment: "PaymentRecord", idempotency_key: str
    ) -> CreateSessionResult: ...

    @abstractmethod
    async def get_status(self, provider_ref: str) -> ProviderStatus: ...

    # webhook: raises ProviderAuthenticityFailure when it cannot be trusted
    @abstractmethod
    async def verify_callback(
            self, payload: bytes, headers: Mapping[str, str],
            params: Mapping[str, str]
    ) -> ProviderCallback: ...

    # browser return; by default it is trusted no more than a webhook
    async def verify_return(
            self, payload: bytes, headers: Mapping[str, str],
            params: Mapping[str, str]
    ) -> ProviderCallback:
        return await self.verify_callback(payload, headers, params)

    def session_extra(self, payment: "PaymentRecord") -> Dict[str, Any]:
        """Provider specific fields for a reused session."""
        return {}
