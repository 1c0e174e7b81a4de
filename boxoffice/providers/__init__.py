from typing import Dict, Mapping

import httpx

from .base import (
    CreateSessionResult, PaymentAdapter, ProviderCallback, ProviderStatus,
)
from .flow import Flow
from .mockpay import MockPay
from .transfer import ManualTransfer
from ..errors import UnknownProvider


def build_registry(http: httpx.AsyncClient) -> Dict[str, PaymentAdapter]:
    adapters = (MockPay(), Flow(http), ManualTransfer())
    return {a.name: a for a in adapters}


def get_adapter(registry: Mapping[str, PaymentAdapter],
                name: str) -> PaymentAdapter:
    adapter = registry.get((name or "").lower())
    if adapter is None:
        raise UnknownProvider(f"unknown payment provider {name!r}")
    return adapter


__all__ = [
    "CreateSessionResult", "PaymentAdapter", "ProviderCallback",
    "ProviderStatus", "Flow", "MockPay", "ManualTransfer",
    "build_registry", "get_adapter",
]
