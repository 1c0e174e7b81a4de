from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class HoldItemIn(_CamelModel):
    ticket_type_id: str = Field(alias="ticketTypeId")
    qty: int

    @field_validator("ticket_type_id")
    @classmethod
    def strip_ticket_type_id(cls, v):
        return v.strip()


class HoldCreateRequest(_CamelModel):
    event_id: str = Field(alias="eventId")
    items: List[HoldItemIn]
    hold_id: Optional[str] = Field(default=None, alias="holdId")
    ttl_seconds: Optional[int] = Field(default=None, alias="ttlSeconds")


class PaymentCreateRequest(_CamelModel):
    hold_id: str = Field(alias="holdId")
    buyer_name: str = Field(alias="buyerName")
    buyer_email: str = Field(alias="buyerEmail")
    owner_email: Optional[str] = Field(default=None, alias="ownerEmail")
    # accepted for compatibility, never trusted: the server prices the hold
    amount_minor: Optional[int] = Field(default=None, alias="amountMinor")


class PaymentCreateResponse(_CamelModel):
    ok: bool = True
    status: str
    payment_id: str = Field(alias="paymentId")
    hold_id: str = Field(alias="holdId")
    amount_minor: int = Field(alias="amountMinor")
    currency: str
    redirect_url: Optional[str] = Field(default=None, alias="redirectUrl")
    reference: Optional[str] = None
    instructions: Optional[dict] = None
    order_id: Optional[str] = Field(default=None, alias="orderId")
