"""Gateway-facing request/response shapes."""

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field


class PayerInfo(BaseModel):
    """Payer details forwarded to the checkout preference."""

    name: str = "Cliente"
    surname: str = ""
    email: str | None = None
    identification_type: str = "DNI"
    identification_number: str | None = None


class PreferenceResult(BaseModel):
    """Checkout preference created at the gateway."""

    id: str
    init_point: str | None = None
    sandbox_init_point: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class PaymentRecord(BaseModel):
    """Authoritative payment state as reported by the gateway."""

    id: str
    status: str
    status_detail: str | None = None
    external_reference: str | None = None
    transaction_amount: Decimal | None = None
    preference_id: str | None = None
    payment_method_id: str | None = None
    date_approved: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)
