"""API request/response schemas for billing endpoints."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from clubpay.services.gateway.schemas import PayerInfo


class ChargeCreateRequest(BaseModel):
    """Charge creation payload from administrators."""

    concept: str = Field(min_length=1, max_length=255)
    amount: Decimal = Field(gt=0)
    unit_id: int
    subunit_id: int | None = None
    issue_date: date | None = None
    due_date: date | None = None
    notes: str | None = None


class ChargeStatusUpdate(BaseModel):
    status: Literal["Pending", "Paid", "Overdue", "Cancelled"]
    receipt_reference: str | None = None
    notes: str | None = None


class ChargeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    concept: str
    amount: Decimal
    issue_date: date
    due_date: date | None = None
    status: str
    receipt_reference: str | None = None
    notes: str | None = None
    gateway_preference_id: str | None = None
    paid_at: datetime | None = None
    unit_id: int
    subunit_id: int | None = None


class PaymentAttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    charge_id: int
    amount: Decimal
    status: str
    gateway_payment_id: str | None = None
    gateway_preference_id: str | None = None
    payment_method: str
    paid_at: datetime | None = None
    created_at: datetime | None = None


class PayRequest(BaseModel):
    """Body of `POST /charges/{id}/pay`."""

    payer: PayerInfo


class PreferenceResponse(BaseModel):
    id: str
    init_point: str | None = None
    sandbox_init_point: str | None = None


class InitiatePaymentResponse(BaseModel):
    preference: PreferenceResponse
    attempt: PaymentAttemptResponse


class GatewayPaymentResponse(BaseModel):
    id: str
    status: str
    status_detail: str | None = None
    external_reference: str | None = None
    transaction_amount: Decimal | None = None
    date_approved: str | None = None


class VerifyPaymentResponse(BaseModel):
    """Gateway truth for one payment plus the local attempt, when recorded."""

    payment: GatewayPaymentResponse
    attempt: PaymentAttemptResponse | None = None


class ChargePaymentsResponse(BaseModel):
    charge: ChargeResponse
    payments: list[PaymentAttemptResponse]


class PublicLinkCreate(BaseModel):
    expires_at: datetime | None = None


class PublicLinkToggle(BaseModel):
    is_active: bool


class PublicLinkResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    charge_id: int
    slug: str
    is_active: bool
    expires_at: datetime | None = None
    access_count: int
    created_at: datetime | None = None
    public_url: str | None = None


class PublicChargeResponse(BaseModel):
    """What an unauthenticated payer sees for a public link."""

    charge: ChargeResponse
    link: PublicLinkResponse
    public_url: str


class AccessCountResponse(BaseModel):
    access_count: int


class PublicLinkStats(BaseModel):
    total_links: int
    active_links: int
    inactive_links: int
    total_accesses: int


class StatusBucket(BaseModel):
    count: int
    amount: Decimal


class ChargeMetrics(BaseModel):
    by_status: dict[str, StatusBucket]
    total_charges: int
    collected_amount: Decimal
    outstanding_amount: Decimal
    overdue_amount: Decimal
    collection_rate: float


class NotificationRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    resource_id: str
    topic: str
    processing_status: str
    processing_error: str | None = None
    transaction_id: str | None = None
    payment_status: str | None = None
    raw_payload: dict[str, Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
