"""API request/response schemas for booking pipeline endpoints."""

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class BookingCreateRequest(BaseModel):
    """Booking request submitted by a client for one fundi."""

    fundi_id: str = Field(min_length=1)
    service: str = Field(min_length=1)
    description: str | None = None
    scheduled_date: date
    scheduled_time: str = Field(pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    location: str = Field(min_length=1)
    estimated_hours: int = Field(gt=0, le=24)
    # Only honoured for admin callers booking on a client's behalf.
    client_id: str | None = None


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    client_id: str
    fundi_id: str
    service: str
    description: str | None = None
    scheduled_date: date
    scheduled_time: str
    location: str
    total_amount: int
    status: str
    payment_status: str
    payment_method: str | None = None
    payment_reference: str | None = None
    payment_completed_at: datetime | None = None


class BookingCreatedResponse(BaseModel):
    booking: BookingResponse
    notification_status: str


class CancelRequest(BaseModel):
    reason: str | None = None


class RefundRequest(BaseModel):
    reason: str | None = None


class PaymentInitiateRequest(BaseModel):
    payment_method: Literal["paystack", "mpesa", "cash"]
    callback_url: str | None = None


class PaymentInitiationResponse(BaseModel):
    """Successful initiation, or the already-paid short circuit."""

    status: str
    booking_id: str
    payment_status: str
    payment_url: str | None = None
    reference: str | None = None
    payment_method: str | None = None
    attempt_number: int | None = None
    max_retries: int | None = None
    can_retry: bool | None = None
    message: str | None = None


class SweepResponse(BaseModel):
    status: str = "success"
    processed: int
    total_found: int
    released_payments: int
    results: list[dict]
