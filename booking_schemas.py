from datetime import date, datetime, time, timezone
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator
from typing import Annotated, List, Literal, Optional


BookingStatus = Literal[
    "pending", "confirmed", "active", "completed", "cancelled", "payment_failed", "refunded"
]
BookingPaymentStatus = Literal["pending", "paid", "failed", "refunded"]
PaymentStatus = Literal["pending", "processing", "succeeded", "failed", "cancelled", "refunded"]
InsuranceTier = Literal["basic", "premium", "full"]
Currency = Literal["usd", "eur", "gbp"]


def to_naive_utc(value):
    """
    Accept ISO-8601 dates or datetimes (strings or objects) and normalise them to naive UTC
    datetimes, which is how they are stored.
    """
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError("must be an ISO-8601 date")
    if isinstance(value, date) and not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if isinstance(value, datetime) and value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


IsoDateTime = Annotated[datetime, BeforeValidator(to_naive_utc)]


class DriverInfo(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=2)
    license_number: str = Field(min_length=1)
    license_expiry: IsoDateTime
    phone: str = Field(pattern=r"^\+?[0-9][0-9 ()\-]{6,19}$")
    age: int = Field(ge=18, le=100)


class Insurance(BaseModel):
    type: InsuranceTier = "basic"
    # accepted for compatibility with older clients; the configured tier table is authoritative
    cost: Optional[float] = Field(default=None, ge=0)


class BookingCreate(BaseModel):
    """Validated input for the booking-creation operation."""
    model_config = ConfigDict(str_strip_whitespace=True)

    vehicle_id: str = Field(min_length=1)
    start_date: IsoDateTime
    end_date: IsoDateTime
    pickup_location: str = Field(min_length=1)
    return_location: str = Field(min_length=1)
    driver: DriverInfo
    special_requests: Optional[str] = Field(default=None, max_length=500)
    insurance: Insurance = Field(default_factory=Insurance)

    @model_validator(mode="after")
    def _end_after_start(self):
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class DateChange(BaseModel):
    start_date: IsoDateTime
    end_date: IsoDateTime
    expected_version: Optional[int] = None

    @model_validator(mode="after")
    def _end_after_start(self):
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
    expected_version: Optional[int] = None


class StatusOverride(BaseModel):
    status: BookingStatus
    note: Optional[str] = None
    expected_version: Optional[int] = None


class PaymentIntentRequest(BaseModel):
    booking_id: str
    currency: Optional[Currency] = None


class RefundRequest(BaseModel):
    payment_id: str
    amount: float = Field(gt=0)
    reason: Optional[str] = None


class GatewayEvent(BaseModel):
    """A verified gateway callback reduced to what the core needs."""
    type: Literal["succeeded", "failed"]
    gateway_id: str
    failure_reason: Optional[str] = None
    event_id: Optional[str] = None


# ---- records returned by the core ----

class VehicleRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: Optional[str] = None
    name: str
    daily_rate: float
    availability: bool
    active: bool


class BookingRecord(BaseModel):
    id: str
    vehicle_id: str
    renter_id: Optional[str]
    start_date: datetime
    end_date: datetime
    total_days: int
    total_amount: float
    status: BookingStatus
    payment_status: BookingPaymentStatus
    pickup_location: str
    return_location: str
    driver: DriverInfo
    insurance: Insurance
    special_requests: Optional[str] = None
    cancellation_reason: Optional[str] = None
    admin_note: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    refund_amount: float = 0.0
    version: int


class PaymentRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    payer_id: Optional[str]
    amount: float
    currency: str
    status: PaymentStatus
    gateway_id: Optional[str] = None
    client_secret: Optional[str] = None
    refunded_amount: float = 0.0
    refund_reason: Optional[str] = None
    failure_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    version: int


class BookedInterval(BaseModel):
    booking_id: str
    start_date: datetime
    end_date: datetime
    status: BookingStatus


class RefundResult(BaseModel):
    refund_id: Optional[str]
    payment: PaymentRecord
    booking: BookingRecord
    fully_refunded: bool


class CheckoutSession(BaseModel):
    payment: PaymentRecord
    client_secret: Optional[str]


class VehicleBookings(BaseModel):
    vehicle_id: str
    intervals: List[BookedInterval]
