from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class RegistrationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_id: str
    vehicle_id: str
    user_id: str
    payment_status: str
    stripe_payment_id: Optional[str] = None
    qr_code_data: Optional[str] = None
    checked_in: bool
    checked_in_at: Optional[datetime] = None
    checked_in_by: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime


class EventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    org_id: str
    name: str
    location: str
    date: datetime
    capacity: int
    vendor_price: int
    created_at: datetime


class VehicleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    title: str
    make: str
    model: str
    year: int
    vin: Optional[str] = None
    sale_status: Optional[str] = None
    payment_status: Optional[str] = None


class ReserveReq(BaseModel):
    event_id: str
    vehicle_id: str
    user_id: str


class StartPaymentReq(BaseModel):
    user_id: str
    amount: int = Field(ge=0)


class ResendConfirmationReq(BaseModel):
    user_id: str


class ConfirmationOut(BaseModel):
    registration_id: str
    sent: bool


class PaymentIntentOut(BaseModel):
    registration: RegistrationOut
    payment_id: str
    client_secret: Optional[str] = None
    amount: int
    currency: str


class CheckInReq(BaseModel):
    qr_code_data: str
    checked_in_by: str
    event_id: Optional[str] = None


class PreviewReq(BaseModel):
    qr_code_data: str


class PreviewOut(BaseModel):
    registration: RegistrationOut
    event: Optional[EventOut] = None
    vehicle: Optional[VehicleOut] = None
    already_checked_in: bool


class AnalyticsOut(BaseModel):
    vehicle_id: str
    views: int
    shares: int


class CreateEventReq(BaseModel):
    name: str
    date: datetime
    capacity: int = Field(gt=0)
    vendor_price: int = Field(default=0, ge=0)
    location: str = ""
    org_id: str = "org_1"


class CreateVehicleReq(BaseModel):
    user_id: str
    title: str
    make: str = ""
    model: str = ""
    year: int = 0
    vin: Optional[str] = None


class CreateUserReq(BaseModel):
    id: str
    email: str
    name: str = ""


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str


class OccupancyOut(BaseModel):
    event_id: str
    capacity: int
    occupancy: int
    remaining: int


class SweepOut(BaseModel):
    reclaimed: int
    scanned: int
    errors: int
