"""Booking domain schemas - Pydantic models for validation"""

import datetime as dt
from typing import Optional

from pydantic import BaseModel, field_validator, model_validator


class CheckoutRequest(BaseModel):
    """Schema for starting a paid booking"""

    mentorId: str
    serviceId: str
    date: dt.date
    time: Optional[dt.time] = None
    clientId: Optional[str] = None
    guestName: Optional[str] = None
    guestEmail: Optional[str] = None

    @field_validator("guestEmail")
    @classmethod
    def normalize_email(cls, v):
        if v is None:
            return v
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("guestEmail must be an email address")
        return v

    @field_validator("guestName")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if v else v

    @model_validator(mode="after")
    def check_client_identity(self):
        if self.clientId:
            if self.guestName or self.guestEmail:
                raise ValueError("Provide either clientId or guestName/guestEmail, not both")
        elif not (self.guestName and self.guestEmail):
            raise ValueError("Guest bookings need both guestName and guestEmail")
        return self


class CheckoutResponse(BaseModel):
    bookingId: str
    checkoutSessionId: str
    checkoutUrl: Optional[str] = None
    schedulingUrl: Optional[str] = None


class BookingResponse(BaseModel):
    """Schema for booking response"""

    id: str
    mentorId: str
    serviceId: Optional[str]
    clientId: Optional[str]
    guestName: Optional[str]
    guestEmail: Optional[str]
    date: dt.date
    time: Optional[dt.time]
    status: str
    paymentReference: Optional[str]
    schedulingEventReference: Optional[str]
    meetingUrl: Optional[str]
    created_at: Optional[dt.datetime] = None
