from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Optional
from datetime import datetime
from enum import Enum
import uuid

from app.core.timezone_utils import ensure_utc
from app.models.booking import BookingStatus


class LessonAction(str, Enum):
    ADD_MEETING_LINK = "add_meeting_link"
    CONFIRM_START = "confirm_start"
    CONFIRM_END = "confirm_end"
    VERIFY_COMPLETE = "verify_complete"
    CANCEL = "cancel"
    DISPUTE = "dispute"


class BookingCreateRequest(BaseModel):
    tutor_profile_id: uuid.UUID = Field(..., description="Tutor profile ID")
    subject: str = Field(..., min_length=1, description="Subject for the session")
    start_time: datetime = Field(..., description="Session start time")
    end_time: datetime = Field(..., description="Session end time")
    notes: Optional[str] = Field(None, description="Additional notes for the tutor")


class BookingStatusUpdateRequest(BaseModel):
    status: BookingStatus = Field(..., description="Requested status: PENDING, REJECTED or CANCELLED")
    tutor_message: Optional[str] = Field(None, description="Note from the tutor on approval or rejection")
    reason: Optional[str] = Field(None, description="Cancellation reason")


class LessonActionRequest(BaseModel):
    action: LessonAction = Field(..., description="Lesson action")
    meeting_link: Optional[str] = Field(None, description="Meeting URL for add_meeting_link")
    meeting_notes: Optional[str] = Field(None, description="Session notes for confirm_end")
    reason: Optional[str] = Field(None, description="Reason for cancel or dispute")


class CheckoutRequest(BaseModel):
    booking_id: uuid.UUID = Field(..., description="Booking to pay for")


class CheckoutResponse(BaseModel):
    session_id: str
    url: Optional[str] = None


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    student_id: uuid.UUID
    tutor_profile_id: uuid.UUID
    subject: str
    notes: Optional[str] = None
    start_at: datetime
    end_at: datetime
    status: BookingStatus
    price_cents: int
    platform_fee_cents: int
    tutor_earnings_cents: int
    student_confirmed_start: bool
    tutor_confirmed_start: bool
    student_confirmed_end: bool
    tutor_confirmed_end: bool
    approved_at: Optional[datetime] = None
    lesson_started_at: Optional[datetime] = None
    lesson_ended_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    payment_released_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    tutor_message: Optional[str] = None
    dispute_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    meeting_link: Optional[str] = None
    meeting_notes: Optional[str] = None
    is_paid: bool
    payment_reference: Optional[str] = None
    transfer_reference: Optional[str] = None
    refund_reference: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator(
        "start_at", "end_at", "approved_at", "lesson_started_at", "lesson_ended_at", "completed_at",
        "payment_released_at", "disputed_at", "cancelled_at", "created_at", "updated_at"
    )
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class Envelope(BaseModel):
    success: bool = True
    data: Any = None
    message: Optional[str] = None
