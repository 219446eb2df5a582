from sqlalchemy import Column, String, DateTime, Integer, Boolean, ForeignKey, Text, Enum, Index, Uuid
from sqlalchemy.orm import relationship
import enum

from app.core.database import Base


class BookingStatus(str, enum.Enum):
    REQUESTED = "REQUESTED"
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_REVIEW = "AWAITING_REVIEW"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    DISPUTED = "DISPUTED"


# Statuses that still occupy the tutor's calendar
NON_TERMINAL_STATUSES = frozenset({
    BookingStatus.REQUESTED,
    BookingStatus.PENDING,
    BookingStatus.CONFIRMED,
    BookingStatus.IN_PROGRESS,
    BookingStatus.AWAITING_REVIEW,
})

TERMINAL_STATUSES = frozenset(set(BookingStatus) - NON_TERMINAL_STATUSES)


class Booking(Base):
    __tablename__ = "bookings"

    # Parties (immutable once created)
    student_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    tutor_profile_id = Column(Uuid(as_uuid=True), ForeignKey("tutor_profiles.id"), nullable=False)

    # Session details
    subject = Column(String, nullable=False)
    notes = Column(Text, nullable=True)
    start_at = Column(DateTime(timezone=True), nullable=False)  # UTC
    end_at = Column(DateTime(timezone=True), nullable=False)  # UTC

    status = Column(Enum(BookingStatus), default=BookingStatus.REQUESTED, nullable=False)

    # Money, computed once at creation
    price_cents = Column(Integer, nullable=False)
    platform_fee_cents = Column(Integer, nullable=False)
    tutor_earnings_cents = Column(Integer, nullable=False)

    # Dual confirmation flags, never reset once true
    student_confirmed_start = Column(Boolean, default=False, nullable=False)
    tutor_confirmed_start = Column(Boolean, default=False, nullable=False)
    student_confirmed_end = Column(Boolean, default=False, nullable=False)
    tutor_confirmed_end = Column(Boolean, default=False, nullable=False)

    # Lifecycle timestamps, each set once by the transition that produces it
    approved_at = Column(DateTime(timezone=True), nullable=True)
    lesson_started_at = Column(DateTime(timezone=True), nullable=True)
    lesson_ended_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    payment_released_at = Column(DateTime(timezone=True), nullable=True)
    disputed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # Free text
    tutor_message = Column(Text, nullable=True)  # Approval/rejection note
    dispute_reason = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    meeting_link = Column(String, nullable=True)  # Zoom, Google Meet, etc.
    meeting_notes = Column(Text, nullable=True)

    # Stripe linkage
    checkout_session_id = Column(String, nullable=True)
    payment_reference = Column(String, nullable=True)  # Payment intent ID
    transfer_reference = Column(String, nullable=True)
    refund_reference = Column(String, nullable=True)

    # Relationships
    student = relationship("User", foreign_keys=[student_id], back_populates="bookings_as_student")
    tutor_profile = relationship("TutorProfile", back_populates="bookings")
    payments = relationship("Payment", back_populates="booking")

    __table_args__ = (
        Index("idx_bookings_tutor_profile_start", "tutor_profile_id", "start_at"),
    )

    @property
    def is_paid(self) -> bool:
        return self.payment_reference is not None

    def __repr__(self):
        return f"<Booking(id={self.id}, student_id={self.student_id}, tutor_profile_id={self.tutor_profile_id}, start_at={self.start_at}, status={self.status})>"
