from sqlalchemy import Column, String, Integer, ForeignKey, Text, Enum, Uuid
from sqlalchemy.orm import relationship
import enum

from app.core.database import Base


class PaymentType(str, enum.Enum):
    CHARGE = "charge"
    TRANSFER = "transfer"
    REFUND = "refund"


class PaymentStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Payment(Base):
    """One row per money movement attempt against Stripe.

    A FAILED refund is the record operators reconcile by hand: the booking
    itself is already CANCELLED.
    """
    __tablename__ = "payments"

    booking_id = Column(Uuid(as_uuid=True), ForeignKey("bookings.id"), nullable=False, index=True)

    # Payment details
    type = Column(Enum(PaymentType), nullable=False)
    status = Column(Enum(PaymentStatus), nullable=False)
    amount_cents = Column(Integer, nullable=False)  # Amount in cents
    stripe_reference = Column(String, nullable=True)  # Payment intent, transfer or refund ID
    failure_reason = Column(Text, nullable=True)

    # Relationships
    booking = relationship("Booking", back_populates="payments")

    def __repr__(self):
        return f"<Payment(booking_id={self.booking_id}, amount_cents={self.amount_cents}, type={self.type}, status={self.status})>"
