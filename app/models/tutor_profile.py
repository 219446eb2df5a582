from sqlalchemy import Column, String, Text, Integer, Boolean, ForeignKey, Uuid
from sqlalchemy.orm import relationship

from app.core.database import Base


class TutorProfile(Base):
    __tablename__ = "tutor_profiles"

    # Foreign key to user
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, unique=True)

    # Profile information
    bio = Column(Text, nullable=True)
    hourly_rate_cents = Column(Integer, nullable=False)  # Rate in cents
    profile_complete = Column(Boolean, default=False, nullable=False)

    # Stripe Connect payout account
    stripe_account_id = Column(String, nullable=True)

    # Bumped under lock whenever a booking is created for this tutor, so the
    # conflict check and insert are serialized per tutor
    booking_lock_version = Column(Integer, default=0, nullable=False)

    # Relationships
    user = relationship("User", back_populates="tutor_profile")
    bookings = relationship("Booking", back_populates="tutor_profile")

    def __repr__(self):
        return f"<TutorProfile(user_id={self.user_id}, hourly_rate_cents={self.hourly_rate_cents})>"
