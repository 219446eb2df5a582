from sqlalchemy import Column, String, Uuid

from app.core.database import Base


class StripeWebhookEvent(Base):
    __tablename__ = "stripe_webhook_events"

    # Stripe event ID; a replayed delivery hits the unique constraint
    stripe_event_id = Column(String, unique=True, nullable=False)
    event_type = Column(String, nullable=False)

    # Booking the event resolved to, if any
    booking_id = Column(Uuid(as_uuid=True), nullable=True)

    def __repr__(self):
        return f"<StripeWebhookEvent(stripe_event_id={self.stripe_event_id}, event_type={self.event_type})>"
