from sqlalchemy import Column, String, ForeignKey, JSON, Uuid
from sqlalchemy.orm import relationship

from app.core.database import Base


class AuditLog(Base):
    __tablename__ = "audit_log"

    # Actor information
    actor_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)  # Null for payment processor actions

    # Action details
    action = Column(String, nullable=False)  # e.g., "create", "approve", "cancel", "mark_paid"
    entity = Column(String, nullable=False)  # e.g., "booking"
    entity_id = Column(String, nullable=True, index=True)

    # Change tracking
    diff = Column(JSON, nullable=True)  # {"from": ..., "to": ...}

    # Relationships
    actor = relationship("User", foreign_keys=[actor_user_id], back_populates="audit_logs_as_actor")

    def __repr__(self):
        return f"<AuditLog(actor_user_id={self.actor_user_id}, action={self.action}, entity={self.entity}, entity_id={self.entity_id})>"
