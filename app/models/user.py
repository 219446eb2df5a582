from sqlalchemy import Column, String, Enum
from sqlalchemy.orm import relationship
import enum

from app.core.database import Base


class UserRole(str, enum.Enum):
    STUDENT = "student"
    TUTOR = "tutor"
    ADMIN = "admin"


class User(Base):
    __tablename__ = "users"

    # Core user fields (owned by the identity provider)
    role = Column(Enum(UserRole), default=UserRole.STUDENT, nullable=False)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    timezone = Column(String, default="UTC", nullable=False)

    # Relationships
    tutor_profile = relationship("TutorProfile", back_populates="user", uselist=False)
    bookings_as_student = relationship("Booking", foreign_keys="Booking.student_id", back_populates="student")
    audit_logs_as_actor = relationship("AuditLog", foreign_keys="AuditLog.actor_user_id", back_populates="actor")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"
