from datetime import datetime, UTC

from sqlalchemy import Column, DateTime, String
from sqlalchemy.orm import relationship

from boardroom.database import Base


class User(Base):
    """A person known to the identity provider; user_id is the token subject."""

    __tablename__ = "users"

    user_id = Column(String(64), primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )

    memberships = relationship(
        "CompanyMember",
        back_populates="user",
        cascade="all, delete-orphan",
    )

    @property
    def display_name(self) -> str:
        parts = [part for part in (self.first_name, self.last_name) if part]
        if parts:
            return " ".join(parts)
        return self.email or self.user_id
