from datetime import datetime, UTC
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import relationship

from boardroom.database import Base


def generate_id() -> str:
    return str(uuid4())


class MemberRole(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    BOARD_MEMBER = "BOARD_MEMBER"
    OBSERVER = "OBSERVER"

    @property
    def is_privileged(self) -> bool:
        """Whether this role may run administrative actions such as status changes."""
        return self in _PRIVILEGED_ROLES

    @classmethod
    def coerce(cls, value) -> "MemberRole | None":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return None


_PRIVILEGED_ROLES = frozenset({MemberRole.OWNER, MemberRole.ADMIN})


class Company(Base):
    __tablename__ = "companies"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(255), nullable=False)
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )

    members = relationship(
        "CompanyMember",
        back_populates="company",
        cascade="all, delete-orphan",
    )
    meetings = relationship(
        "Meeting",
        back_populates="company",
        cascade="all, delete-orphan",
    )


class CompanyMember(Base):
    __tablename__ = "company_members"
    __table_args__ = (
        UniqueConstraint("user_id", "company_id", name="uq_company_members_user"),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(
        String(64),
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    company_id = Column(
        String(36),
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role = Column(String(32), nullable=False, default=MemberRole.BOARD_MEMBER.value)
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )

    user = relationship("User", back_populates="memberships")
    company = relationship("Company", back_populates="members")
    attendance = relationship(
        "MeetingAttendee",
        back_populates="member",
        cascade="all, delete-orphan",
    )

    @property
    def member_role(self) -> MemberRole | None:
        return MemberRole.coerce(self.role)
