from datetime import datetime, UTC
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from boardroom.database import Base
from boardroom.models.company import generate_id


class MeetingStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return not _STATUS_TRANSITIONS[self]

    def can_transition_to(self, target: "MeetingStatus") -> bool:
        """Return whether the lifecycle allows moving from this status to target.

        Re-applying the current status is always allowed.
        """
        return target == self or target in _STATUS_TRANSITIONS[self]


_STATUS_TRANSITIONS = {
    MeetingStatus.SCHEDULED: frozenset(
        {MeetingStatus.IN_PROGRESS, MeetingStatus.CANCELLED}
    ),
    MeetingStatus.IN_PROGRESS: frozenset({MeetingStatus.COMPLETED}),
    MeetingStatus.COMPLETED: frozenset(),
    MeetingStatus.CANCELLED: frozenset(),
}


class Meeting(Base):
    __tablename__ = "meetings"

    id = Column(String(36), primary_key=True, default=generate_id)
    company_id = Column(
        String(36),
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(
        String(20), nullable=False, default=MeetingStatus.SCHEDULED.value, index=True
    )
    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )

    company = relationship("Company", back_populates="meetings")
    decisions = relationship(
        "Decision",
        back_populates="meeting",
        order_by="Decision.order_index",
        cascade="all, delete-orphan",
    )
    attendees = relationship(
        "MeetingAttendee",
        back_populates="meeting",
        cascade="all, delete-orphan",
    )

    @property
    def meeting_status(self) -> MeetingStatus:
        return MeetingStatus(self.status)

    def __repr__(self) -> str:
        return f"Meeting(id={self.id!r}, status={self.status!r})"


class Decision(Base):
    """A motion tabled in a meeting that attendees vote on."""

    __tablename__ = "decisions"

    id = Column(String(36), primary_key=True, default=generate_id)
    meeting_id = Column(
        String(36),
        ForeignKey("meetings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    order_index = Column(Integer, nullable=False, default=0)
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )

    meeting = relationship("Meeting", back_populates="decisions")
    votes = relationship(
        "Vote",
        back_populates="decision",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class MeetingAttendee(Base):
    """Durable roll-call attendance, one row per (meeting, company member)."""

    __tablename__ = "meeting_attendees"
    __table_args__ = (
        UniqueConstraint("meeting_id", "member_id", name="uq_meeting_attendees_member"),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    meeting_id = Column(
        String(36),
        ForeignKey("meetings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    member_id = Column(
        String(36),
        ForeignKey("company_members.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    is_present = Column(Boolean, nullable=False, default=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )

    meeting = relationship("Meeting", back_populates="attendees")
    member = relationship("CompanyMember", back_populates="attendance")
