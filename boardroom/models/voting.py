from datetime import datetime, UTC
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import relationship

from boardroom.database import Base
from boardroom.models.company import generate_id


class VoteChoice(str, Enum):
    FOR = "FOR"
    AGAINST = "AGAINST"
    ABSTAIN = "ABSTAIN"

    @property
    def tally_key(self) -> str:
        return self.value.lower()


class Vote(Base):
    __tablename__ = "votes"
    __table_args__ = (
        UniqueConstraint("decision_id", "user_id", name="uq_votes_decision_user"),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    decision_id = Column(
        String(36),
        ForeignKey("decisions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(
        String(64),
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    vote = Column(String(16), nullable=False)
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )

    decision = relationship("Decision", back_populates="votes")
