from __future__ import annotations

import logging
from datetime import datetime, UTC
from typing import Optional

from sqlalchemy.orm import Session, joinedload

from boardroom.data.upsert import upsert_row
from boardroom.models.company import CompanyMember
from boardroom.models.meeting import Decision, Meeting, MeetingAttendee, MeetingStatus

logger = logging.getLogger(__name__)


class MeetingManager:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get_meeting(self, meeting_id: str) -> Optional[Meeting]:
        return self.db.get(Meeting, meeting_id)

    def get_decision(self, decision_id: str) -> Optional[Decision]:
        """Get a decision together with the meeting it belongs to."""
        return (
            self.db.query(Decision)
            .options(joinedload(Decision.meeting))
            .filter(Decision.id == decision_id)
            .one_or_none()
        )

    def update_status(self, meeting: Meeting, status: MeetingStatus) -> Meeting:
        """Persist a new lifecycle status, stamping start and end times on the way."""
        now = datetime.now(UTC)
        previous = meeting.status
        meeting.status = status.value
        meeting.updated_at = now
        if status == MeetingStatus.IN_PROGRESS and meeting.started_at is None:
            meeting.started_at = now
        if status == MeetingStatus.COMPLETED and meeting.ended_at is None:
            meeting.ended_at = now
        self.db.commit()
        self.db.refresh(meeting)
        logger.info(
            "Meeting %s status %s -> %s", meeting.id, previous, meeting.status
        )
        return meeting

    def upsert_attendance(
        self,
        meeting_id: str,
        member_id: str,
        is_present: bool,
    ) -> MeetingAttendee:
        upsert_row(
            self.db,
            MeetingAttendee,
            {
                "meeting_id": meeting_id,
                "member_id": member_id,
                "is_present": is_present,
                "updated_at": datetime.now(UTC),
            },
            conflict_columns=("meeting_id", "member_id"),
            update_columns=("is_present", "updated_at"),
        )
        self.db.commit()
        return (
            self.db.query(MeetingAttendee)
            .filter(
                MeetingAttendee.meeting_id == meeting_id,
                MeetingAttendee.member_id == member_id,
            )
            .one()
        )

    def is_user_present(self, meeting_id: str, user_id: str) -> bool:
        """Whether the user's roll-call attendance for the meeting is marked present."""
        attendee = (
            self.db.query(MeetingAttendee)
            .join(CompanyMember, MeetingAttendee.member_id == CompanyMember.id)
            .filter(
                MeetingAttendee.meeting_id == meeting_id,
                CompanyMember.user_id == user_id,
                MeetingAttendee.is_present.is_(True),
            )
            .first()
        )
        return attendee is not None
