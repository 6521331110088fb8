from __future__ import annotations

import logging
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from boardroom.models.company import CompanyMember, MemberRole
from boardroom.models.meeting import Meeting
from boardroom.models.user import User

logger = logging.getLogger(__name__)


class MembershipManager:
    """Answers "does this user belong to the company that owns this meeting, and as what"."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get_membership(self, user_id: str, company_id: str) -> Optional[CompanyMember]:
        return (
            self.db.query(CompanyMember)
            .filter(
                CompanyMember.user_id == user_id,
                CompanyMember.company_id == company_id,
            )
            .one_or_none()
        )

    def get_meeting_membership(
        self,
        user_id: str,
        meeting_id: str,
    ) -> Tuple[Optional[Meeting], Optional[CompanyMember]]:
        meeting = self.db.get(Meeting, meeting_id)
        if meeting is None:
            return None, None
        return meeting, self.get_membership(user_id, meeting.company_id)

    def has_meeting_access(self, user_id: str, meeting_id: str) -> bool:
        _, member = self.get_meeting_membership(user_id, meeting_id)
        return member is not None

    def get_meeting_role(self, user_id: str, meeting_id: str) -> Optional[MemberRole]:
        _, member = self.get_meeting_membership(user_id, meeting_id)
        if member is None:
            return None
        return member.member_role

    def has_privileged_access(self, user_id: str, meeting_id: str) -> bool:
        role = self.get_meeting_role(user_id, meeting_id)
        return bool(role and role.is_privileged)

    def get_display_name(self, user_id: str) -> Optional[str]:
        user = self.db.get(User, user_id)
        return user.display_name if user else None
