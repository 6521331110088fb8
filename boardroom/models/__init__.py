# Import models to make them accessible via boardroom.models
# and ensure they are registered with SQLAlchemy's Base metadata
from .user import User
from .company import Company, CompanyMember, MemberRole
from .meeting import Decision, Meeting, MeetingAttendee, MeetingStatus
from .voting import Vote, VoteChoice

__all__ = [
    "User",
    "Company",
    "CompanyMember",
    "MemberRole",
    "Meeting",
    "MeetingStatus",
    "Decision",
    "MeetingAttendee",
    "Vote",
    "VoteChoice",
]
