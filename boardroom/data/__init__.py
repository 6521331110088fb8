"""
Data access layer for the stores the live meeting gateway relies on.
"""

from .meeting_manager import MeetingManager
from .membership_manager import MembershipManager

__all__ = ["MeetingManager", "MembershipManager"]
