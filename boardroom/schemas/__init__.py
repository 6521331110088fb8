from .realtime import (
    AttendancePayload,
    CastVotePayload,
    ClientMessage,
    MeetingRoomPayload,
    MeetingStatusPayload,
)

__all__ = [
    "AttendancePayload",
    "CastVotePayload",
    "ClientMessage",
    "MeetingRoomPayload",
    "MeetingStatusPayload",
]
