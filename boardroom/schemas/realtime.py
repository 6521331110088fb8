from __future__ import annotations

from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool

from boardroom.models.meeting import MeetingStatus
from boardroom.models.voting import VoteChoice


class _EventPayload(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
    )


class MeetingRoomPayload(_EventPayload):
    """Body of `meeting:join` and `meeting:leave`."""

    meeting_id: str = Field(..., alias="meetingId", min_length=1, max_length=64)


class CastVotePayload(_EventPayload):
    decision_id: str = Field(..., alias="decisionId", min_length=1, max_length=64)
    vote: VoteChoice


class AttendancePayload(_EventPayload):
    meeting_id: str = Field(..., alias="meetingId", min_length=1, max_length=64)
    is_present: StrictBool = Field(..., alias="isPresent")


class MeetingStatusPayload(_EventPayload):
    meeting_id: str = Field(..., alias="meetingId", min_length=1, max_length=64)
    status: MeetingStatus


class ClientMessage(BaseModel):
    """Envelope for every frame a client sends on the meetings socket."""

    model_config = ConfigDict(populate_by_name=True)

    type: str = Field(..., min_length=1)
    payload: Optional[Dict[str, Any]] = None
    request_id: Optional[Union[str, int]] = Field(None, alias="requestId")
