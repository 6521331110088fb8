from .meeting_client import (
    ConnectionState,
    MeetingClientError,
    MeetingSocketClient,
    ReconnectPolicy,
)

__all__ = [
    "ConnectionState",
    "MeetingClientError",
    "MeetingSocketClient",
    "ReconnectPolicy",
]
