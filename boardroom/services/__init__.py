"""Service layer helpers for Boardroom Live."""

from .room_registry import (
    room_registry,
    RoomRegistry,
    Room,
)  # noqa: F401

__all__ = [
    "room_registry",
    "RoomRegistry",
    "Room",
]
