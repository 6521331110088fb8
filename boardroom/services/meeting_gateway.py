from __future__ import annotations

import logging
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from boardroom.auth.tokens import build_token_verifier, extract_bearer_token
from boardroom.config.loader import get_realtime_settings
from boardroom.data.meeting_manager import MeetingManager
from boardroom.data.membership_manager import MembershipManager
from boardroom.database import SessionLocal, run_unit_of_work
from boardroom.models.meeting import Meeting, MeetingStatus
from boardroom.schemas.realtime import (
    AttendancePayload,
    CastVotePayload,
    ClientMessage,
    MeetingRoomPayload,
    MeetingStatusPayload,
)
from boardroom.services.room_registry import RoomRegistry, room_registry
from boardroom.services.voting_manager import VoteManager, serialize_vote
from boardroom.utils.websocket_manager import (
    ConnectionInfo,
    WebSocketManager,
    websocket_manager,
)

logger = logging.getLogger(__name__)

JSONCompatibleDict = Dict[str, Any]


class GatewayErrorKind(str, Enum):
    NOT_AUTHENTICATED = "not_authenticated"
    ACCESS_DENIED = "access_denied"
    NOT_FOUND = "not_found"
    PRECONDITION_FAILED = "precondition_failed"
    VALIDATION_FAILED = "validation_failed"
    UNKNOWN_EVENT = "unknown_event"
    INTERNAL = "internal"


class MeetingGatewayException(Exception):
    """A per-event failure that is reported to the sender; the socket stays open."""

    def __init__(self, kind: GatewayErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def to_payload(self) -> JSONCompatibleDict:
        return {"success": False, "kind": self.kind.value, "message": self.message}


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_meeting(meeting: Meeting) -> JSONCompatibleDict:
    return {
        "id": meeting.id,
        "companyId": meeting.company_id,
        "title": meeting.title,
        "description": meeting.description,
        "status": meeting.status,
        "scheduledAt": _isoformat(meeting.scheduled_at),
        "startedAt": _isoformat(meeting.started_at),
        "endedAt": _isoformat(meeting.ended_at),
        "updatedAt": _isoformat(meeting.updated_at),
    }


def _format_validation_error(exc: ValidationError) -> str:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        messages.append(f"{location}: {error['msg']}" if location else error["msg"])
    return "Validation failed: " + "; ".join(messages)


def _event(event_type: str, payload: Any) -> JSONCompatibleDict:
    return {"type": event_type, "payload": payload}


Handler = Callable[[ConnectionInfo, Any], Awaitable[JSONCompatibleDict]]


class MeetingGateway:
    """Real-time protocol handler for live meeting rooms.

    Store work runs in the threadpool with a fresh session per unit of work;
    room and socket bookkeeping stays on the event loop.
    """

    def __init__(
        self,
        *,
        token_verifier,
        session_factory: Callable[[], Session] = SessionLocal,
        connections: WebSocketManager = websocket_manager,
        registry: RoomRegistry = room_registry,
        settings: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.token_verifier = token_verifier
        self.session_factory = session_factory
        self.connections = connections
        self.registry = registry
        self.settings = settings if settings is not None else get_realtime_settings()
        self._handlers: Dict[str, Tuple[Type[BaseModel], Handler]] = {
            "meeting:join": (MeetingRoomPayload, self.join_meeting),
            "meeting:leave": (MeetingRoomPayload, self.leave_meeting),
            "vote:cast": (CastVotePayload, self.cast_vote),
            "attendance:update": (AttendancePayload, self.update_attendance),
            "meeting:status": (MeetingStatusPayload, self.update_meeting_status),
        }

    # --- Connection lifecycle ---

    async def authenticate(self, connection: ConnectionInfo) -> bool:
        """Verify the connection's bearer credential. Any failure is fail-closed."""
        token = extract_bearer_token(connection.websocket)
        if not token:
            logger.warning("Client %s connection rejected: No token", connection.id)
            return False
        try:
            verified = await self.token_verifier.verify(token)
        except Exception as exc:  # noqa: BLE001
            logger.error("Client %s authentication failed: %s", connection.id, exc)
            return False

        self.connections.authenticate(
            connection.id,
            user_id=verified.subject,
            session_id=verified.session_id,
        )
        logger.info("Client %s connected (User: %s)", connection.id, connection.user_id)
        return True

    async def handle_disconnect(self, connection: ConnectionInfo) -> None:
        """Tear down every room membership the connection held."""
        self.connections.disconnect(connection.id)
        if connection.user_id:
            vacated = await self.registry.remove_everywhere(
                connection.user_id, connection.id
            )
            for meeting_id in vacated:
                await self.connections.broadcast(
                    meeting_id,
                    _event(
                        "attendee:left",
                        {"userId": connection.user_id, "meetingId": meeting_id},
                    ),
                )
        logger.info(
            "Client %s disconnected (User: %s)",
            connection.id,
            connection.user_id or "unknown",
        )

    async def shutdown(self) -> None:
        """Drop all in-memory presence; nothing here outlives the process."""
        for connection in list(self.connections.active_connections.values()):
            self.connections.disconnect(connection.id)
        await self.registry.clear()
        logger.info("Meetings gateway shut down; room registry cleared")

    # --- Dispatch ---

    async def handle_message(self, connection: ConnectionInfo, raw: Any) -> None:
        """Validate one inbound frame, run its handler and reply to the sender."""
        try:
            envelope = ClientMessage.model_validate(raw)
        except ValidationError as exc:
            await self._reply_error(
                connection,
                None,
                None,
                MeetingGatewayException(
                    GatewayErrorKind.VALIDATION_FAILED, _format_validation_error(exc)
                ),
            )
            return

        event_type = envelope.type
        request_id = envelope.request_id
        if event_type == "ping":
            await self.connections.send_personal_message(
                connection.id,
                {
                    "type": "pong",
                    "requestId": request_id,
                    "payload": {"timestamp": datetime.now(UTC).isoformat()},
                },
            )
            return

        handler = self._handlers.get(event_type)
        if handler is None:
            await self._reply_error(
                connection,
                event_type,
                request_id,
                MeetingGatewayException(
                    GatewayErrorKind.UNKNOWN_EVENT,
                    f"Unknown message type '{event_type}'",
                ),
            )
            return

        payload_model, method = handler
        try:
            payload = payload_model.model_validate(envelope.payload or {})
            response = await method(connection, payload)
        except ValidationError as exc:
            error = MeetingGatewayException(
                GatewayErrorKind.VALIDATION_FAILED, _format_validation_error(exc)
            )
        except MeetingGatewayException as exc:
            logger.info(
                "Rejected %s from connection %s (User: %s): %s",
                event_type,
                connection.id,
                connection.user_id,
                exc.message,
            )
            error = exc
        except SQLAlchemyError:
            logger.exception(
                "Store failure while handling %s for connection %s",
                event_type,
                connection.id,
            )
            error = MeetingGatewayException(
                GatewayErrorKind.INTERNAL, "Temporarily unable to process request"
            )
        except Exception:
            logger.exception(
                "Unhandled error while handling %s for connection %s",
                event_type,
                connection.id,
            )
            error = MeetingGatewayException(
                GatewayErrorKind.INTERNAL, "Internal server error"
            )
        else:
            await self.connections.send_personal_message(
                connection.id,
                {
                    "type": "ack",
                    "event": event_type,
                    "requestId": request_id,
                    "payload": response,
                },
            )
            return

        await self._reply_error(connection, event_type, request_id, error)

    async def _reply_error(
        self,
        connection: ConnectionInfo,
        event_type: Optional[str],
        request_id: Any,
        error: MeetingGatewayException,
    ) -> None:
        await self.connections.send_personal_message(
            connection.id,
            {
                "type": "error",
                "event": event_type,
                "requestId": request_id,
                "payload": error.to_payload(),
            },
        )

    # --- Event handlers ---

    async def join_meeting(
        self, connection: ConnectionInfo, payload: MeetingRoomPayload
    ) -> JSONCompatibleDict:
        user_id = self._require_user(connection)
        meeting_id = payload.meeting_id

        has_access = await self._run_in_session(
            lambda db: MembershipManager(db).has_meeting_access(user_id, meeting_id)
        )
        if not has_access:
            raise MeetingGatewayException(
                GatewayErrorKind.ACCESS_DENIED, "Access denied to this meeting"
            )
        self._require_live(connection)

        self.connections.join_group(meeting_id, connection.id)
        first_presence, attendees = await self.registry.join(
            meeting_id, user_id, connection.id
        )
        if first_presence:
            await self.connections.broadcast(
                meeting_id,
                _event("attendee:joined", {"userId": user_id, "meetingId": meeting_id}),
                skip_connection=connection.id,
            )

        logger.info("User %s joined meeting %s", user_id, meeting_id)
        return {
            "success": True,
            "meetingId": meeting_id,
            "currentAttendees": attendees,
        }

    async def leave_meeting(
        self, connection: ConnectionInfo, payload: MeetingRoomPayload
    ) -> JSONCompatibleDict:
        user_id = self._require_user(connection)
        meeting_id = payload.meeting_id

        self.connections.leave_group(meeting_id, connection.id)
        vacated = await self.registry.leave(meeting_id, user_id, connection.id)
        if vacated:
            await self.connections.broadcast(
                meeting_id,
                _event("attendee:left", {"userId": user_id, "meetingId": meeting_id}),
            )

        logger.info("User %s left meeting %s", user_id, meeting_id)
        return {"success": True}

    async def cast_vote(
        self, connection: ConnectionInfo, payload: CastVotePayload
    ) -> JSONCompatibleDict:
        user_id = self._require_user(connection)
        meeting_id, vote, tally = await self._run_in_session(
            self._cast_vote, user_id, payload
        )

        await self.connections.broadcast(
            meeting_id,
            _event(
                "vote:updated",
                {
                    "decisionId": payload.decision_id,
                    "voterId": user_id,
                    "vote": payload.vote.value,
                    "tally": tally,
                },
            ),
        )
        return {"success": True, "vote": vote, "tally": tally}

    async def update_attendance(
        self, connection: ConnectionInfo, payload: AttendancePayload
    ) -> JSONCompatibleDict:
        user_id = self._require_user(connection)
        await self._run_in_session(self._update_attendance, user_id, payload)

        await self.connections.broadcast(
            payload.meeting_id,
            _event(
                "attendance:updated",
                {
                    "meetingId": payload.meeting_id,
                    "userId": user_id,
                    "isPresent": payload.is_present,
                },
            ),
        )
        return {"success": True}

    async def update_meeting_status(
        self, connection: ConnectionInfo, payload: MeetingStatusPayload
    ) -> JSONCompatibleDict:
        user_id = self._require_user(connection)
        meeting = await self._run_in_session(self._update_status, user_id, payload)

        await self.connections.broadcast(
            payload.meeting_id,
            _event(
                "meeting:status:updated",
                {
                    "meetingId": payload.meeting_id,
                    "status": meeting["status"],
                    "updatedAt": meeting["updatedAt"],
                },
            ),
        )
        return {"success": True, "meeting": meeting}

    async def emit_to_meeting(self, meeting_id: str, event_type: str, data: Any) -> None:
        """Push a server-originated event to every socket in a meeting room."""
        await self.connections.broadcast(meeting_id, _event(event_type, data))

    # --- Units of work (run in the threadpool) ---

    def _cast_vote(
        self, db: Session, user_id: str, payload: CastVotePayload
    ) -> Tuple[str, JSONCompatibleDict, Dict[str, int]]:
        meetings = MeetingManager(db)
        decision = meetings.get_decision(payload.decision_id)
        if decision is None:
            raise MeetingGatewayException(
                GatewayErrorKind.NOT_FOUND, "Decision not found"
            )

        meeting = decision.meeting
        if not MembershipManager(db).has_meeting_access(user_id, meeting.id):
            raise MeetingGatewayException(GatewayErrorKind.ACCESS_DENIED, "Access denied")
        if meeting.status != MeetingStatus.IN_PROGRESS.value:
            raise MeetingGatewayException(
                GatewayErrorKind.PRECONDITION_FAILED,
                "Voting is only allowed during live meetings",
            )
        if self.settings.get("require_present_attendance") and not (
            meetings.is_user_present(meeting.id, user_id)
        ):
            raise MeetingGatewayException(
                GatewayErrorKind.PRECONDITION_FAILED, "Only present attendees can vote"
            )

        votes = VoteManager(db)
        vote = votes.cast_vote(decision.id, user_id, payload.vote)
        tally = votes.aggregate_tally(decision.id)
        logger.info(
            "User %s voted %s on decision %s",
            self._describe_user(db, user_id),
            payload.vote.value,
            decision.id,
        )
        return meeting.id, serialize_vote(vote), tally

    def _update_attendance(
        self, db: Session, user_id: str, payload: AttendancePayload
    ) -> None:
        meeting, member = MembershipManager(db).get_meeting_membership(
            user_id, payload.meeting_id
        )
        if meeting is None or member is None:
            raise MeetingGatewayException(GatewayErrorKind.ACCESS_DENIED, "Access denied")

        MeetingManager(db).upsert_attendance(meeting.id, member.id, payload.is_present)
        logger.info(
            "User %s attendance updated to %s for meeting %s",
            user_id,
            payload.is_present,
            meeting.id,
        )

    def _update_status(
        self, db: Session, user_id: str, payload: MeetingStatusPayload
    ) -> JSONCompatibleDict:
        if not MembershipManager(db).has_privileged_access(user_id, payload.meeting_id):
            raise MeetingGatewayException(
                GatewayErrorKind.ACCESS_DENIED, "Admin access required"
            )

        meetings = MeetingManager(db)
        meeting = meetings.get_meeting(payload.meeting_id)
        current = meeting.meeting_status
        if self.settings.get("enforce_status_transitions", True) and not (
            current.can_transition_to(payload.status)
        ):
            raise MeetingGatewayException(
                GatewayErrorKind.PRECONDITION_FAILED,
                f"Cannot change meeting status from {current.value} to {payload.status.value}",
            )

        updated = meetings.update_status(meeting, payload.status)
        logger.info(
            "Meeting %s status updated to %s by user %s",
            updated.id,
            updated.status,
            self._describe_user(db, user_id),
        )
        return serialize_meeting(updated)

    # --- Helpers ---

    async def _run_in_session(self, work: Callable[..., Any], *args: Any) -> Any:
        return await run_in_threadpool(
            run_unit_of_work, self.session_factory, work, *args
        )

    def _require_user(self, connection: ConnectionInfo) -> str:
        if not connection.is_authenticated:
            raise MeetingGatewayException(
                GatewayErrorKind.NOT_AUTHENTICATED, "Not authenticated"
            )
        return connection.user_id

    def _require_live(self, connection: ConnectionInfo) -> None:
        # The socket may have gone away while a store call was in flight; its
        # cleanup has already run, so nothing may be added for it now.
        if self.connections.get(connection.id) is None:
            raise MeetingGatewayException(
                GatewayErrorKind.NOT_AUTHENTICATED, "Connection closed"
            )

    @staticmethod
    def _describe_user(db: Session, user_id: str) -> str:
        # Log enrichment only; never let it fail the operation.
        try:
            name = MembershipManager(db).get_display_name(user_id)
        except SQLAlchemyError:
            logger.debug("Could not resolve display name for %s", user_id)
            return user_id
        if name and name != user_id:
            return f"{name} ({user_id})"
        return user_id


_gateway: Optional[MeetingGateway] = None


def get_meeting_gateway() -> MeetingGateway:
    """Dependency provider returning the process-wide gateway."""
    global _gateway
    if _gateway is None:
        _gateway = MeetingGateway(token_verifier=build_token_verifier())
    return _gateway
