from __future__ import annotations

import asyncio
import inspect
import json
import logging
import random
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union
from urllib.parse import urlencode, urlsplit, urlunsplit
from uuid import uuid4

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from boardroom.config.loader import get_reconnect_settings

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Union[str, Awaitable[str]]]
EventHandler = Callable[[Dict[str, Any]], Any]


class MeetingClientError(Exception):
    """Raised when the server rejects a command or the socket is unavailable."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


@dataclass(frozen=True)
class ReconnectPolicy:
    max_attempts: int = 5
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    strategy: str = "exponential"
    jitter_ratio: float = 0.2

    @classmethod
    def from_config(cls) -> "ReconnectPolicy":
        settings = get_reconnect_settings()
        return cls(
            max_attempts=settings["max_attempts"],
            base_delay_ms=settings["base_delay_ms"],
            max_delay_ms=settings["max_delay_ms"],
            strategy=settings["strategy"],
            jitter_ratio=settings["jitter_ratio"],
        )

    def delay_for(
        self, attempt: int, rng: Callable[[], float] = random.random
    ) -> float:
        """Seconds to wait before reconnection attempt number `attempt` (1-based)."""
        attempt = max(1, attempt)
        if self.strategy == "linear":
            delay_ms = self.base_delay_ms * attempt
        else:
            delay_ms = self.base_delay_ms * (2 ** (attempt - 1))
        delay_ms = min(delay_ms, self.max_delay_ms)
        if self.jitter_ratio:
            delay_ms *= 1 + self.jitter_ratio * (2 * rng() - 1)
        return max(0.0, delay_ms / 1000)


@dataclass
class ConnectionState:
    """Transport and authentication progress, reported independently."""

    connected: bool = False
    authenticated: bool = False
    disconnected: bool = True


class MeetingSocketClient:
    """Client for the `/ws/meetings` channel.

    Reconnects with a bounded number of attempts, fetching a fresh token each
    time, and rejoins every meeting it had joined once the server
    acknowledges the new connection. Commands resolve only when the server's
    acknowledgement arrives.
    """

    def __init__(
        self,
        url: str,
        token_provider: TokenProvider,
        *,
        policy: Optional[ReconnectPolicy] = None,
        ack_timeout: Optional[float] = None,
        connector: Optional[Callable[[str], Awaitable[Any]]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.url = url
        self.policy = policy or ReconnectPolicy.from_config()
        self.ack_timeout = (
            ack_timeout
            if ack_timeout is not None
            else float(get_reconnect_settings()["ack_timeout_seconds"])
        )
        self.state = ConnectionState()
        self.user_id: Optional[str] = None
        self.connection_id: Optional[str] = None
        self.joined_meetings: Set[str] = set()

        self._token_provider = token_provider
        self._connector = connector or websockets.connect
        self._sleep = sleep
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._pending: Dict[str, asyncio.Future] = {}
        self._background: Set[asyncio.Task] = set()
        self._socket: Any = None
        self._runner: Optional[asyncio.Task] = None
        self._closing = False
        self._authenticated = asyncio.Event()

    # --- Public API ---

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for a server broadcast such as `vote:updated`."""
        self._handlers[event_type].append(handler)

    async def start(self) -> None:
        if self._runner is None or self._runner.done():
            self._closing = False
            self._runner = asyncio.create_task(self._run())

    async def wait_authenticated(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._authenticated.wait(), timeout)

    async def wait_closed(self) -> None:
        if self._runner is not None:
            await self._runner

    async def close(self) -> None:
        self._closing = True
        if self._socket is not None:
            await self._socket.close()
        if self._runner is not None:
            await self._runner
        for task in list(self._background):
            task.cancel()

    async def join_meeting(self, meeting_id: str) -> Dict[str, Any]:
        response = await self.emit("meeting:join", {"meetingId": meeting_id})
        self.joined_meetings.add(meeting_id)
        return response

    async def leave_meeting(self, meeting_id: str) -> Dict[str, Any]:
        response = await self.emit("meeting:leave", {"meetingId": meeting_id})
        self.joined_meetings.discard(meeting_id)
        return response

    async def cast_vote(self, decision_id: str, vote: str) -> Dict[str, Any]:
        return await self.emit("vote:cast", {"decisionId": decision_id, "vote": vote})

    async def update_attendance(self, meeting_id: str, is_present: bool) -> Dict[str, Any]:
        return await self.emit(
            "attendance:update", {"meetingId": meeting_id, "isPresent": is_present}
        )

    async def update_meeting_status(self, meeting_id: str, status: str) -> Dict[str, Any]:
        return await self.emit(
            "meeting:status", {"meetingId": meeting_id, "status": status}
        )

    async def emit(self, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Send a command and wait for the server's acknowledgement."""
        socket = self._socket
        if socket is None or not self.state.authenticated:
            raise MeetingClientError("not_connected", "Socket is not connected")

        request_id = str(uuid4())
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await socket.send(
                json.dumps(
                    {"type": event_type, "payload": payload, "requestId": request_id}
                )
            )
            reply = await asyncio.wait_for(future, self.ack_timeout)
        except asyncio.TimeoutError as exc:
            raise MeetingClientError(
                "timeout", f"No acknowledgement for {event_type}"
            ) from exc
        except ConnectionClosed as exc:
            raise MeetingClientError(
                "disconnected", "Connection lost before acknowledgement"
            ) from exc
        finally:
            self._pending.pop(request_id, None)

        reply_payload = reply.get("payload") or {}
        if reply.get("type") == "error":
            raise MeetingClientError(
                str(reply_payload.get("kind") or "error"),
                str(reply_payload.get("message") or "Request failed"),
            )
        return reply_payload

    # --- Connection loop ---

    async def _run(self) -> None:
        attempt = 0
        while not self._closing:
            authenticated = False
            try:
                token = await self._fetch_token()
                socket = await self._connector(self._build_url(token))
            except (OSError, WebSocketException, MeetingClientError) as exc:
                logger.warning("Meeting socket connection failed: %s", exc)
            else:
                authenticated = await self._session(socket)

            if self._closing:
                break
            if authenticated:
                attempt = 0
            attempt += 1
            if attempt > self.policy.max_attempts:
                logger.error(
                    "Giving up on meeting socket after %s reconnection attempts",
                    self.policy.max_attempts,
                )
                break
            delay = self.policy.delay_for(attempt)
            logger.info(
                "Reconnecting meeting socket in %.2fs (attempt %s/%s)",
                delay,
                attempt,
                self.policy.max_attempts,
            )
            await self._sleep(delay)

    async def _session(self, socket: Any) -> bool:
        """Read frames until the socket closes; True if the server authenticated us."""
        self._socket = socket
        self.state.connected = True
        self.state.disconnected = False
        authenticated = False
        try:
            async for raw in socket:
                try:
                    message = json.loads(raw)
                except (TypeError, ValueError):
                    logger.debug("Ignoring non-JSON frame from meeting socket")
                    continue
                if not isinstance(message, dict):
                    continue
                if message.get("type") == "connection_ack":
                    authenticated = True
                    self._on_authenticated(message.get("payload") or {})
                    continue
                await self._dispatch(message)
        except ConnectionClosed as exc:
            logger.info("Meeting socket closed: %s", exc)
        finally:
            self._socket = None
            self.state.connected = False
            self.state.authenticated = False
            self.state.disconnected = True
            self._authenticated.clear()
            self._fail_pending()
            await socket.close()
        return authenticated

    def _on_authenticated(self, payload: Dict[str, Any]) -> None:
        self.state.authenticated = True
        self.user_id = payload.get("userId")
        self.connection_id = payload.get("connectionId")
        self._authenticated.set()
        logger.info("Meeting socket authenticated as %s", self.user_id)
        if self.joined_meetings:
            # Acks for the rejoin are read by the session loop, so run it beside it.
            task = asyncio.create_task(self._rejoin(sorted(self.joined_meetings)))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _rejoin(self, meeting_ids: List[str]) -> None:
        for meeting_id in meeting_ids:
            try:
                await self.emit("meeting:join", {"meetingId": meeting_id})
            except MeetingClientError as exc:
                logger.warning("Could not rejoin meeting %s: %s", meeting_id, exc)
                if exc.kind == "access_denied":
                    self.joined_meetings.discard(meeting_id)

    async def _dispatch(self, message: Dict[str, Any]) -> None:
        message_type = message.get("type")
        if message_type in {"ack", "error", "pong"}:
            future = self._pending.get(str(message.get("requestId")))
            if future is not None and not future.done():
                future.set_result(message)
            elif message_type == "error":
                logger.warning("Meeting socket error: %s", message.get("payload"))
            return

        for handler in list(self._handlers.get(message_type, [])):
            try:
                result = handler(message.get("payload") or {})
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler for %s raised; continuing", message_type)

    def _fail_pending(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(
                    MeetingClientError(
                        "disconnected", "Connection lost before acknowledgement"
                    )
                )
        self._pending.clear()

    async def _fetch_token(self) -> str:
        token = self._token_provider()
        if inspect.isawaitable(token):
            token = await token
        if not token:
            raise MeetingClientError("not_authenticated", "No authentication token available")
        return token

    def _build_url(self, token: str) -> str:
        parts = urlsplit(self.url)
        query = f"{parts.query}&" if parts.query else ""
        query += urlencode({"token": token})
        return urlunsplit(
            (parts.scheme, parts.netloc, parts.path, query, parts.fragment)
        )
