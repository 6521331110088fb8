import pytest

from boardroom.utils.websocket_manager import ConnectionInfo, WebSocketManager


@pytest.fixture
def anyio_backend():
    return "asyncio"


class _FakeSocket:
    def __init__(self, *, on_send=None, should_fail: bool = False):
        self._on_send = on_send
        self._should_fail = should_fail
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        if self._on_send:
            self._on_send()
        if self._should_fail:
            raise RuntimeError("send failed")
        self.sent.append(message)


def _register(manager, connection_id, socket, *, meeting_id=None, user_id=None):
    manager.active_connections[connection_id] = ConnectionInfo(
        id=connection_id, websocket=socket, user_id=user_id
    )
    if meeting_id:
        manager.join_group(meeting_id, connection_id)
    return socket


@pytest.mark.anyio("asyncio")
async def test_connect_accepts_and_registers_unauthenticated_connection():
    manager = WebSocketManager()
    socket = _FakeSocket()

    connection = await manager.connect(socket)

    assert socket.accepted is True
    assert manager.get(connection.id) is connection
    assert connection.is_authenticated is False

    manager.authenticate(connection.id, user_id="user-a", session_id="sess-9")
    assert connection.user_id == "user-a"
    assert connection.session_id == "sess-9"
    assert connection.is_authenticated is True


@pytest.mark.anyio("asyncio")
async def test_broadcast_uses_snapshot_when_connections_change():
    manager = WebSocketManager()
    meeting_id = "MTG-WS-1"

    def _disconnect_peer():
        manager.disconnect("conn-b")

    _register(manager, "conn-a", _FakeSocket(on_send=_disconnect_peer), meeting_id=meeting_id)
    _register(manager, "conn-b", _FakeSocket(), meeting_id=meeting_id)

    await manager.broadcast(meeting_id, {"type": "vote:updated"})

    assert [c.id for c in manager.group_members(meeting_id)] == ["conn-a"]


@pytest.mark.anyio("asyncio")
async def test_broadcast_drops_failed_connections():
    manager = WebSocketManager()
    meeting_id = "MTG-WS-2"
    ok = _register(manager, "conn-ok", _FakeSocket(), meeting_id=meeting_id)
    _register(manager, "conn-fail", _FakeSocket(should_fail=True), meeting_id=meeting_id)

    await manager.broadcast(meeting_id, {"type": "attendance:updated"})

    assert ok.sent == [{"type": "attendance:updated"}]
    assert [c.id for c in manager.group_members(meeting_id)] == ["conn-ok"]
    assert "conn-fail" in manager.active_connections


@pytest.mark.anyio("asyncio")
async def test_broadcast_skips_sender_when_requested():
    manager = WebSocketManager()
    meeting_id = "MTG-WS-3"
    sender = _register(manager, "conn-a", _FakeSocket(), meeting_id=meeting_id)
    peer = _register(manager, "conn-b", _FakeSocket(), meeting_id=meeting_id)
    outsider = _register(manager, "conn-c", _FakeSocket(), meeting_id="MTG-other")

    await manager.broadcast(
        meeting_id, {"type": "attendee:joined"}, skip_connection="conn-a"
    )

    assert sender.sent == []
    assert peer.sent == [{"type": "attendee:joined"}]
    assert outsider.sent == []


def test_disconnect_removes_connection_from_every_group():
    manager = WebSocketManager()
    _register(manager, "conn-a", _FakeSocket(), meeting_id="MTG-2")
    manager.join_group("MTG-1", "conn-a")
    _register(manager, "conn-b", _FakeSocket(), meeting_id="MTG-1")

    rooms = manager.disconnect("conn-a")

    assert rooms == ["MTG-1", "MTG-2"]
    assert manager.get("conn-a") is None
    assert "MTG-2" not in manager.groups
    assert manager.groups["MTG-1"] == {"conn-b"}


def test_join_group_ignores_unknown_connection():
    manager = WebSocketManager()

    manager.join_group("MTG-1", "conn-ghost")

    assert manager.groups == {}


def test_leave_group_keeps_other_groups():
    manager = WebSocketManager()
    _register(manager, "conn-a", _FakeSocket(), meeting_id="MTG-1")
    manager.join_group("MTG-2", "conn-a")

    manager.leave_group("MTG-1", "conn-a")

    assert manager.groups == {"MTG-2": {"conn-a"}}


@pytest.mark.anyio("asyncio")
async def test_send_personal_message_reports_delivery():
    manager = WebSocketManager()
    socket = _register(manager, "conn-a", _FakeSocket())
    _register(manager, "conn-broken", _FakeSocket(should_fail=True))

    assert await manager.send_personal_message("conn-a", {"type": "pong"}) is True
    assert socket.sent == [{"type": "pong"}]
    assert await manager.send_personal_message("conn-broken", {"type": "pong"}) is False
    assert await manager.send_personal_message("conn-missing", {"type": "pong"}) is False
