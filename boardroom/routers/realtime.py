import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from boardroom.services.meeting_gateway import MeetingGateway, get_meeting_gateway

router = APIRouter(prefix="/ws", tags=["realtime"])

logger = logging.getLogger(__name__)


@router.websocket("/meetings")
async def meetings_socket(
    websocket: WebSocket,
    gateway: MeetingGateway = Depends(get_meeting_gateway),
) -> None:
    """
    Live meeting channel. One socket may join several meeting rooms; every
    inbound frame is a `{type, payload, requestId}` envelope.
    """
    connection = await gateway.connections.connect(websocket)

    if not await gateway.authenticate(connection):
        gateway.connections.disconnect(connection.id)
        await websocket.close(
            code=status.WS_1008_POLICY_VIOLATION, reason="Authentication failed"
        )
        return

    await gateway.connections.send_personal_message(
        connection.id,
        {
            "type": "connection_ack",
            "payload": {
                "connectionId": connection.id,
                "userId": connection.user_id,
                "sessionId": connection.session_id,
            },
        },
    )

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                message = None
            await gateway.handle_message(connection, message)
    except WebSocketDisconnect:
        logger.debug(
            "WebSocketDisconnect: connection_id=%s user_id=%s",
            connection.id,
            connection.user_id,
        )
    finally:
        await gateway.handle_disconnect(connection)
