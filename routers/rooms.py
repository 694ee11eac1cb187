import json

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from schemas.rooms import Frame, RoomDetailsResponse
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(tags=["rooms"])


@rooms_router.get("/rooms/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Presence lookup for a room code.

    Returns only whether the room is live and how many connections it has; the
    salt is handed out over the socket and member identities are never exposed.
    """
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room details request for {room_id} from {client_host}")
    registry = request.app.state.registry
    count = registry.member_count(room_id)
    return RoomDetailsResponse(room_id=room_id, exists=count > 0, online_users_count=count)


@rooms_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Relay socket. Every frame is a JSON object `{"type": <event>, "data": <payload>}`."""
    relay = websocket.app.state.relay
    manager = relay.manager

    await websocket.accept()
    session = manager.open(websocket)
    logger.info(f"WebSocket connection accepted: {session.connection_id}")

    message_count = 0
    try:
        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected normally for connection {session.connection_id}")
                break
            message_count += 1

            try:
                frame = Frame.model_validate(json.loads(data))
            except (json.JSONDecodeError, ValidationError):
                logger.warning(f"Invalid frame #{message_count} from connection {session.connection_id}")
                await manager.send(session, "errorMessage", "Invalid frame")
                continue

            logger.debug(f"Received {frame.type} (#{message_count}) from connection {session.connection_id}")
            await relay.dispatch(session, frame.type, frame.data)
    except Exception as e:
        logger.error(f"WebSocket error for connection {session.connection_id}: {e}", exc_info=True)
        try:
            await websocket.close(code=1011)
        except RuntimeError as close_error:
            logger.debug(f"Error closing WebSocket: {close_error}")
    finally:
        await relay.on_disconnect(session)
        logger.debug(f"Cleaned up connection {session.connection_id} after {message_count} frames")
