"""Signaling relay endpoints."""
from __future__ import annotations

import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..schemas.signaling import RoomSnapshot
from ..services.signaling import SignalingConnection, manager as signaling_manager

router = APIRouter()


@router.get("/rooms/{room_id}", response_model=RoomSnapshot)
async def room_presence(room_id: str) -> RoomSnapshot:
    """Return who is currently connected to a room."""

    participants = await signaling_manager.snapshot(room_id)
    return RoomSnapshot(room_id=room_id, participants=participants)


@router.websocket("/signaling")
async def signaling_endpoint(websocket: WebSocket) -> None:
    """Relay presence, SDP and ICE payloads between room members."""

    await websocket.accept()
    connection = SignalingConnection(send=websocket.send_json)

    try:
        while True:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
            except ValueError:
                message = None
            await signaling_manager.handle(connection, message)
    except WebSocketDisconnect:
        pass
    finally:
        await signaling_manager.disconnect(connection)
