from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
import redis

from app.api.deps import get_coordinator, get_player_id, get_redis
from app.api.models import ActionResponse, JoinRequest, Room, RoomCreateRequest
from app.coordinator import GameCoordinator
from app.errors import GameError
from app.reconcile import project_view
from app.room_store import RoomStore
from app.websocket_hub import hub

router = APIRouter()


def _http_error(e: GameError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e))


@router.websocket("/ws/rooms/{room_id}")
async def room_updates_ws(websocket: WebSocket, room_id: str, r: redis.Redis = Depends(get_redis)) -> None:
    await hub.connect(room_id, websocket, store=RoomStore(r=r))

    try:
        # Keep the socket open; client can optionally send pings.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(websocket)


@router.get("/healthcheck")
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/rooms", response_model=Room, status_code=status.HTTP_201_CREATED)
async def create_room_route(
    payload: RoomCreateRequest,
    player_id: str = Depends(get_player_id),
    coordinator: GameCoordinator = Depends(get_coordinator),
) -> Room:
    try:
        room = coordinator.create_room(host_id=player_id, options=payload)
    except GameError as e:
        raise _http_error(e) from e
    return room


@router.get("/rooms/{room_id}", response_model=Room)
async def get_room_route(room_id: str, coordinator: GameCoordinator = Depends(get_coordinator)) -> Room:
    try:
        return coordinator.get_room(room_id)
    except GameError as e:
        raise _http_error(e) from e


@router.get("/rooms/{room_id}/view")
async def get_room_view_route(
    room_id: str,
    player_id: str = Depends(get_player_id),
    coordinator: GameCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    try:
        room = coordinator.get_room(room_id)
    except GameError as e:
        raise _http_error(e) from e
    view = project_view(room, player_id)
    data = asdict(view)
    data["my_resources"] = view.my_resources.model_dump() if view.my_resources is not None else None
    return data


@router.post("/rooms/{room_id}/join", response_model=Room)
async def join_room_route(
    room_id: str,
    payload: JoinRequest,
    player_id: str = Depends(get_player_id),
    coordinator: GameCoordinator = Depends(get_coordinator),
) -> Room:
    try:
        room = coordinator.join_room(room_id, player_id, name=payload.name)
    except GameError as e:
        raise _http_error(e) from e
    return room


@router.post("/rooms/{room_id}/actions/{action}", response_model=ActionResponse)
async def room_action_route(
    room_id: str,
    action: str,
    payload: dict[str, Any] | None = Body(default=None),
    player_id: str = Depends(get_player_id),
    coordinator: GameCoordinator = Depends(get_coordinator),
) -> ActionResponse:
    try:
        room = coordinator.dispatch(room_id, player_id, action, payload or {})
    except GameError as e:
        raise _http_error(e) from e
    return ActionResponse(action=action, room=room)
