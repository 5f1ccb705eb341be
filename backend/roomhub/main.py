from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Dict, Optional, Tuple

from fastapi import FastAPI, Header, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
import uvicorn

from .config import Settings
from .coordinator import RoomLifecycleCoordinator, RoomOptions
from .errors import RoomError
from .grace import GracePeriodScheduler
from .models import (
    ChatMessage,
    CreateRoomRequest,
    ErrorMessage,
    JoinMessage,
    LeaveMessage,
    MessageResponse,
    ParticipantInfo,
    RoomInfo,
    RoomResponse,
    RoomWithParticipants,
)
from .repository import InMemoryRoomRepository, RoomRepository
from .rooms import utcnow

logger = logging.getLogger("roomhub")

WS_MAX_FAILED_MESSAGES = 3


def configure_logging(settings: Settings) -> None:
    handlers = [logging.StreamHandler()]
    if settings.log_to_file:
        handlers.append(logging.FileHandler("roomhub.log"))
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


class Metrics:
    def __init__(self):
        self.active_connections = 0
        self.total_connections = 0
        self.websocket_errors = 0
        self.api_errors = 0
        self.rooms_created = 0
        self.start_time = time.time()

    def connection_established(self):
        self.active_connections += 1
        self.total_connections += 1

    def connection_closed(self):
        self.active_connections = max(0, self.active_connections - 1)

    def websocket_error(self):
        self.websocket_errors += 1

    def api_error(self):
        self.api_errors += 1

    def get_stats(self):
        return {
            "uptime_seconds": time.time() - self.start_time,
            "active_connections": self.active_connections,
            "total_connections": self.total_connections,
            "websocket_errors": self.websocket_errors,
            "api_errors": self.api_errors,
            "rooms_created": self.rooms_created,
        }


class ConnectionHub:
    """Sockets of joined users, per room code. One socket per user per room.

    Broadcast targets and membership ownership are tracked apart: a socket
    pruned after a failed send stops receiving broadcasts but still owns the
    membership until it closes or a newer socket for the same user replaces it.
    """

    def __init__(self):
        self._rooms: Dict[str, Dict[str, WebSocket]] = {}
        self._owners: Dict[Tuple[str, str], WebSocket] = {}

    def add(self, code: str, user_id: str, ws: WebSocket) -> None:
        self._rooms.setdefault(code, {})[user_id] = ws
        self._owners[(code, user_id)] = ws

    def owns(self, code: str, user_id: str, ws: WebSocket) -> bool:
        return self._owners.get((code, user_id)) is ws

    def remove(self, code: str, user_id: str, ws: WebSocket) -> bool:
        """Drop ``ws``; True if it still owned the user's membership."""
        if not self.owns(code, user_id, ws):
            return False
        del self._owners[(code, user_id)]
        peers = self._rooms.get(code, {})
        if peers.get(user_id) is ws:
            del peers[user_id]
        if not peers:
            self._rooms.pop(code, None)
        return True

    def room_count(self) -> int:
        return len(self._rooms)

    async def broadcast(self, code: str, payload: dict, exclude: Optional[str] = None) -> None:
        peers = self._rooms.get(code, {})
        failed = []
        for user_id, socket in list(peers.items()):
            if user_id == exclude:
                continue
            try:
                await socket.send_text(json.dumps(payload, default=str))
            except Exception as e:
                logger.warning(f"Failed to send message to {user_id} in room {code}: {e}")
                failed.append(user_id)
        for user_id in failed:
            peers.pop(user_id, None)
        if failed and not peers:
            self._rooms.pop(code, None)

    async def close_all(self) -> None:
        for code, peers in list(self._rooms.items()):
            for user_id, ws in list(peers.items()):
                try:
                    await ws.close(code=1001, reason="Server shutdown")
                except Exception as e:
                    logger.warning(f"Error closing WebSocket for {code}/{user_id}: {e}")
        self._rooms.clear()
        self._owners.clear()


async def send_json(ws: WebSocket, payload: dict) -> None:
    payload.setdefault("timestamp", utcnow().isoformat())
    await ws.send_text(json.dumps(payload, default=str))


async def send_error(ws: WebSocket, code: str, message: str) -> None:
    try:
        await send_json(ws, ErrorMessage(code=code, message=message).model_dump())
        logger.warning(f"Sent error to client: {code} - {message}")
    except Exception as e:
        logger.error(f"Failed to send error to client: {e}")


def create_app(settings: Optional[Settings] = None,
               repository: Optional[RoomRepository] = None,
               scheduler: Optional[GracePeriodScheduler] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    coordinator = RoomLifecycleCoordinator(
        repository or InMemoryRoomRepository(),
        scheduler or GracePeriodScheduler(settings.grace_period_seconds),
        settings,
    )
    metrics = Metrics()
    hub = ConnectionHub()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting room lifecycle service")
        await coordinator.ensure_pinned_rooms()
        yield
        logger.info("Shutting down room lifecycle service")
        await hub.close_all()
        dropped = coordinator.scheduler.cancel_all()
        if dropped:
            logger.warning(f"Dropped {dropped} pending grace periods on shutdown")

    app = FastAPI(title="Room Lifecycle Service", version="1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.coordinator = coordinator
    app.state.metrics = metrics
    app.state.hub = hub

    def http_error(action: str, e: Exception) -> HTTPException:
        if isinstance(e, RoomError):
            return HTTPException(status_code=e.status_code, detail=e.message)
        logger.error(f"Failed to {action}: {e}")
        metrics.api_error()
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to {action}",
        )

    @app.get("/api/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "version": "1.0",
            "metrics": metrics.get_stats(),
            "rooms": {
                "connected": hub.room_count(),
                "grace_periods": len(coordinator.scheduler),
            },
        }

    @app.post("/api/rooms", response_model=RoomResponse)
    async def create_room(body: CreateRoomRequest,
                          user_id: str = Header(..., alias="X-User-Id")):
        try:
            access = await coordinator.create_room(
                user_id, RoomOptions(name=body.name, max_participants=body.maxParticipants))
        except Exception as e:
            raise http_error("create room", e)
        metrics.rooms_created += 1
        return RoomResponse(room=RoomInfo.from_room(access.room), isHost=access.is_host)

    @app.get("/api/rooms/{code}", response_model=RoomWithParticipants)
    async def get_room(code: str, user_id: Optional[str] = Header(None, alias="X-User-Id")):
        try:
            room, participants = await coordinator.get_room(code)
        except Exception as e:
            raise http_error("get room", e)
        is_host = any(p.user_id == user_id and p.is_host for p in participants)
        return RoomWithParticipants(
            room=RoomInfo.from_room(room),
            isHost=is_host,
            participants=[ParticipantInfo.from_participant(p) for p in participants],
        )

    @app.post("/api/rooms/{code}/join", response_model=RoomResponse)
    async def join_room(code: str, user_id: str = Header(..., alias="X-User-Id")):
        try:
            access = await coordinator.join_room(user_id, code)
        except Exception as e:
            raise http_error("join room", e)
        return RoomResponse(room=RoomInfo.from_room(access.room), isHost=access.is_host)

    @app.post("/api/rooms/{code}/leave", response_model=MessageResponse)
    async def leave_room(code: str, user_id: str = Header(..., alias="X-User-Id")):
        try:
            await coordinator.leave_room(user_id, code)
        except Exception as e:
            raise http_error("leave room", e)
        return MessageResponse(message="Left room successfully")

    @app.delete("/api/rooms/{code}", response_model=MessageResponse)
    async def delete_room(code: str, user_id: str = Header(..., alias="X-User-Id")):
        try:
            await coordinator.delete_room(user_id, code)
        except Exception as e:
            raise http_error("delete room", e)
        return MessageResponse(message="Room deleted successfully")

    @app.get("/api/rooms/{code}/participants")
    async def room_participants(code: str):
        try:
            participants = await coordinator.list_participants(code)
        except Exception as e:
            raise http_error("list participants", e)
        return [ParticipantInfo.from_participant(p).model_dump(mode="json") for p in participants]

    async def participants_payload(code: str) -> list:
        participants = await coordinator.list_participants(code)
        return [ParticipantInfo.from_participant(p).model_dump(mode="json") for p in participants]

    async def handle_join(ws: WebSocket, code: str, user_id: str) -> None:
        access = await coordinator.join_room(user_id, code)
        hub.add(code, user_id, ws)
        participants = await participants_payload(code)
        await send_json(ws, {
            "type": "room-joined",
            "room": RoomInfo.from_room(access.room).model_dump(mode="json"),
            "isHost": access.is_host,
            "participants": participants,
        })
        await hub.broadcast(code, {
            "type": "user-joined",
            "userId": user_id,
            "roomCode": code,
            "participants": participants,
            "timestamp": utcnow().isoformat(),
        }, exclude=user_id)

    async def handle_leave(ws: WebSocket, code: str, user_id: str) -> None:
        await coordinator.leave_room(user_id, code)
        hub.remove(code, user_id, ws)
        await hub.broadcast(code, {
            "type": "user-left",
            "userId": user_id,
            "roomCode": code,
            "timestamp": utcnow().isoformat(),
        })
        await send_json(ws, {"type": "room-left", "roomCode": code})

    @app.websocket("/ws/rooms/{code}")
    async def ws_room(ws: WebSocket, code: str, userId: Optional[str] = None):
        await ws.accept()
        if not userId:
            await send_error(ws, "missing_user", "userId query parameter is required")
            await ws.close(code=4401)
            return

        metrics.connection_established()
        logger.info(f"WebSocket connection established: room={code}, user={userId}")
        joined = False
        failures = 0
        try:
            while failures < WS_MAX_FAILED_MESSAGES:
                try:
                    data = json.loads(await ws.receive_text())
                except json.JSONDecodeError as e:
                    logger.warning(f"Invalid JSON from {code}/{userId}: {e}")
                    await send_error(ws, "bad_json", "Invalid JSON format")
                    failures += 1
                    continue

                msg_type = data.get("type") if isinstance(data, dict) else None
                try:
                    if msg_type in ("join", "leave"):
                        frame = (JoinMessage if msg_type == "join" else LeaveMessage)(**data)
                        if frame.roomCode and frame.roomCode != code:
                            await send_error(ws, "room_mismatch", f"Socket is bound to room {code}")
                            failures += 1
                            continue
                    if msg_type == "join":
                        await handle_join(ws, code, userId)
                        joined = True
                    elif msg_type == "leave":
                        await handle_leave(ws, code, userId)
                        joined = False
                    elif msg_type == "chat":
                        if not joined:
                            await send_error(ws, "not_in_room", "Join the room before chatting")
                            failures += 1
                            continue
                        chat = ChatMessage(**data)
                        await hub.broadcast(code, {
                            "type": "chat",
                            "userId": userId,
                            "message": chat.message,
                            "timestamp": utcnow().isoformat(),
                        })
                    else:
                        await send_error(ws, "unknown_type", f"Unknown message type: {msg_type}")
                        failures += 1
                        continue
                except RoomError as e:
                    await send_error(ws, e.code, e.message)
                    failures += 1
                    continue
                except ValidationError as e:
                    await send_error(ws, "bad_message", f"Invalid {msg_type} message: {e.error_count()} errors")
                    failures += 1
                    continue
                failures = 0
            if failures >= WS_MAX_FAILED_MESSAGES:
                logger.error(f"Too many failed messages for {code}/{userId}, closing connection")
                await ws.close(code=4400)
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnect: room={code}, user={userId}")
        except Exception as e:
            logger.error(f"Unexpected error in WebSocket loop: {e}")
            metrics.websocket_error()
        finally:
            metrics.connection_closed()
            if joined and hub.remove(code, userId, ws):
                try:
                    await coordinator.leave_room(userId, code)
                    await hub.broadcast(code, {
                        "type": "user-left",
                        "userId": userId,
                        "roomCode": code,
                        "timestamp": utcnow().isoformat(),
                    })
                except RoomError as e:
                    logger.info(f"Disconnect cleanup for {code}/{userId}: {e.message}")
                except Exception as e:
                    logger.error(f"Error during disconnect cleanup: {e}")

    return app


configure_logging(Settings.from_env())
app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "backend.roomhub.main:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info",
        access_log=True,
        timeout_keep_alive=30,
    )
