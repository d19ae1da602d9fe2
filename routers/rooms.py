from fastapi import APIRouter, HTTPException, Request
from schemas.rooms import ConfigResponse, RoomDetailsResponse, StatusResponse, TeacherRoomsResponse
from constants import MAX_CONCURRENT_USERS, MAX_ROOMS, MAX_USERS_PER_ROOM, PUBLIC_URL, SERVER_VERSION
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/api", tags=["rooms"])


def _status(engine) -> dict:
    return {
        "status": "running",
        "uptime": engine.uptime(),
        "connections": engine.registry.connection_count,
        "rooms": len(engine.store),
        "version": SERVER_VERSION,
    }


def _teacher_rooms(engine) -> dict:
    # Sweep first so the dashboard never shows stale rooms or connections
    engine.sweep()

    rooms = []
    for room in engine.store.rooms.values():
        live = room.live_members()
        if not live and not room.code:
            continue
        rooms.append({
            "id": room.id,
            "userCount": len(live),
            "users": [{"id": m.connection_id, "name": m.display_name, "lastActivity": m.joined_at} for m in live],
            "lastActivity": room.last_activity,
            "createdAt": room.created_at,
            "version": room.version,
            "codeLength": len(room.code),
            "chatCount": len(room.chat_history),
        })

    stats = engine.stats()
    logger.info(f"Teacher dashboard stats - connections: {stats['totalConnections']}, "
                f"students in rooms: {stats['onlineStudents']}, non-teacher users: {stats['nonTeacherUsers']}")
    return {
        "rooms": rooms,
        "totalRooms": len(engine.store),
        "totalUsers": stats["totalConnections"],
        "studentsInRooms": stats["onlineStudents"],
        "nonTeacherUsers": stats["nonTeacherUsers"],
        "serverStats": {
            "uptime": engine.uptime(),
            "peakConnections": engine.registry.peak_connections,
            "totalConnections": engine.registry.total_connections,
            "actualConnections": stats["totalConnections"],
            "registeredUsers": len(engine.registry),
            "teacherMonitors": len(engine.teacher_monitors),
        },
    }


def _room_details(engine, room_id: str):
    room = engine.store.get(room_id)
    if room is None:
        return None
    record = room.to_record()
    return {
        "id": room.id,
        "users": [member for _, member in record["users"]],
        "code": room.code,
        "version": room.version,
        "lastEditedBy": room.last_edited_by,
        "chatHistory": record["chatHistory"],
        "createdAt": room.created_at,
        "lastActivity": room.last_activity,
        "codeHistory": record["codeHistory"],
    }


@rooms_router.get("/status", response_model=StatusResponse)
async def get_status(request: Request):
    engine = request.app.state.engine
    return await engine.dispatcher.call(_status, engine)


@rooms_router.get("/config", response_model=ConfigResponse)
async def get_config(request: Request):
    host = request.headers.get("host")
    protocol = request.headers.get("x-forwarded-proto") or request.url.scheme
    ws_protocol = "wss" if protocol == "https" else "ws"
    public_url = PUBLIC_URL or f"{protocol}://{host}"
    ws_url = public_url.replace("https://", "wss://").replace("http://", "ws://")
    return ConfigResponse(
        websocketUrl=f"{ws_url.rstrip('/')}/ws",
        publicUrl=public_url,
        maxUsers=MAX_CONCURRENT_USERS,
        maxRooms=MAX_ROOMS,
        maxUsersPerRoom=MAX_USERS_PER_ROOM,
        host=host,
        protocol=protocol,
        detectedUrl=f"{protocol}://{host}",
        detectedWsUrl=f"{ws_protocol}://{host}/ws",
    )


@rooms_router.get("/teacher/rooms", response_model=TeacherRoomsResponse)
async def get_teacher_rooms(request: Request):
    engine = request.app.state.engine
    return await engine.dispatcher.call(_teacher_rooms, engine)


@rooms_router.get("/teacher/room/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    engine = request.app.state.engine
    details = await engine.dispatcher.call(_room_details, engine, room_id)
    if details is None:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    return details


health_router = APIRouter(tags=["health"])


@health_router.get("/health/live")
def live() -> dict[str, str]:
    return {"status": "ok"}
