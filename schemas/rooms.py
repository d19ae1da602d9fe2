from pydantic import BaseModel
from typing import Any, Optional


class StatusResponse(BaseModel):
    status: str
    uptime: int
    connections: int
    rooms: int
    version: str

class ConfigResponse(BaseModel):
    websocketUrl: str
    publicUrl: str
    maxUsers: int
    maxRooms: int
    maxUsersPerRoom: int
    host: Optional[str] = None
    protocol: str
    detectedUrl: str
    detectedWsUrl: str

class OnlineUser(BaseModel):
    id: str
    name: str
    lastActivity: Optional[int] = None

class RoomSummary(BaseModel):
    id: str
    userCount: int
    users: list[OnlineUser]
    lastActivity: int
    createdAt: int
    version: int
    codeLength: int
    chatCount: int

class ServerStats(BaseModel):
    uptime: int
    peakConnections: int
    totalConnections: int
    actualConnections: int
    registeredUsers: int
    teacherMonitors: int

class TeacherRoomsResponse(BaseModel):
    rooms: list[RoomSummary]
    totalRooms: int
    totalUsers: int
    studentsInRooms: int
    nonTeacherUsers: int
    serverStats: ServerStats

class RoomMember(BaseModel):
    userId: str
    userName: str
    cursor: Any = None
    isActive: bool
    joinTime: int

class RoomDetailsResponse(BaseModel):
    id: str
    users: list[RoomMember]
    code: str
    version: int
    lastEditedBy: Optional[str]
    chatHistory: list[dict]
    createdAt: int
    lastActivity: int
    codeHistory: list[dict]
