import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from engine.errors import DomainError, ProtocolError


class InboundMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class JoinRoom(InboundMessage):
    type: Literal["join_room"]
    room: Optional[str] = None
    user_name: Optional[str] = Field(None, alias="userName")


class LeaveRoom(InboundMessage):
    type: Literal["leave_room"]


class CodeChange(InboundMessage):
    type: Literal["code_change"]
    code: str
    force_update: bool = Field(False, alias="forceUpdate")


class CursorChange(InboundMessage):
    type: Literal["cursor_change"]
    cursor: Any = None


class ChatMessage(InboundMessage):
    type: Literal["chat_message"]
    message: str


class ConflictNotification(InboundMessage):
    type: Literal["conflict_notification"]
    target_user: str = Field(alias="targetUser")
    message: Optional[str] = None
    conflict_data: Optional[dict] = Field(None, alias="conflictData")


class AIRequest(InboundMessage):
    type: Literal["ai_request"]
    action: str = ""
    request_id: Any = Field(None, alias="requestId")
    data: Optional[dict] = None


class Ping(InboundMessage):
    type: Literal["ping"]


class RunCode(InboundMessage):
    type: Literal["run_code"]
    code: Optional[str] = None


class LoadCode(InboundMessage):
    type: Literal["load_code"]
    current_version: Optional[int] = Field(None, alias="currentVersion")


class SaveCode(InboundMessage):
    type: Literal["save_code"]
    code: str
    save_name: Optional[str] = Field(None, alias="saveName")


class TeacherMonitor(InboundMessage):
    type: Literal["teacher_monitor"]


class TeacherBroadcastData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_room: Optional[str] = Field(None, alias="targetRoom")
    message: str = ""
    message_type: Optional[str] = Field(None, alias="messageType")


class TeacherBroadcast(InboundMessage):
    type: Literal["teacher_broadcast"]
    data: TeacherBroadcastData = Field(default_factory=TeacherBroadcastData)


class TeacherChatData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_room: Optional[str] = Field(None, alias="targetRoom")
    message: str = ""
    teacher_name: Optional[str] = Field(None, alias="teacherName")


class TeacherChat(InboundMessage):
    type: Literal["teacher_chat"]
    data: TeacherChatData = Field(default_factory=TeacherChatData)


Inbound = Annotated[
    Union[
        JoinRoom, LeaveRoom, CodeChange, CursorChange, ChatMessage, ConflictNotification,
        AIRequest, Ping, RunCode, LoadCode, SaveCode, TeacherMonitor, TeacherBroadcast, TeacherChat,
    ],
    Field(discriminator="type"),
]

inbound_adapter = TypeAdapter(Inbound)

MESSAGE_TYPES = frozenset(
    model.model_fields["type"].annotation.__args__[0]
    for model in InboundMessage.__subclasses__()
)


def parse_envelope(raw: str) -> InboundMessage:
    """Validate one transport frame into its typed message.

    Raises ProtocolError for anything that is not a JSON object with a string
    ``type`` or that fails its schema, DomainError for an unknown ``type``.
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"JSON parse failed: {e}")
    if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
        raise ProtocolError("message must be a JSON object with a string 'type'")

    message_type = payload["type"]
    if message_type not in MESSAGE_TYPES:
        raise DomainError(f"unknown message type: {message_type}",
                          f'The server does not support message type "{message_type}"')
    try:
        return inbound_adapter.validate_python(payload)
    except ValidationError as e:
        raise ProtocolError(f"invalid {message_type} message: {e.errors(include_url=False)}")
