"""
Room engine: wires the registry, room store, fan-out, conflict relay,
sandbox, assistant and persistence together behind one handler table.

All ``handle_*`` methods run on the dispatcher worker and never await.
Long-running work is offloaded and its completion re-enters the worker.
"""

import asyncio
from typing import Callable, Dict, Optional

from backend import FileBackend
from constants import AUTO_SAVE_INTERVAL, CLEANUP_INTERVAL, MAX_CONCURRENT_USERS, SERVER_VERSION
from engine.assistant import TeachingAssistant
from engine.broadcast import Fanout
from engine.conflict import ConflictRelay
from engine.dispatcher import Scheduler, SerialDispatcher
from engine.errors import DomainError, PersistenceError, ProtocolError
from engine.reaper import Reaper
from engine.registry import Connection, SessionRegistry, now_ms
from engine.rooms import RoomStore
from engine.sandbox import ExecutionSandbox
from logging_config import get_logger
from schemas import messages as msg

logger = get_logger(__name__)


class RoomEngine:
    def __init__(self, backend=None, sandbox: Optional[ExecutionSandbox] = None,
                 assistant: Optional[TeachingAssistant] = None, dispatcher: Optional[SerialDispatcher] = None,
                 scheduler=None, max_connections: int = MAX_CONCURRENT_USERS,
                 auto_save_interval: float = AUTO_SAVE_INTERVAL / 1000,
                 cleanup_interval: float = CLEANUP_INTERVAL / 1000, **store_options):
        self.backend = backend or FileBackend()
        self.dispatcher = dispatcher or SerialDispatcher()
        self.scheduler = scheduler or Scheduler(self.dispatcher)
        self.registry = SessionRegistry(on_unregister=self._leave_current_room)
        store_options.setdefault("history_cap", self.backend.history_cap)
        self.store = RoomStore(scheduler=self.scheduler, on_room_deleted=self._room_deleted, **store_options)
        self.fanout = Fanout(self.store)
        self.relay = ConflictRelay(self.store, self.fanout)
        self.sandbox = sandbox or ExecutionSandbox()
        self.assistant = assistant or TeachingAssistant()
        self.reaper = Reaper(self.store, self.registry, self.disconnect)
        self.teacher_monitors = set()
        self.max_connections = max_connections
        self.auto_save_interval = auto_save_interval
        self.cleanup_interval = cleanup_interval
        self.edit_count = 0
        self.started_at = now_ms()

        self.handlers: Dict[str, Callable] = {
            "join_room": self.handle_join_room,
            "leave_room": self.handle_leave_room,
            "code_change": self.handle_code_change,
            "cursor_change": self.handle_cursor_change,
            "chat_message": self.handle_chat_message,
            "conflict_notification": self.handle_conflict_notification,
            "ai_request": self.handle_ai_request,
            "ping": self.handle_ping,
            "run_code": self.handle_run_code,
            "load_code": self.handle_load_code,
            "save_code": self.handle_save_code,
            "teacher_monitor": self.handle_teacher_monitor,
            "teacher_broadcast": self.handle_teacher_broadcast,
            "teacher_chat": self.handle_teacher_chat,
        }

    # -- lifecycle ---------------------------------------------------------

    async def start(self):
        await self.dispatcher.start()
        snapshot = await self._in_executor(self.backend.load_snapshot)
        if snapshot:
            await self.dispatcher.call(self.store.restore, snapshot)
        if self.cleanup_interval:
            self.scheduler.every(self.cleanup_interval, self.sweep)
        if self.auto_save_interval:
            self.scheduler.every(self.auto_save_interval, self.autosave)
        logger.info(f"Room engine started in {self.backend.mode} persistence mode")

    async def stop(self):
        self.scheduler.cancel_all()
        try:
            snapshot = await self.dispatcher.call(self.store.to_snapshot, SERVER_VERSION)
            await self._in_executor(self.backend.write_snapshot, snapshot)
        except PersistenceError as e:
            logger.error(f"Final snapshot failed: {e}")
        await self.dispatcher.stop()

    @staticmethod
    async def _in_executor(fn, *args):
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    def at_capacity(self) -> bool:
        return len(self.registry) >= self.max_connections

    # -- connection lifecycle ------------------------------------------------

    def connect(self, connection: Connection):
        self.registry.register(connection)

    def disconnect(self, connection: Connection):
        logger.info(f"Cleaning up connection {connection.id} ({connection.display_name})")
        connection.mark_closed()
        self.registry.unregister(connection.id)
        if connection.id in self.teacher_monitors:
            self.teacher_monitors.discard(connection.id)
            logger.info(f"Removed teacher monitor {connection.id}")
        self.push_stats()

    def _leave_current_room(self, connection: Connection):
        room_id = connection.room_id
        connection.room_id = None
        self._leave_room(connection, room_id)

    def _leave_room(self, connection: Connection, room_id: str):
        member = self.store.leave(room_id, connection.id)
        if member is None:
            return
        self.fanout.broadcast(room_id, {
            "type": "user_left",
            "userName": member.display_name,
            "userId": connection.id,
            "timestamp": now_ms(),
        }, exclude=connection.id)

    def _room_deleted(self, room_id: str):
        self.push_stats()

    # -- inbound ---------------------------------------------------------------

    def receive(self, connection: Connection, raw: str):
        """Parse and dispatch one frame. Errors are answered to the sender only."""
        try:
            message = msg.parse_envelope(raw)
            logger.debug(f"Handling {message.type} from {connection.id} ({connection.display_name})")
            self.handlers[message.type](connection, message)
        except ProtocolError as e:
            logger.warning(f"Malformed message from {connection.id}: {e.details}")
            self.reply_error(connection, "invalid message format", e.details)
        except DomainError as e:
            logger.warning(f"Rejected message from {connection.id}: {e.error}")
            self.reply_error(connection, e.error, e.message, reply_type=e.reply_type)

    def reply_error(self, connection: Connection, error: str, details: str, reply_type: str = "error"):
        payload = {"type": reply_type, "error": error, "timestamp": now_ms()}
        if reply_type == "error":
            payload["details"] = details
        else:
            payload["message"] = details
        if reply_type == "code_loaded":
            payload["success"] = False
        self.fanout.send(connection, payload)

    def _current_room(self, connection: Connection, reply_type: str = "error"):
        room = self.store.get(connection.room_id) if connection.room_id else None
        if room is None:
            raise DomainError("not_in_room", "Join a room first", reply_type=reply_type)
        return room

    def handle_ping(self, connection: Connection, message: msg.Ping):
        self.fanout.send(connection, {"type": "pong", "timestamp": now_ms()})

    def handle_join_room(self, connection: Connection, message: msg.JoinRoom):
        room_id = (message.room or "").strip()
        user_name = (message.user_name or "").strip()
        if not room_id or not user_name:
            raise DomainError("missing_params", "Room name and user name are required", reply_type="join_room_error")

        previous_room = connection.room_id
        result = self.store.join(room_id, connection, user_name)
        if previous_room and previous_room != room_id:
            self._leave_room(connection, previous_room)

        self.fanout.send(connection, {
            "type": "room_joined",
            "roomId": room_id,
            "userName": user_name,
            "userId": connection.id,
            "code": result.document,
            "version": result.version,
            "users": result.members,
            "chatHistory": result.chat_history,
            "isReconnect": result.is_reconnect,
        })
        self.fanout.broadcast(room_id, {
            "type": "user_reconnected" if result.is_reconnect else "user_joined",
            "userName": user_name,
            "userId": connection.id,
            "users": result.members,
        }, exclude=connection.id)
        self.persist(self.backend.write_room, self._room_state(room_id))
        self.push_stats()

    def handle_leave_room(self, connection: Connection, message: msg.LeaveRoom):
        self._current_room(connection)
        self._leave_current_room(connection)
        self.push_stats()

    def handle_code_change(self, connection: Connection, message: msg.CodeChange):
        room = self._current_room(connection)
        version = self.store.apply_mutation(room.id, message.code, connection.display_name)
        self.edit_count += 1
        logger.debug(f"Code change in room {room.id}: version {version} by {connection.display_name}, "
                     f"force={message.force_update}")
        self.fanout.broadcast(room.id, {
            "type": "code_change",
            "code": message.code,
            "version": version,
            "userName": connection.display_name,
            "userId": connection.id,
            "timestamp": now_ms(),
            "roomId": room.id,
            "forceUpdate": message.force_update,
        }, exclude=connection.id)
        self.persist(self.backend.write_room, self._room_state(room.id))

    def handle_cursor_change(self, connection: Connection, message: msg.CursorChange):
        room = self._current_room(connection)
        self.store.set_cursor(room.id, connection.id, message.cursor)
        self.fanout.broadcast(room.id, {
            "type": "cursor_changed",
            "userId": connection.id,
            "userName": connection.display_name,
            "cursor": message.cursor,
        }, exclude=connection.id)

    def handle_chat_message(self, connection: Connection, message: msg.ChatMessage):
        room = self._current_room(connection)
        entry = self.store.append_chat(room.id, {
            "id": f"{now_ms()}_{connection.id}",
            "userId": connection.id,
            "userName": connection.display_name,
            "message": message.message,
            "timestamp": now_ms(),
            "isHistory": False,
        })
        self.fanout.broadcast(room.id, {"type": "chat_message", **entry})
        self.persist(self.backend.append_chat, room.id, entry)

    def handle_conflict_notification(self, connection: Connection, message: msg.ConflictNotification):
        room = self._current_room(connection)
        self.relay.relay(
            room.id, connection, message.target_user,
            message=message.message,
            conflict_data=message.conflict_data,
            original=message.model_dump(by_alias=True),
        )

    def handle_ai_request(self, connection: Connection, message: msg.AIRequest):
        action, request_id = message.action, message.request_id

        def reply(response: str, error: Optional[str] = None):
            self.fanout.send(connection, {
                "type": "ai_response",
                "action": action,
                "requestId": request_id,
                "response": response,
                "error": error,
                "timestamp": now_ms(),
            })

        if not self.assistant.enabled:
            return reply("The AI assistant is disabled or no API key is configured.", "ai_disabled")
        if self.assistant.resolve_action(action) is None:
            return reply(f"Unknown AI request type: {action}", "unknown_action")
        code = self.assistant.extract_code(action, message.data)
        if action != "conflict_analysis" and not code.strip():
            return reply("Type some Python code in the editor first, then ask the assistant.", "empty_code")

        def on_done(response, error):
            if error is not None:
                logger.error(f"AI request {action} from {connection.display_name} failed: {error}")
                return reply("Sorry, the AI assistant cannot handle your request right now. Please try again later.",
                             "ai_processing_failed")
            logger.info(f"AI response for {action} sent to {connection.display_name} ({len(response)} chars)")
            reply(response)

        self.dispatcher.offload_blocking(
            self.assistant.answer, action, code, message.data, connection.display_name, connection.room_id,
            on_done=on_done, connection=connection,
        )

    def handle_run_code(self, connection: Connection, message: msg.RunCode):
        room = self._current_room(connection)
        code = message.code or ""
        if not code.strip():
            self.fanout.send(connection, {
                "type": "code_execution_result",
                "success": False,
                "message": "Error: no code to execute",
                "timestamp": now_ms(),
            })
            return
        logger.info(f"{connection.display_name} requested execution in room {room.id} ({len(code)} chars)")
        room_id = room.id

        def on_done(result, error):
            if error is not None:
                logger.error(f"Sandbox task failed: {error}")
                success, output = False, "System error: execution failed"
            else:
                success, output = result.success, result.output
            self.fanout.send(connection, {
                "type": "code_execution_result",
                "success": success,
                "message": output,
                "timestamp": now_ms(),
            })
            if self.store.get(room_id) is not None:
                self.fanout.broadcast(room_id, {
                    "type": "user_executed_code",
                    "userName": connection.display_name,
                    "timestamp": now_ms(),
                }, exclude=connection.id)

        self.dispatcher.offload(self.sandbox.execute(code), on_done, connection=connection)

    def handle_load_code(self, connection: Connection, message: msg.LoadCode):
        room = self._current_room(connection, reply_type="code_loaded")
        current_version = message.current_version or 0
        result = self.store.load_latest(room.id, current_version)
        self.fanout.send(connection, {
            "type": "code_loaded",
            "success": True,
            "code": result.document,
            "version": result.version,
            "currentVersion": current_version,
            "isAlreadyLatest": result.is_already_latest,
            "roomId": room.id,
        })

    def handle_save_code(self, connection: Connection, message: msg.SaveCode):
        room = self._current_room(connection, reply_type="save_code_error")
        room_id = room.id
        entry = self.store.save_named(room_id, message.code, message.save_name, connection.display_name)
        self.edit_count += 1
        room_state = self._room_state(room_id)
        snapshot = self.store.to_snapshot(SERVER_VERSION)
        logger.info(f"{connection.display_name} saved {entry['saveName']!r} in room {room_id}, "
                    f"version {entry['version']}")

        def write():
            self.backend.append_save(room_id, entry)
            self.backend.write_room(room_state)
            self.backend.write_snapshot(snapshot)

        def on_done(result, error):
            if error is not None:
                logger.error(f"Persisting save for room {room_id} failed: {error}")
                self.reply_error(connection, "save_failed", "Saving to storage failed", reply_type="save_code_error")
                return
            self.fanout.send(connection, {
                "type": "save_code_success",
                "version": entry["version"],
                "saveName": entry["saveName"],
                "timestamp": entry["timestamp"],
            })
            if self.store.get(room_id) is not None:
                self.fanout.broadcast(room_id, {
                    "type": "code_version_updated",
                    "version": entry["version"],
                    "savedBy": connection.display_name,
                    "saveName": message.save_name,
                }, exclude=connection.id)

        self.dispatcher.offload_blocking(write, on_done=on_done, connection=connection)

    # -- teacher monitoring ----------------------------------------------------

    def _require_teacher(self, connection: Connection):
        if connection.id not in self.teacher_monitors:
            raise DomainError("not_teacher", "Only teacher monitors can do this")

    def handle_teacher_monitor(self, connection: Connection, message: msg.TeacherMonitor):
        connection.is_teacher = True
        self.teacher_monitors.add(connection.id)
        logger.info(f"Teacher monitor registered: {connection.id}")
        self.fanout.send(connection, self.stats_message())

    def handle_teacher_broadcast(self, connection: Connection, message: msg.TeacherBroadcast):
        self._require_teacher(connection)
        data = message.data
        self.store.require(data.target_room)
        logger.info(f"Teacher broadcast to room {data.target_room}: {data.message}")
        self.fanout.broadcast(data.target_room, {
            "type": "teacher_broadcast",
            "message": data.message,
            "messageType": data.message_type or "info",
            "timestamp": now_ms(),
        })

    def handle_teacher_chat(self, connection: Connection, message: msg.TeacherChat):
        self._require_teacher(connection)
        data = message.data
        if data.target_room == "all":
            room_ids = list(self.store.rooms)
            room_name = "All rooms"
        else:
            room_ids = [self.store.require(data.target_room).id]
            room_name = data.target_room

        entry = {
            "id": f"{now_ms()}_{connection.id}",
            "userId": connection.id,
            "userName": data.teacher_name or "Teacher",
            "message": data.message,
            "timestamp": now_ms(),
            "isTeacher": True,
        }
        for room_id in room_ids:
            self.store.append_chat(room_id, dict(entry))
            self.fanout.broadcast(room_id, {"type": "chat_message", **entry})
            self.persist(self.backend.append_chat, room_id, entry)

        for teacher_id in self.teacher_monitors:
            teacher = self.registry.lookup(teacher_id)
            if teacher is not None and teacher_id != connection.id:
                self.fanout.send(teacher, {"type": "chat_message", **entry, "roomName": room_name})

    def stats(self) -> dict:
        open_connections = self.registry.open_connections()
        return {
            "activeRooms": sum(1 for room in self.store.rooms.values() if room.members),
            "onlineStudents": sum(len(room.live_members()) for room in self.store.rooms.values()),
            "totalConnections": len(open_connections),
            "nonTeacherUsers": sum(1 for c in open_connections if not c.is_teacher),
            "editCount": self.edit_count,
            "timestamp": now_ms(),
        }

    def stats_message(self) -> dict:
        return {"type": "stats_update", "data": self.stats()}

    def push_stats(self):
        if not self.teacher_monitors:
            return
        update = self.stats_message()
        for teacher_id in list(self.teacher_monitors):
            self.fanout.send(self.registry.lookup(teacher_id), update)

    # -- housekeeping ----------------------------------------------------------

    def sweep(self):
        report = self.reaper.sweep()
        if report.rooms_removed or report.connections_removed:
            self.push_stats()
        return report

    def autosave(self):
        if not self.store.rooms:
            return
        self.persist(self.backend.write_snapshot, self.store.to_snapshot(SERVER_VERSION))

    def persist(self, fn: Callable, *args):
        """Fire-and-forget write; failures are logged and never touch in-memory state."""
        if not self.dispatcher.running:
            return
        self.dispatcher.offload_blocking(fn, *args)

    def _room_state(self, room_id: str) -> dict:
        room = self.store.get(room_id)
        return {
            "id": room.id,
            "code": room.code,
            "version": room.version,
            "last_edited_by": room.last_edited_by,
            "created_at": room.created_at,
            "last_activity": room.last_activity,
        }

    def uptime(self) -> int:
        return now_ms() - self.started_at
