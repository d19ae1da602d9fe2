import json
import os
import tempfile
import threading
from typing import Optional

import redis

from constants import BACKUP_FILE, MAX_SAVE_HISTORY, PERSISTENCE_MODE, REDIS_HOST, REDIS_PASSWORD, REDIS_PORT
from engine.errors import PersistenceError
from logging_config import get_logger
from redis_keys import REDIS_CHAT_KEY, REDIS_HISTORY_KEY, REDIS_ROOM_KEY, REDIS_SNAPSHOT_KEY

logger = get_logger(__name__)


class FileBackend:
    """Keeps the whole server state in one JSON snapshot file."""

    mode = "file"

    def __init__(self, path: str = BACKUP_FILE, history_cap: Optional[int] = MAX_SAVE_HISTORY):
        self.path = path
        self.history_cap = history_cap
        # Autosave, save_code and shutdown can all write from executor threads
        self._write_lock = threading.Lock()
        logger.info(f"Initializing FileBackend with snapshot file {path}")

    # Per-record writes are covered by the periodic snapshot
    def write_room(self, room: dict):
        pass

    def append_chat(self, room_id: str, entry: dict):
        pass

    def append_save(self, room_id: str, entry: dict):
        pass

    def write_snapshot(self, document: dict):
        directory = os.path.dirname(self.path) or "."
        with self._write_lock:
            tmp_path = None
            try:
                os.makedirs(directory, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(prefix=f"{os.path.basename(self.path)}.", suffix=".tmp", dir=directory)
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(document, f, ensure_ascii=False, indent=2)
                os.replace(tmp_path, self.path)
            except (OSError, TypeError, ValueError) as e:
                logger.error(f"Failed to write snapshot to {self.path}: {e}", exc_info=True)
                if tmp_path is not None and os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise PersistenceError(str(e)) from e
        logger.info(f"Saved snapshot with {len(document.get('rooms', []))} rooms to {self.path}")

    def load_snapshot(self) -> Optional[dict]:
        if not os.path.exists(self.path):
            logger.info(f"No snapshot at {self.path}, starting empty")
            return None
        try:
            with open(self.path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load snapshot from {self.path}: {e}", exc_info=True)
            return None


class RedisBackend:
    """Write-through persistence of rooms, chat and named saves into Redis."""

    mode = "redis"
    history_cap = None

    def __init__(self, client: Optional[redis.Redis] = None):
        if client is None:
            logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
            client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
        self.redis_client = client
        try:
            self.redis_client.ping()
            logger.info("Redis client connected successfully")
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
            raise PersistenceError(str(e)) from e

    def write_room(self, room: dict):
        key = REDIS_ROOM_KEY.format(slug=room["id"])
        # Redis hashes hold strings, skip None values
        mapping = {}
        for k, v in room.items():
            if v is None:
                continue
            if isinstance(v, (dict, list)):
                mapping[k] = json.dumps(v, ensure_ascii=False)
            else:
                mapping[k] = str(v)
        try:
            self.redis_client.hset(key, mapping=mapping)
        except redis.RedisError as e:
            raise PersistenceError(f"write_room {room['id']}: {e}") from e
        logger.debug(f"Room {room['id']} written to {key}")

    def append_chat(self, room_id: str, entry: dict):
        self._rpush(REDIS_CHAT_KEY.format(slug=room_id), entry)

    def append_save(self, room_id: str, entry: dict):
        self._rpush(REDIS_HISTORY_KEY.format(slug=room_id), entry)

    def _rpush(self, key: str, entry: dict):
        try:
            self.redis_client.rpush(key, json.dumps(entry, ensure_ascii=False))
        except redis.RedisError as e:
            raise PersistenceError(f"rpush {key}: {e}") from e
        logger.debug(f"Appended entry to {key}")

    def write_snapshot(self, document: dict):
        try:
            self.redis_client.set(REDIS_SNAPSHOT_KEY, json.dumps(document, ensure_ascii=False))
        except redis.RedisError as e:
            logger.error(f"Failed to write snapshot to Redis: {e}", exc_info=True)
            raise PersistenceError(str(e)) from e
        logger.info(f"Saved snapshot with {len(document.get('rooms', []))} rooms to Redis")

    def load_snapshot(self) -> Optional[dict]:
        try:
            raw = self.redis_client.get(REDIS_SNAPSHOT_KEY)
        except redis.RedisError as e:
            logger.error(f"Failed to load snapshot from Redis: {e}", exc_info=True)
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt snapshot in Redis: {e}")
            return None


def create_backend(mode: str = PERSISTENCE_MODE):
    if mode == "redis":
        try:
            return RedisBackend()
        except PersistenceError:
            logger.warning("Redis unavailable, falling back to file snapshots")
    return FileBackend()
