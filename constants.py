import os
import sys

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8080))

PUBLIC_URL = os.getenv("PUBLIC_URL", "http://localhost:8080")
CORS_ORIGIN = os.getenv("CORS_ORIGIN", "*")

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# "file" keeps a JSON snapshot on disk, "redis" writes through to Redis
PERSISTENCE_MODE = os.getenv("PERSISTENCE_MODE", "file")
DATA_DIR = os.getenv("DATA_DIR", os.getcwd())
BACKUP_FILE = os.path.join(DATA_DIR, os.getenv("BACKUP_FILE", "collaboration_data.json"))
MAX_SAVE_HISTORY = int(os.getenv("MAX_SAVE_HISTORY", 50))

# Intervals below are in milliseconds, like the environment variables
AUTO_SAVE_INTERVAL = int(os.getenv("AUTO_SAVE_INTERVAL", 30000))
WEBSOCKET_TIMEOUT = int(os.getenv("WEBSOCKET_TIMEOUT", 30000))
CLEANUP_INTERVAL = int(os.getenv("CLEANUP_INTERVAL", 300000))
ROOM_GRACE_PERIOD = int(os.getenv("ROOM_GRACE_PERIOD", 120000))

MAX_CONCURRENT_USERS = int(os.getenv("MAX_CONCURRENT_USERS", 60))
MAX_ROOMS = int(os.getenv("MAX_ROOMS", 20))
MAX_USERS_PER_ROOM = int(os.getenv("MAX_USERS_PER_ROOM", 5))

EXECUTION_TIMEOUT = 10  # seconds
SANDBOX_MAX_CONCURRENT = int(os.getenv("SANDBOX_MAX_CONCURRENT", 4))
PYTHON_COMMAND = os.getenv("PYTHON_COMMAND", "python" if sys.platform == "win32" else "python3")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-3.5-turbo")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_MAX_TOKENS = int(os.getenv("OPENAI_MAX_TOKENS", 2000))
OPENAI_TEMPERATURE = float(os.getenv("OPENAI_TEMPERATURE", 0.7))
OPENAI_TIMEOUT = int(os.getenv("OPENAI_TIMEOUT", 30000))

SERVER_VERSION = "2.1.0"
