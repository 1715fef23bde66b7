import os


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# "memory" keeps everything in-process, "redis" persists messages and rooms in Redis
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "memory")

DEFAULT_ROOM = os.getenv("DEFAULT_ROOM", "general")
HISTORY_LIMIT = int(os.getenv("HISTORY_LIMIT", 50))
ROOM_HISTORY_MAX_QUERY = 200
DM_HISTORY_MAX = int(os.getenv("DM_HISTORY_MAX", 500))

CALL_TIMEOUT_SECONDS = float(os.getenv("CALL_TIMEOUT_SECONDS", 30))

PURGE_EMPTY_ROOMS = _env_flag("PURGE_EMPTY_ROOMS", True)
PERSIST_OFFLINE_DM = _env_flag("PERSIST_OFFLINE_DM", False)
ROOM_CALL_SIGNAL_REQUIRES_PARTICIPANT = _env_flag("ROOM_CALL_SIGNAL_REQUIRES_PARTICIPANT", True)

UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(os.getcwd(), "uploads"))
