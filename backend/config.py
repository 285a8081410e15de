import os

DATABASE_URL = os.environ.get("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.environ.get("DATABASE_NAME", "quiz_app")
DATABASE_TIMEOUT_MS = int(os.environ.get("DATABASE_TIMEOUT_MS", "5000"))

# "auto" pings Mongo at startup and falls back to memory, "mongo" or "memory" force one
STORAGE_BACKEND = os.environ.get("STORAGE_BACKEND", "auto").lower()

ROOM_CODE_ATTEMPTS = int(os.environ.get("ROOM_CODE_ATTEMPTS", "5"))
BATTLE_ENFORCE_DEADLINE = os.environ.get("BATTLE_ENFORCE_DEADLINE", "false").lower() in ("1", "true", "yes")
BATTLE_GRACE_SECONDS = float(os.environ.get("BATTLE_GRACE_SECONDS", "2"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))
