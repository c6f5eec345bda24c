import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]
DB_PATH = Path(os.getenv("DISPATCH_DB_PATH", str(BASE_DIR / "dispatch.db")))
LOG_DIR = os.getenv("LOG_DIR", "")
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
TOKEN_EXPIRE_HOURS = int(os.getenv("TOKEN_EXPIRE_HOURS", "24"))
COUNTER_TTL_SECONDS = float(os.getenv("COUNTER_TTL_SECONDS", "30"))
DELIVERY_MAX_ATTEMPTS = int(os.getenv("DELIVERY_MAX_ATTEMPTS", "3"))
TRANSITION_POLICY = os.getenv("TRANSITION_POLICY", "forward_only")
RECENT_EVENTS_LIMIT = int(os.getenv("RECENT_EVENTS_LIMIT", "200"))

DB_PATH.parent.mkdir(parents=True, exist_ok=True)
