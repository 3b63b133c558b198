"""
ChatRelay Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database file
_repo_default_db = BASE_DIR / "data" / "relay.db"
_user_default_db = Path.home() / ".chatrelay" / "relay.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}


def _setting(name: str, default):
    return os.getenv(f"CHATRELAY_{name}", config_data.get(name, default))


if os.getenv("CHATRELAY_DB"):
    DB_PATH = os.getenv("CHATRELAY_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# HTTP server - default to localhost only for security
HOST = _setting("HOST", "127.0.0.1")
PORT = int(_setting("PORT", "39780"))
RELAY_VERSION = "0.1.0"

# Session heartbeat timeout (seconds). Sessions silent for this long are dropped.
SESSION_HEARTBEAT_TIMEOUT = int(_setting("HEARTBEAT_TIMEOUT", "60"))
# How often stale sessions are swept (seconds)
SESSION_SWEEP_INTERVAL = int(_setting("SESSION_SWEEP_INTERVAL", "15"))

# Upper bound on a single identity-provider call during the handshake (seconds)
AUTH_TIMEOUT = float(_setting("AUTH_TIMEOUT", "5"))
# Claims freshness: "none" re-verifies the token on every authorize call,
# "session-ttl" trusts the claims captured at the handshake.
CLAIMS_CACHE_MODE = str(_setting("CLAIMS_CACHE_MODE", "session-ttl")).lower()
CLAIMS_CACHE_MODES = {"none", "session-ttl"}
if CLAIMS_CACHE_MODE not in CLAIMS_CACHE_MODES:
    raise ValueError(f"CHATRELAY_CLAIMS_CACHE_MODE must be one of {sorted(CLAIMS_CACHE_MODES)}")

# Role allowed to manage membership of conversations it does not belong to
ADMIN_ROLE = _setting("ADMIN_ROLE", "chat-admin")

# Static token map for development: {"token": {"subject": "...", "roles": [...]}}
STATIC_TOKENS = _setting("STATIC_TOKENS", {})
if isinstance(STATIC_TOKENS, str):
    STATIC_TOKENS = json.loads(STATIC_TOKENS) if STATIC_TOKENS.strip() else {}

# OAuth2 token introspection (Keycloak: /realms/<realm>/protocol/openid-connect/token/introspect)
INTROSPECTION_URL = _setting("INTROSPECTION_URL", "")
INTROSPECTION_CLIENT_ID = _setting("INTROSPECTION_CLIENT_ID", "")
INTROSPECTION_CLIENT_SECRET = _setting("INTROSPECTION_CLIENT_SECRET", "")

# Delivery tracking: unacknowledged records are retried every RETRY_INTERVAL
# seconds, up to MAX_RETRIES attempts, then expired.
DELIVERY_RETRY_INTERVAL = int(_setting("DELIVERY_RETRY_INTERVAL", "30"))
DELIVERY_MAX_RETRIES = int(_setting("DELIVERY_MAX_RETRIES", "5"))
DELIVERY_SWEEP_INTERVAL = int(_setting("DELIVERY_SWEEP_INTERVAL", "10"))
# Acknowledged and expired records older than this are purged (0 = keep forever)
DELIVERY_RETENTION_HOURS = int(_setting("DELIVERY_RETENTION_HOURS", "72"))

# Events older than this are pruned from the fan-out table (seconds)
EVENT_MAX_AGE = int(_setting("EVENT_MAX_AGE", "600"))


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "HEARTBEAT_TIMEOUT": SESSION_HEARTBEAT_TIMEOUT,
        "AUTH_TIMEOUT": AUTH_TIMEOUT,
        "CLAIMS_CACHE_MODE": CLAIMS_CACHE_MODE,
        "DELIVERY_RETRY_INTERVAL": DELIVERY_RETRY_INTERVAL,
        "DELIVERY_MAX_RETRIES": DELIVERY_MAX_RETRIES,
        "DELIVERY_SWEEP_INTERVAL": DELIVERY_SWEEP_INTERVAL,
        "DELIVERY_RETENTION_HOURS": DELIVERY_RETENTION_HOURS,
    }


def save_config_dict(new_data: dict):
    config_file = BASE_DIR / "data" / "config.json"
    config_file.parent.mkdir(parents=True, exist_ok=True)

    current = {}
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            current = json.load(f)

    current.update(new_data)
    with open(config_file, "w", encoding="utf-8") as f:
        json.dump(current, f, indent=2)
