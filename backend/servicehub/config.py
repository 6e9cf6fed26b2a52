import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

DEFAULT_DATA_DIR = Path(__file__).resolve().parents[1] / "data"

UNREAD_COUNTER_MODES = {"increment", "literal"}
GATEWAY_BACKENDS = {"sqlite", "firebase"}
ACCOUNT_ROLES = {"customer", "provider"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_positive_int(name: str, default: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


def _env_positive_float(name: str, default: float) -> float:
    try:
        value = float(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


def _env_choice(name: str, default: str, allowed: set[str]) -> str:
    value = os.getenv(name, default).strip().lower()
    return value if value in allowed else default


def _parse_csv_env(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    gateway_backend: str = "sqlite"
    db_path: str = str(DEFAULT_DATA_DIR / "servicehub.sqlite3")
    blob_dir: str = str(DEFAULT_DATA_DIR / "blobs")
    blob_base_url: str = "/blobs"
    firebase_credentials_path: Optional[str] = None
    firebase_storage_bucket: Optional[str] = None
    firebase_web_api_key: Optional[str] = None
    default_role_for_federated_sign_in: str = "customer"
    unread_counter_mode: str = "increment"
    enforce_booking_transitions: bool = True
    session_secret: str = "dev-insecure-secret-change-me"
    session_ttl_hours: int = 24
    http_timeout_seconds: float = 10.0
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    trusted_hosts: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            gateway_backend=_env_choice("GATEWAY_BACKEND", "sqlite", GATEWAY_BACKENDS),
            db_path=os.getenv("SERVICEHUB_DB_PATH", str(DEFAULT_DATA_DIR / "servicehub.sqlite3")),
            blob_dir=os.getenv("SERVICEHUB_BLOB_DIR", str(DEFAULT_DATA_DIR / "blobs")),
            blob_base_url=os.getenv("SERVICEHUB_BLOB_BASE_URL", "/blobs").rstrip("/") or "/blobs",
            firebase_credentials_path=os.getenv("FIREBASE_CREDENTIALS_PATH", "").strip() or None,
            firebase_storage_bucket=os.getenv("FIREBASE_STORAGE_BUCKET", "").strip() or None,
            firebase_web_api_key=os.getenv("FIREBASE_WEB_API_KEY", "").strip() or None,
            default_role_for_federated_sign_in=_env_choice(
                "DEFAULT_ROLE_FOR_FEDERATED_SIGN_IN", "customer", ACCOUNT_ROLES
            ),
            unread_counter_mode=_env_choice("UNREAD_COUNTER_MODE", "increment", UNREAD_COUNTER_MODES),
            enforce_booking_transitions=_env_bool("ENFORCE_BOOKING_TRANSITIONS", True),
            session_secret=os.getenv("SESSION_SECRET", "dev-insecure-secret-change-me"),
            session_ttl_hours=_env_positive_int("SESSION_TTL_HOURS", 24),
            http_timeout_seconds=_env_positive_float("HTTP_TIMEOUT_SECONDS", 10.0),
            cors_origins=_parse_csv_env("CORS_ORIGINS", "*"),
            trusted_hosts=_parse_csv_env("TRUSTED_HOSTS", "*"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
