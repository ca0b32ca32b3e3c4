import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DATA_DIR = Path(os.getenv("PRESENCEBOOK_DATA_DIR", BASE_DIR / "data"))
DB_PATH = Path(os.getenv("PRESENCEBOOK_DB_PATH", DATA_DIR / "presencebook.db"))
MEDIA_DIR = Path(os.getenv("PRESENCEBOOK_MEDIA_DIR", DATA_DIR / "media"))
MEDIA_BASE_URL = os.getenv("PRESENCEBOOK_MEDIA_BASE_URL", "/media").rstrip("/")

ADMIN_EMAIL = os.getenv("PRESENCEBOOK_ADMIN_EMAIL", "admin@presencebook.local").strip().lower() or "admin@presencebook.local"
ADMIN_PASSWORD = os.getenv("PRESENCEBOOK_ADMIN_PASSWORD", "admin123").strip() or "admin123"
SIGNING_KEY = os.getenv("PRESENCEBOOK_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("PRESENCEBOOK_AUTH_TOKEN_TTL_SECONDS", "43200"))
LOG_LEVEL = os.getenv("PRESENCEBOOK_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_float(value: str | None, fallback: float) -> float:
    if not value:
        return fallback
    try:
        parsed = float(value)
    except ValueError:
        return fallback
    return parsed if parsed > 0 else fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("PRESENCEBOOK_CORS_ALLOW_ORIGINS"),
    ["http://localhost:8081", "http://127.0.0.1:8081", "http://localhost:19006"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("PRESENCEBOOK_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("PRESENCEBOOK_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("PRESENCEBOOK_CORS_ALLOW_CREDENTIALS"), True)

# Remote call bounds (seconds)
READ_TIMEOUT_SECONDS = _parse_float(os.getenv("PRESENCEBOOK_READ_TIMEOUT_SECONDS"), 3.0)
CRITICAL_WRITE_TIMEOUT_SECONDS = _parse_float(os.getenv("PRESENCEBOOK_CRITICAL_WRITE_TIMEOUT_SECONDS"), 5.0)
BACKGROUND_WRITE_TIMEOUT_SECONDS = _parse_float(os.getenv("PRESENCEBOOK_BACKGROUND_WRITE_TIMEOUT_SECONDS"), 10.0)
UPLOAD_TIMEOUT_SECONDS = _parse_float(os.getenv("PRESENCEBOOK_UPLOAD_TIMEOUT_SECONDS"), 10.0)

# Media
INLINE_IMAGE_MAX_BYTES = int(os.getenv("PRESENCEBOOK_INLINE_IMAGE_MAX_BYTES", "900000"))
IMAGE_MAX_EDGE = int(os.getenv("PRESENCEBOOK_IMAGE_MAX_EDGE", "800"))
IMAGE_JPEG_QUALITY = int(os.getenv("PRESENCEBOOK_IMAGE_JPEG_QUALITY", "70"))
UPLOAD_MAX_BYTES = int(os.getenv("PRESENCEBOOK_UPLOAD_MAX_BYTES", str(10 * 1024 * 1024)))

# Activity logging
DUPLICATE_GUARD_WINDOW = max(1, int(os.getenv("PRESENCEBOOK_DUPLICATE_GUARD_WINDOW", "3")))

# Role fallback when the profile store cannot be reached
ADMIN_EMAIL_KEYWORDS = _parse_csv(os.getenv("PRESENCEBOOK_ADMIN_EMAIL_KEYWORDS"), ["admin"])
EMPLOYEE_EMAIL_KEYWORDS = _parse_csv(
    os.getenv("PRESENCEBOOK_EMPLOYEE_EMAIL_KEYWORDS"),
    ["ansatt", "employee"],
)
