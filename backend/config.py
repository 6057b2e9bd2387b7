import os
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _parse_cors_origins() -> list[str]:
    raw = os.environ.get("CORS_ORIGINS", "http://localhost:3000")
    origins = [value.strip() for value in raw.split(",") if value.strip()]
    return origins or ["http://localhost:3000"]


def _parse_gemini_keys() -> list[str]:
    raw = os.environ.get("GEMINI_KEYS", "")
    return [value.strip() for value in raw.split(",") if value.strip()]


CORS_ORIGINS = _parse_cors_origins()
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# Chunk locking
LOCK_TIMEOUT_SECONDS = _env_int("LOCK_TIMEOUT_SECONDS", 60)
RETRY_AFTER_SECONDS = _env_int("RETRY_AFTER_SECONDS", 5)

# Draft creation
CHUNK_SIZE = _env_int("CHUNK_SIZE", 5)
CHUNK_OVERLAP = _env_int("CHUNK_OVERLAP", 1)
MAX_FILE_SIZE = _env_int("MAX_FILE_SIZE", 50 * 1024 * 1024)
DRAFT_EXPIRY_HOURS = _env_int("DRAFT_EXPIRY_HOURS", 48)

# AI extraction
EXTRACTION_RETRY_BUDGET = _env_int("EXTRACTION_RETRY_BUDGET", 2)
GEMINI_KEYS = _parse_gemini_keys()
GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-2.5-flash")

# Object storage
STORAGE = os.environ.get("STORAGE", "local").lower()
S3_BUCKET = os.environ.get("S3_BUCKET", "")
S3_ENDPOINT = os.environ.get("S3_ENDPOINT") or None
LOCAL_STORAGE_DIR = Path(os.environ.get("LOCAL_STORAGE_DIR", str(PROJECT_ROOT / "storage")))
