"""
app/config.py
-----------------------------------------------------------------------------
Environment-driven settings.

``load_dotenv()`` runs at import so a ``.env`` file next to the process is
honoured (no-op if the file doesn't exist).  Values are read once by
``load_settings()`` into a frozen dataclass; nothing else in the project
calls ``os.getenv``.

Environment variables
---------------------
ADMIN_PASS           – Shared secret for the admin endpoints (default ``admin123``).
CLEANUP_SECONDS      – Artifact retention window in seconds (default 3600).
TEMPLATES_DIR        – Template blob store (default ``<repo>/templates``).
GENERATED_DIR        – Generated artifact store (default ``<repo>/generated``).
LEDGER_FILE          – JSONL ledger path (default ``<repo>/data/ledger.jsonl``).
DEFAULT_REPLACE_PATH – Entry replaced when a request names none
                       (default ``assets/www/index.html``).
MAX_UPLOAD_SIZE      – Per-upload byte limit (default 20 MB).
CORS_ORIGINS         – Comma-separated allowed origins (default ``*``).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from app.schema import DEFAULT_TARGET_ENTRY_PATH

load_dotenv()

logger = logging.getLogger(__name__)

# Repository root: app/ lives directly beneath it.
_ROOT = Path(__file__).resolve().parent.parent

DEFAULT_ADMIN_PASS: str = "admin123"
DEFAULT_CLEANUP_SECONDS: int = 3600
DEFAULT_MAX_UPLOAD_SIZE: int = 20 * 1024 * 1024


@dataclass(frozen=True)
class Settings:
    admin_pass: str
    cleanup_seconds: int
    templates_dir: Path
    generated_dir: Path
    ledger_file: Path
    default_replace_path: str
    max_upload_size: int
    cors_origins: tuple[str, ...]


def _int_env(name: str, default: int) -> int:
    """Read a positive integer, falling back to *default* on bad input."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("%s=%r is not an integer; using %d", name, raw, default)
        return default
    if value <= 0:
        logger.warning("%s=%d must be positive; using %d", name, value, default)
        return default
    return value


def _path_env(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    return Path(raw).expanduser() if raw else default


def load_settings() -> Settings:
    origins = tuple(
        origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()
    )
    return Settings(
        admin_pass=os.getenv("ADMIN_PASS", DEFAULT_ADMIN_PASS),
        cleanup_seconds=_int_env("CLEANUP_SECONDS", DEFAULT_CLEANUP_SECONDS),
        templates_dir=_path_env("TEMPLATES_DIR", _ROOT / "templates"),
        generated_dir=_path_env("GENERATED_DIR", _ROOT / "generated"),
        ledger_file=_path_env("LEDGER_FILE", _ROOT / "data" / "ledger.jsonl"),
        default_replace_path=os.getenv("DEFAULT_REPLACE_PATH", DEFAULT_TARGET_ENTRY_PATH),
        max_upload_size=_int_env("MAX_UPLOAD_SIZE", DEFAULT_MAX_UPLOAD_SIZE),
        cors_origins=origins or ("*",),
    )
