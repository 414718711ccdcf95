"""
StudyDesk – Runtime configuration
==================================
Values come from environment variables (optionally via a ``.env`` file at
the project root).  Import the module-level ``settings`` instance.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env", override=False)


def _default_database_url() -> str:
    data_dir = BASE_DIR / "data"
    return f"sqlite:///{data_dir / 'studydesk.db'}"


@dataclass(frozen=True)
class Settings:
    database_url: str = os.getenv("DATABASE_URL", _default_database_url())

    # Agenda day bucketing zone
    timezone: str = os.getenv("STUDYDESK_TIMEZONE", "America/Santiago")

    # Practice sessions
    session_limit: int = int(os.getenv("STUDYDESK_SESSION_LIMIT", "50"))
    include_new_limit: int = int(os.getenv("STUDYDESK_INCLUDE_NEW_LIMIT", "20"))
    again_retry_cap: int = int(os.getenv("STUDYDESK_AGAIN_RETRY_CAP", "3"))
    requeue_gap: int = int(os.getenv("STUDYDESK_REQUEUE_GAP", "4"))
    write_backoff_seconds: float = float(os.getenv("STUDYDESK_WRITE_BACKOFF", "0.5"))
    barrier_timeout_seconds: float = float(os.getenv("STUDYDESK_BARRIER_TIMEOUT", "5"))


settings = Settings()
