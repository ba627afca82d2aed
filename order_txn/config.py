import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _get_int(name: str, fallback: Optional[int]) -> Optional[int]:
    raw_value = os.getenv(name)
    if not raw_value:
        return fallback
    return int(raw_value)


def _get_float(name: str, fallback: float) -> float:
    raw_value = os.getenv(name)
    if not raw_value:
        return fallback
    return float(raw_value)


@dataclass(frozen=True)
class Settings:
    mongodb_uri: Optional[str] = None
    database: str = "testdb"
    max_attempts: int = 3
    initial_backoff: float = 0.05
    max_commit_time_ms: Optional[int] = None

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        load_dotenv(env_file or Path.cwd() / ".env")
        return cls(
            mongodb_uri=os.getenv("MONGODB_URI") or None,
            database=os.getenv("ORDER_TXN_DATABASE", "testdb"),
            max_attempts=_get_int("ORDER_TXN_MAX_ATTEMPTS", 3),
            initial_backoff=_get_float("ORDER_TXN_INITIAL_BACKOFF", 0.05),
            max_commit_time_ms=_get_int("ORDER_TXN_MAX_COMMIT_TIME_MS", None),
        )

    def require_uri(self) -> str:
        if not self.mongodb_uri:
            raise RuntimeError("Missing required environment variable: MONGODB_URI")
        return self.mongodb_uri
