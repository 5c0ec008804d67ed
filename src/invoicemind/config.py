"""Runtime settings read from the environment (and an optional .env file)."""

import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_DB_PATH = Path("database") / "memory.db"


class Settings(BaseModel):
    """Settings for the memory store and logging.

    Attributes:
        db_path: SQLite database file holding all learned memories
        log_level: Standard library log level name
        log_json: Emit JSON log lines instead of console output
    """

    db_path: Path = Field(default=DEFAULT_DB_PATH)
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            db_path=Path(os.getenv("INVOICEMIND_DB_PATH", str(DEFAULT_DB_PATH))),
            log_level=os.getenv("INVOICEMIND_LOG_LEVEL", "INFO").upper(),
            log_json=os.getenv("INVOICEMIND_LOG_JSON", "false").lower()
            in ("1", "true", "yes"),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
