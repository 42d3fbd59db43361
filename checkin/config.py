"""Application configuration.

Values come from the environment (optionally a ``.env`` file) so the same
build can run the local JSON variant or the synced SQLite variant.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

TICKET_ID_PREFIX = "T-"
TICKET_ID_LENGTH = 9
DEFAULT_EVENT_ID = "default"
SETTINGS_ROW_KEY = "event"
LOCK_TIMEOUT = 5
MAX_ID_ATTEMPTS = 5

BACKEND_LOCAL = "local"
BACKEND_SQLITE = "sqlite"


@dataclass(frozen=True)
class AppConfig:
    data_dir: Path = field(default_factory=lambda: Path("data"))
    backend: str = BACKEND_SQLITE
    admin_username: str = "admin"
    admin_password: str = "admin"
    scan_cooldown_ms: int = 2000
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.backend not in (BACKEND_LOCAL, BACKEND_SQLITE):
            raise ValueError(f"Unknown backend: {self.backend!r}")
        if self.scan_cooldown_ms < 0:
            raise ValueError("Scan cooldown cannot be negative")

    @classmethod
    def from_env(cls) -> "AppConfig":
        load_dotenv()
        return cls(
            data_dir=Path(os.environ.get("CHECKIN_DATA_DIR", "data")),
            backend=os.environ.get("CHECKIN_BACKEND", BACKEND_SQLITE).lower(),
            admin_username=os.environ.get("CHECKIN_ADMIN_USERNAME", "admin"),
            admin_password=os.environ.get("CHECKIN_ADMIN_PASSWORD", "admin"),
            scan_cooldown_ms=int(os.environ.get("CHECKIN_SCAN_COOLDOWN_MS", "2000")),
            log_level=os.environ.get("CHECKIN_LOG_LEVEL", "INFO").upper(),
        )

    @property
    def db_path(self) -> Path:
        return self.data_dir / "checkin.db"

    @property
    def admin_db_path(self) -> Path:
        return self.data_dir / "admin.db"
