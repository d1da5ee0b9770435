import os
from typing import List, Optional

from pydantic import BaseModel, Field

DEFAULT_STUN_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
]


class Settings(BaseModel):
    db_path: str = "roomsync.db"
    poll_interval: float = Field(default=0.5, gt=0)
    change_retention: int = Field(default=300, gt=0)  # seconds a change log row is kept
    signal_ttl: int = Field(default=120, gt=0)  # seconds before an unconsumed signal is purged
    stun_servers: List[str] = Field(default_factory=lambda: list(DEFAULT_STUN_SERVERS))
    log_file: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        """Build settings from ROOMSYNC_* variables, keeping defaults for unset ones."""
        environ = os.environ if environ is None else environ
        values = {}
        for field in ("db_path", "poll_interval", "change_retention", "signal_ttl", "log_file", "log_level"):
            raw = environ.get(f"ROOMSYNC_{field.upper()}")
            if raw:
                values[field] = raw
        stun = environ.get("ROOMSYNC_STUN_SERVERS")
        if stun:
            values["stun_servers"] = [url.strip() for url in stun.split(",") if url.strip()]
        return cls.model_validate(values)
