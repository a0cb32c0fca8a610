from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///coaltrack.db"
    page_size: int = 1000
    marker_batch_size: int = 100
    marker_batch_pause: float = 0.01
    top_n: int = 20
    log_level: str = "INFO"
    map_width: int = 1200
    map_height: int = 700

    @classmethod
    def from_env(cls) -> "Settings":
        """
        If DATABASE_URL is set -> hosted Postgres.
        Else -> local SQLite for dev.
        """
        return cls(
            database_url=os.getenv("DATABASE_URL", "").strip() or cls.database_url,
            page_size=_env_int("COALTRACK_PAGE_SIZE", cls.page_size),
            marker_batch_size=_env_int("COALTRACK_MARKER_BATCH", cls.marker_batch_size),
            marker_batch_pause=_env_float("COALTRACK_MARKER_PAUSE", cls.marker_batch_pause),
            top_n=_env_int("COALTRACK_TOP_N", cls.top_n),
            log_level=os.getenv("COALTRACK_LOG_LEVEL", "").strip().upper() or cls.log_level,
            map_width=_env_int("COALTRACK_MAP_WIDTH", cls.map_width),
            map_height=_env_int("COALTRACK_MAP_HEIGHT", cls.map_height),
        )
