# environment driven settings for the data layer
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from utils.logger import get_logger

_logger = get_logger(__name__)

LOCAL = "local"
REMOTE = "remote"
DATA_SOURCES = (LOCAL, REMOTE)


@dataclass(frozen=True)
class Settings:
    local_db_path: str = "data/db.sqlite"
    data_source_state_path: str = "data/data_source.json"
    mongodb_url: Optional[str] = None
    mongodb_database: str = "marketplace"
    mongodb_timeout_ms: int = 5000
    default_data_source: str = LOCAL

    @property
    def remote_configured(self) -> bool:
        return bool(self.mongodb_url)


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        _logger.warning(f"{key}={raw!r} is not an integer, using {default}")
        return default


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if env is None else env
    source = env.get("DATA_SOURCE", LOCAL).strip().lower()
    if source not in DATA_SOURCES:
        _logger.warning(f"Unknown DATA_SOURCE {source!r}, using '{LOCAL}'")
        source = LOCAL
    return Settings(
        local_db_path=env.get("LOCAL_DB_PATH") or Settings.local_db_path,
        data_source_state_path=env.get("DATA_SOURCE_STATE_PATH") or Settings.data_source_state_path,
        mongodb_url=env.get("MONGODB_URL") or None,
        mongodb_database=env.get("MONGODB_DATABASE") or Settings.mongodb_database,
        mongodb_timeout_ms=_int(env, "MONGODB_TIMEOUT_MS", Settings.mongodb_timeout_ms),
        default_data_source=source,
    )
