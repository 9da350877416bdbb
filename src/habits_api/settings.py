from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

BACKENDS = ("memory", "sqlite")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
TRUE_VALUES = {"1", "true", "yes", "on"}


def _read(env: Mapping[str, str], name: str, default: str) -> str:
    # Unset and empty variables both mean "use the default".
    raw = env.get(name)
    return raw.strip() if raw and raw.strip() else default


def _read_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    try:
        parsed = int(_read(env, name, str(default)))
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _split_origins(raw: str) -> List[str]:
    if raw == "*":
        return ["*"]
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


@dataclass(frozen=True)
class Settings:
    """
    Runtime configuration, read from environment variables.

    - PERSISTENCE_BACKEND: 'memory' (default) or 'sqlite'; anything else means memory
    - SQLITE_DB_PATH: document store file for the sqlite backend (default './data/habits.db')
    - CORS_ALLOW_ORIGINS: '*' (default) or a comma-separated origin list
    - ENABLE_BASIC_AUTH: guard the user-scoped API with HTTP Basic (default: false)
    - BASIC_AUTH_USERNAME / BASIC_AUTH_PASSWORD: the accepted credentials
    - LOG_LEVEL: root log level name (default: INFO)
    - NAVIGATION_MONTHS_AHEAD: months past the current one the UI may browse (default: 3)
    - ORPHAN_LOG_PATH: report file of the orphan CLI (default: './orphaned-instances.log')
    - ORPHAN_LOG_LIMIT: orphans written to that report at most (default: 100)
    """

    persistence_backend: str = "memory"
    sqlite_db_path: str = "./data/habits.db"
    cors_allow_origins: List[str] = field(default_factory=lambda: ["*"])
    enable_basic_auth: bool = False
    basic_auth_username: Optional[str] = None
    basic_auth_password: Optional[str] = None
    log_level: str = "INFO"
    navigation_months_ahead: int = 3
    orphan_log_path: str = "./orphaned-instances.log"
    orphan_log_limit: int = 100

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env

        backend = _read(env, "PERSISTENCE_BACKEND", "memory").lower()
        if backend not in BACKENDS:
            backend = "memory"
        level = _read(env, "LOG_LEVEL", "INFO").upper()
        if level not in LOG_LEVELS:
            level = "INFO"
        auth = _read(env, "ENABLE_BASIC_AUTH", "false").lower() in TRUE_VALUES

        return cls(
            persistence_backend=backend,
            sqlite_db_path=_read(env, "SQLITE_DB_PATH", cls.sqlite_db_path),
            cors_allow_origins=_split_origins(_read(env, "CORS_ALLOW_ORIGINS", "*")),
            enable_basic_auth=auth,
            basic_auth_username=env.get("BASIC_AUTH_USERNAME") if auth else None,
            basic_auth_password=env.get("BASIC_AUTH_PASSWORD") if auth else None,
            log_level=level,
            navigation_months_ahead=_read_int(env, "NAVIGATION_MONTHS_AHEAD", cls.navigation_months_ahead),
            orphan_log_path=_read(env, "ORPHAN_LOG_PATH", cls.orphan_log_path),
            orphan_log_limit=_read_int(env, "ORPHAN_LOG_LIMIT", cls.orphan_log_limit, minimum=1),
        )


# PUBLIC_INTERFACE
def get_settings() -> Settings:
    """Return application settings loaded from the process environment."""
    return Settings.from_env()
