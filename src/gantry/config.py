from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_HOME = ".gantry"
SECRET_PREFIX = "GANTRY_SECRET_"


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _int(value: Optional[str], default: Optional[int]) -> Optional[int]:
    if value is None or value == "":
        return default
    return int(value)


@dataclass(frozen=True)
class Settings:
    home: Path = Path(DEFAULT_HOME)
    database_url: Optional[str] = None
    max_parallel: Optional[int] = None
    poll_interval: float = 0.2

    # scheduling policy
    needs_success_only: bool = False
    auto_approve: bool = True

    # cache / artifacts
    strict_hash_files: bool = False
    cache_max_bytes: Optional[int] = 5 * 1024 ** 3
    cache_max_age_days: Optional[int] = 7
    artifact_retention_days: int = 90

    secret_prefix: str = SECRET_PREFIX

    @property
    def db_url(self) -> str:
        return self.database_url or f"sqlite:///{(self.home / 'state.db').resolve()}"

    @property
    def blob_root(self) -> Path:
        return self.home / "blobs"

    @property
    def workers(self) -> int:
        if self.max_parallel:
            return self.max_parallel
        c = os.cpu_count() or 2
        return max(1, c - 1)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            home=Path(env.get("GANTRY_HOME", DEFAULT_HOME)),
            database_url=env.get("GANTRY_DATABASE_URL") or None,
            max_parallel=_int(env.get("GANTRY_MAX_PARALLEL"), None),
            poll_interval=float(env.get("GANTRY_POLL_INTERVAL", defaults.poll_interval)),
            needs_success_only=_flag(env.get("GANTRY_NEEDS_SUCCESS_ONLY"), defaults.needs_success_only),
            auto_approve=_flag(env.get("GANTRY_AUTO_APPROVE"), defaults.auto_approve),
            strict_hash_files=_flag(env.get("GANTRY_STRICT_HASH_FILES"), defaults.strict_hash_files),
            cache_max_bytes=_int(env.get("GANTRY_CACHE_MAX_BYTES"), defaults.cache_max_bytes),
            cache_max_age_days=_int(env.get("GANTRY_CACHE_MAX_AGE_DAYS"), defaults.cache_max_age_days),
            artifact_retention_days=_int(env.get("GANTRY_ARTIFACT_RETENTION_DAYS"), defaults.artifact_retention_days),
            secret_prefix=env.get("GANTRY_SECRET_PREFIX", SECRET_PREFIX),
        )

    def override(self, **changes) -> "Settings":
        """Copy with CLI overrides applied (None values are ignored)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
