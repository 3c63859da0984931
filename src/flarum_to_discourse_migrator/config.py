"""Runtime configuration, read from the environment with pass-store fallbacks for secrets."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

from . import utils

FLARUM_PASSWORD_ENV_VAR: Final[str] = "FLARUM_PW"  # noqa: S105
DISCOURSE_API_KEY_ENV_VAR: Final[str] = "DISCOURSE_API_KEY"
_DEFAULT_FLARUM_PASS_PATH: Final[str] = "flarum/db/password"  # noqa: S105
_DEFAULT_DISCOURSE_PASS_PATH: Final[str] = "discourse/api/key"

DEFAULT_BATCH_SIZE: Final[int] = 5000
DEFAULT_GUEST_USERNAME: Final[str] = "guest"
DEFAULT_GUEST_EMAIL: Final[str] = "guest@example.com"


def _int_from_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        msg = f"Environment variable {name} must be an integer, got {raw!r}"
        raise ValueError(msg) from None
    if value <= 0:
        msg = f"Environment variable {name} must be positive, got {value}"
        raise ValueError(msg)
    return value


@dataclass(frozen=True)
class Settings:
    """Connection and tuning parameters for one migration run."""

    flarum_host: str = "localhost"
    flarum_port: int = 3306
    flarum_db: str = "flarum"
    flarum_user: str = "root"
    flarum_password: str | None = None
    table_prefix: str = ""
    batch_size: int = DEFAULT_BATCH_SIZE
    uploads_dir: Path | None = None
    discourse_url: str = ""
    discourse_api_key: str | None = None
    discourse_api_username: str = "system"
    discourse_db_dsn: str | None = None
    guest_username: str = DEFAULT_GUEST_USERNAME
    guest_email: str = DEFAULT_GUEST_EMAIL

    @classmethod
    def from_env(
        cls,
        *,
        flarum_pass_path: str | None = None,
        discourse_pass_path: str | None = None,
    ) -> Settings:
        """Build settings from environment variables.

        Secrets are looked up in the given pass paths first, then the environment,
        then the default pass locations.
        """
        uploads_dir = os.environ.get("FLARUM_UPLOADS_DIR")
        return cls(
            flarum_host=os.environ.get("FLARUM_HOST", "localhost"),
            flarum_port=_int_from_env("FLARUM_PORT", 3306),
            flarum_db=os.environ.get("FLARUM_DB", "flarum"),
            flarum_user=os.environ.get("FLARUM_USER", "root"),
            flarum_password=utils.get_secret(FLARUM_PASSWORD_ENV_VAR, flarum_pass_path, _DEFAULT_FLARUM_PASS_PATH),
            table_prefix=os.environ.get("TABLE_PREFIX", ""),
            batch_size=_int_from_env("BATCH_SIZE", DEFAULT_BATCH_SIZE),
            uploads_dir=Path(uploads_dir) if uploads_dir else None,
            discourse_url=os.environ.get("DISCOURSE_URL", "").rstrip("/"),
            discourse_api_key=utils.get_secret(
                DISCOURSE_API_KEY_ENV_VAR, discourse_pass_path, _DEFAULT_DISCOURSE_PASS_PATH
            ),
            discourse_api_username=os.environ.get("DISCOURSE_API_USERNAME", "system"),
            discourse_db_dsn=os.environ.get("DISCOURSE_DB_DSN") or None,
            guest_username=os.environ.get("GUEST_USERNAME", DEFAULT_GUEST_USERNAME),
            guest_email=os.environ.get("GUEST_EMAIL", DEFAULT_GUEST_EMAIL),
        )

    def with_overrides(self, **overrides: object) -> Settings:
        """Return a copy with the non-None overrides applied (CLI flags win over the environment)."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes)  # pyright: ignore[reportArgumentType]
