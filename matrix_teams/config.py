import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class ConfigError(ValueError):
    """Raised when settings cannot be used to start the bridge"""
    pass


@dataclass
class Settings:
    # Application Service listener
    host: str = field(default_factory=lambda: os.getenv("AS_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("AS_PORT", "8003")))
    debug: bool = field(default_factory=lambda: _env_bool("DEBUG"))

    # Matrix homeserver
    matrix_url: str = field(default_factory=lambda: os.getenv("MATRIX_URL", "http://localhost:8008"))
    matrix_user_id: str = field(default_factory=lambda: os.getenv("MATRIX_USER_ID", "teams-proxy"))
    matrix_server_name: Optional[str] = field(default_factory=lambda: os.getenv("MATRIX_SERVER_NAME"))
    matrix_timeout: float = field(default_factory=lambda: float(os.getenv("MATRIX_TIMEOUT", "10")))

    # Registration secrets
    hs_token: Optional[str] = field(default_factory=lambda: os.getenv("HS_TOKEN"))
    as_token: Optional[str] = field(default_factory=lambda: os.getenv("AS_TOKEN"))

    # Room mirroring
    room_alias_prefix: str = field(default_factory=lambda: os.getenv("ROOM_ALIAS_PREFIX", "teams_"))
    room_visibility: str = field(default_factory=lambda: os.getenv("ROOM_VISIBILITY", "public"))
    join_server_name: str = field(default_factory=lambda: os.getenv("JOIN_SERVER_NAME", "matrix-teams"))

    # Teams
    teams_token_dir: str = field(
        default_factory=lambda: os.getenv("TEAMS_TOKEN_DIR", str(Path.home() / ".config" / "fossteams"))
    )
    teams_authz_url: str = field(
        default_factory=lambda: os.getenv("TEAMS_AUTHZ_URL", "https://teams.microsoft.com/api/authsvc/v1.0/authz")
    )
    teams_csa_url: str = field(
        default_factory=lambda: os.getenv("TEAMS_CSA_URL", "https://teams.microsoft.com/api/csa/api/v1")
    )
    teams_timeout: float = field(default_factory=lambda: float(os.getenv("TEAMS_TIMEOUT", "15")))
    teams_page_size: int = field(default_factory=lambda: int(os.getenv("TEAMS_PAGE_SIZE", "200")))

    sync_on_startup: bool = field(default_factory=lambda: _env_bool("SYNC_ON_STARTUP"))

    def with_overrides(self, **overrides) -> "Settings":
        """Return a copy with the given fields replaced. None values are ignored."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes)

    def validate(self) -> "Settings":
        """Check the Matrix URL is an absolute http(s) URL."""
        parsed = urlparse(self.matrix_url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigError(f"invalid matrix URL {self.matrix_url!r}")
        return self

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


settings = Settings()
