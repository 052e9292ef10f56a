"""Process configuration loaded from the environment (and a local .env file)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the API server, MCP server and CLI."""

    database_url: str = "sqlite:///specforge.db"
    jwt_secret: str = ""
    jwt_issuer: str = ""
    jwt_audience: str = ""
    jwt_algorithm: str = "HS256"
    mcp_token: str = ""
    allow_static_token: bool = True
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    mcp_port: int = 8081
    log_level: str = "INFO"
    log_file: Optional[str] = None
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///specforge.db"),
            jwt_secret=os.getenv("JWT_SECRET", ""),
            jwt_issuer=os.getenv("JWT_ISSUER", ""),
            jwt_audience=os.getenv("JWT_AUDIENCE", ""),
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256") or "HS256",
            mcp_token=os.getenv("MCP_TOKEN", ""),
            allow_static_token=_env_bool("SPECFORGE_ALLOW_STATIC_TOKEN", True),
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=_env_int("API_PORT", 8080),
            mcp_port=_env_int("MCP_PORT", 8081),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE") or None,
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        )


_SETTINGS: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide settings, reading the environment once."""
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS


def reset_settings() -> None:
    global _SETTINGS
    _SETTINGS = None
