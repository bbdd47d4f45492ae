"""
HTTP settings for CardCore.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """HTTP configuration loaded from environment."""

    host: str = Field(default="0.0.0.0", description="HTTP bind host")
    port: int = Field(default=8080, description="HTTP bind port")

    # CORS settings
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins",
    )

    # Header carrying the authenticated principal, set by the auth proxy
    actor_header: str = Field(default="X-Actor", description="Principal header name")

    graceful_timeout: float = Field(
        default=30.0, description="Seconds uvicorn waits for open requests on shutdown"
    )

    model_config = {"env_prefix": "CARDCORE_HTTP_"}

    @property
    def bind_address(self) -> str:
        return f"{self.host}:{self.port}"
