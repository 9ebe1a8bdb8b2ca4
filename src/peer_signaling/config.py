from pathlib import Path
from typing import Annotated, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def split_list(v):
    """Accepts `a,b`, `[a,b]` or a list; drops empty entries."""
    if isinstance(v, str):
        items = [item.strip() for item in v.strip("[]").split(",")]
        # Remove empty strings
        return [item for item in items if item]
    return v


class Settings(BaseSettings):
    """Signaling server settings with environment variable support"""

    # Server settings
    server_host: str = Field(default="0.0.0.0", alias="SERVER_HOST")
    server_port: int = Field(default=3000, alias="SERVER_PORT")

    # CORS settings
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(
        default=["*"], alias="CORS_ALLOW_ORIGINS"
    )

    # Static client assets served at "/" when the directory exists
    static_dir: Path = Field(default=Path("public"), alias="STATIC_DIR")

    # Signaling behaviour
    message_buffer_size: int = Field(default=256, alias="MESSAGE_BUFFER_SIZE")
    scope_disconnect_to_room: bool = Field(
        default=False, alias="SCOPE_DISCONNECT_TO_ROOM"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: Optional[Path] = Field(default=None, alias="LOG_FILE")

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def split_origins(cls, v):
        return split_list(v)

    def model_post_init(self, __context):
        if not self.cors_allow_origins:
            raise ValueError("CORS_ALLOW_ORIGINS must name at least one origin")
        if self.message_buffer_size <= 0:
            raise ValueError("MESSAGE_BUFFER_SIZE must be positive")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )


class ClientSettings(BaseSettings):
    """Settings for the command line peer"""

    signaling_url: str = Field(default="ws://localhost:3000/ws", alias="SIGNALING_URL")
    room: str = Field(default="main", alias="ROOM")
    display_name: str = Field(default="Anon", alias="DISPLAY_NAME")

    ice_servers: Annotated[list[str], NoDecode] = Field(
        default=["stun:stun.l.google.com:19302"], alias="ICE_SERVERS"
    )

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("ice_servers", mode="before")
    @classmethod
    def split_ice_servers(cls, v):
        return split_list(v)

    def model_post_init(self, __context):
        if not self.room:
            raise ValueError("ROOM must not be empty")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )
