from __future__ import annotations
from functools import lru_cache
from typing import Annotated, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

SESSION_KEY          = "shared-session"
DEFAULT_ICE_SERVERS  = ("stun:stun.l.google.com:19302",)
CHANNEL_LABEL        = "textEditor"
RETRY_DELAY_S        = 1.0
CLEANUP_DELAY_S      = 3.0
CONNECTED_DELAY_S    = 2.0
RELAY_POLL_INTERVAL  = 0.2


class PairingConfig(BaseSettings):
    """Pairing settings; every field can be set as TEXTPAIR_<FIELD> in the environment or .env."""

    model_config = SettingsConfigDict(
        env_prefix="TEXTPAIR_", env_file=".env", case_sensitive=False, extra="ignore", frozen=True
    )

    session_key: str = Field(default=SESSION_KEY)
    ice_servers: Annotated[Tuple[str, ...], NoDecode] = Field(default=DEFAULT_ICE_SERVERS)
    channel_label: str = Field(default=CHANNEL_LABEL)
    retry_delay: float = Field(default=RETRY_DELAY_S, ge=0)
    cleanup_delay: float = Field(default=CLEANUP_DELAY_S, ge=0)
    connected_delay: float = Field(default=CONNECTED_DELAY_S, ge=0)
    # conditional create of the offer document instead of last-writer-wins
    exclusive_create: bool = Field(default=False)
    relay_dir: str = Field(default=".relay")
    poll_interval: float = Field(default=RELAY_POLL_INTERVAL, gt=0)

    @field_validator("ice_servers", mode="before")
    @classmethod
    def _split_servers(cls, value: object) -> object:
        """Allow comma-separated env values; an empty string means no servers."""
        if isinstance(value, str):
            return tuple(item.strip() for item in value.split(",") if item.strip())
        return value

    def replace(self, **overrides) -> "PairingConfig":
        if "ice_servers" in overrides:
            overrides["ice_servers"] = tuple(overrides["ice_servers"])
        return self.model_copy(update=overrides)


@lru_cache
def get_config() -> PairingConfig:
    """Environment-backed settings, read once per process."""
    return PairingConfig()
