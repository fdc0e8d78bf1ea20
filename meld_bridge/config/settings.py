"""
config/settings.py — Central configuration via env vars + YAML override.

Priority: ENV > config.yaml > defaults
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MeldSettings(BaseSettings):
    host: str = Field("127.0.0.1", description="Meld Studio host")
    port: int = Field(13376, ge=1, le=65535, description="Meld WebChannel port")
    root_object: str = Field("meld", description="Name of the published WebChannel root object")
    reconnect_interval: float = Field(3.0, description="Seconds before a reconnect attempt")
    reconnect_backoff: float = Field(1.0, description="Delay multiplier after each failed attempt (1 = fixed)")
    max_reconnect_interval: float = Field(30.0, description="Upper bound for the reconnect delay")
    max_reconnect_attempts: int = Field(0, description="Max reconnect attempts (0=infinite)")
    handshake_timeout: float = Field(5.0, description="Seconds to wait for the WebChannel handshake (0=never)")
    call_timeout: float = Field(10.0, description="Seconds to wait for a method reply (0=never)")

    model_config = SettingsConfigDict(env_prefix="MELD_")


class APISettings(BaseSettings):
    enabled: bool = Field(True, description="Serve the REST/WebSocket relay")
    host: str = Field("0.0.0.0", description="API server bind host")
    port: int = Field(8080, ge=1, le=65535, description="API server port")
    api_key: Optional[str] = Field(None, description="Bearer token for API auth (optional)")
    cors_origins: list[str] = Field(["*"], description="CORS allowed origins")
    log_level: str = Field("info", description="Log level")

    model_config = SettingsConfigDict(env_prefix="API_")


class OSCSettings(BaseSettings):
    enabled: bool = Field(False, description="Enable the OSC control-surface bridge")
    listen_host: str = Field("0.0.0.0", description="OSC UDP listen host")
    listen_port: int = Field(9000, ge=1, le=65535, description="OSC UDP listen port")
    reply_port: int = Field(9001, ge=1, le=65535, description="OSC UDP reply/feedback port")
    client_host: str = Field("255.255.255.255", description="OSC broadcast/client host")

    model_config = SettingsConfigDict(env_prefix="OSC_")


def _yaml_below_env(group: type[BaseSettings], values: Optional[dict]) -> dict:
    """YAML values for keys the environment does not set."""
    prefix = group.model_config.get("env_prefix", "").upper()
    env = {name.upper() for name in os.environ}
    return {k: v for k, v in (values or {}).items() if f"{prefix}{k}".upper() not in env}


class Settings(BaseSettings):
    meld: MeldSettings = Field(default_factory=MeldSettings)
    api: APISettings = Field(default_factory=APISettings)
    osc: OSCSettings = Field(default_factory=OSCSettings)
    config_file: Path = Field(Path("config.yaml"), description="Path to YAML config file")

    model_config = SettingsConfigDict(env_prefix="BRIDGE_")

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """Load settings, merging YAML file if present."""
        path = config_path or Path(os.environ.get("BRIDGE_CONFIG_FILE", "config.yaml"))
        yaml_data: dict = {}

        if path.exists():
            with open(path) as f:
                yaml_data = yaml.safe_load(f) or {}

        meld = MeldSettings(**_yaml_below_env(MeldSettings, yaml_data.get("meld")))
        api = APISettings(**_yaml_below_env(APISettings, yaml_data.get("api")))
        osc = OSCSettings(**_yaml_below_env(OSCSettings, yaml_data.get("osc")))

        return cls(meld=meld, api=api, osc=osc, config_file=path)

    def to_yaml(self, path: Path) -> None:
        """Save current settings to YAML."""
        data = {
            "meld": self.meld.model_dump(),
            "api": self.api.model_dump(),
            "osc": self.osc.model_dump(),
        }
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


# Singleton accessor — call get_settings() anywhere in the app
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def reload_settings(config_path: Optional[Path] = None) -> Settings:
    global _settings
    _settings = Settings.load(config_path)
    return _settings
