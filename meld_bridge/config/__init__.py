"""config — Settings, env loading, YAML config."""
from .settings import APISettings, MeldSettings, OSCSettings, Settings, get_settings, reload_settings

__all__ = ["APISettings", "MeldSettings", "OSCSettings", "Settings", "get_settings", "reload_settings"]
