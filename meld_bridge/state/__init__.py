"""state — Local mirror of the remote Meld session."""
from .mirror import SceneEntry, SessionMirror, SessionState, clean_scene_name, parse_session_items

__all__ = ["SceneEntry", "SessionMirror", "SessionState", "clean_scene_name", "parse_session_items"]
