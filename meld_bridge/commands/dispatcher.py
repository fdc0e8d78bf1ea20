"""
commands/dispatcher.py — Logical commands → remote method invocations.

Meld's scripting API has drifted between releases (toggleRecord vs
toggleRecording, …). Each logical command maps to an ordered list of
candidate method names; at call time the first one the connected root
object actually publishes wins. Commands that are not in the table are
passed through under their own name, so new remote methods work without
a code change.

Nothing is queued: a command issued while the bridge is down is logged
and dropped.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional

from meld_bridge.errors import ProtocolError

log = logging.getLogger(__name__)

COMMAND_ALIASES: dict[str, tuple[str, ...]] = {
    "showScene": ("showScene", "setCurrentScene", "switchScene"),
    "toggleRecord": ("toggleRecord", "toggleRecording"),
    "startRecord": ("startRecording", "startRecord"),
    "stopRecord": ("stopRecording", "stopRecord"),
    "toggleStream": ("toggleStream", "toggleStreaming"),
    "startStream": ("startStreaming", "startStream"),
    "stopStream": ("stopStreaming", "stopStream"),
}


def parse_arguments(text: Any) -> list:
    """
    Positional arguments for a pass-through call.

    Accepts a JSON array ('["abc", 0.5]'), comma-separated text ('abc, 0.5'
    → ["abc", "0.5"]), an already-built list, or nothing.
    """
    if text is None:
        return []
    if isinstance(text, (list, tuple)):
        return list(text)
    text = str(text).strip()
    if not text:
        return []
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except ValueError:
            log.warning(f"Arguments look like JSON but do not parse: {text!r}")
        else:
            if isinstance(parsed, list):
                return parsed
    return [part.strip() for part in text.split(",")]


class CommandDispatcher:
    """
    Usage:
        dispatcher = CommandDispatcher(lambda: channel.root)
        dispatcher.dispatch("showScene", scene_id)
    """

    def __init__(
        self,
        proxy: Callable[[], Optional[Any]],
        aliases: Optional[dict[str, tuple[str, ...]]] = None,
    ):
        self._proxy = proxy
        self.aliases = dict(COMMAND_ALIASES if aliases is None else aliases)

    def candidates(self, command: str) -> tuple[str, ...]:
        return self.aliases.get(command, (command,))

    def resolve(self, command: str, root: Optional[Any] = None) -> Optional[str]:
        """First alias of `command` the connected root publishes, if any."""
        root = root if root is not None else self._proxy()
        if root is None:
            return None
        for name in self.candidates(command):
            if root.has_method(name):
                return name
        return None

    def supports(self, command: str) -> bool:
        return self.resolve(command) is not None

    def dispatch(self, command: str, *args: Any, callback: Optional[Callable[[Any], Any]] = None) -> bool:
        """Send `command`; True when a frame went out. Never raises."""
        root = self._proxy()
        if root is None:
            log.warning(f"Meld not ready; dropping command {command}")
            return False
        method = self.resolve(command, root)
        try:
            if method is None:
                raise ProtocolError(
                    f"Unknown Meld function: {command} (tried {', '.join(self.candidates(command))})"
                )
            root.call(method, *args, callback=callback)
        except ProtocolError as e:
            log.error(str(e))
            return False
        except Exception as e:
            log.error(f"Call failed: {method}({', '.join(map(str, args))}): {e}")
            return False
        log.debug(f"Dispatched {command} → {method}{tuple(args)}")
        return True
