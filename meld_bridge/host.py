"""
host.py — In-process host for the Meld core.

DescriptorStore implements the five registration callbacks of MeldInstance,
keeps the latest full set of each, and fans every change out to listeners
(the REST/WebSocket relay and the OSC bridge). Listeners receive
(event, payload) where event is one of "actions", "feedbacks", "presets",
"variables", "status" and payload is JSON-ready.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Callable, Mapping, Sequence

from meld_bridge.core.transport import ConnectionStatus

log = logging.getLogger(__name__)

StoreListener = Callable[[str, Any], None]


def to_jsonable(descriptor: Any) -> dict:
    return asdict(descriptor)


class DescriptorStore:
    def __init__(self):
        self.actions: tuple = ()
        self.feedbacks: tuple = ()
        self.presets: tuple = ()
        self.variables: dict[str, Any] = {}
        self.status = ConnectionStatus.DISCONNECTED
        self.status_reason = ""
        self._listeners: list[StoreListener] = []

    def subscribe(self, listener: StoreListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: StoreListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, event: str, payload: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception:
                log.exception(f"Store listener failed for '{event}'")

    # ── Registration callbacks ────────────────────────────────────────

    def register_actions(self, actions: Sequence[Any]) -> None:
        actions = tuple(actions)
        if actions == self.actions:
            return
        self.actions = actions
        self._notify("actions", [to_jsonable(a) for a in actions])

    def register_feedbacks(self, feedbacks: Sequence[Any]) -> None:
        feedbacks = tuple(feedbacks)
        if feedbacks == self.feedbacks:
            return
        self.feedbacks = feedbacks
        self._notify("feedbacks", [to_jsonable(f) for f in feedbacks])

    def register_presets(self, presets: Sequence[Any]) -> None:
        presets = tuple(presets)
        if presets == self.presets:
            return
        self.presets = presets
        self._notify("presets", [to_jsonable(p) for p in presets])

    def set_variables(self, values: Mapping[str, Any]) -> None:
        values = dict(values)
        if values == self.variables:
            return
        self.variables = values
        self._notify("variables", dict(values))

    def set_connection_status(self, status: ConnectionStatus, reason: str = "") -> None:
        if (status, reason) == (self.status, self.status_reason):
            return
        self.status = status
        self.status_reason = reason
        log.debug(f"Connection status → {status.value}{f' ({reason})' if reason else ''}")
        self._notify("status", self.status_payload())

    # ── Snapshots ─────────────────────────────────────────────────────

    def status_payload(self) -> dict:
        return {"status": self.status.value, "reason": self.status_reason}

    def snapshot(self) -> dict:
        return {
            "status": self.status_payload(),
            "actions": [to_jsonable(a) for a in self.actions],
            "feedbacks": [to_jsonable(f) for f in self.feedbacks],
            "presets": [to_jsonable(p) for p in self.presets],
            "variables": dict(self.variables),
        }
