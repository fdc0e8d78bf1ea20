"""
errors.py — Error taxonomy for the Meld bridge core.

None of these reach the host layer directly: each is caught at the boundary
it describes and surfaces either as connection status or as a log entry.
"""

from __future__ import annotations


class MeldBridgeError(Exception):
    pass


class TransportError(MeldBridgeError):
    """Socket-level failure: refused, reset, DNS, handshake rejected."""


class ProtocolError(MeldBridgeError):
    """Malformed handshake, unknown remote object, or no usable method alias."""


class StaleReferenceError(MeldBridgeError):
    """A scene id referenced by an action or feedback is not in the mirror."""

    def __init__(self, scene_id: str):
        super().__init__(f"Scene '{scene_id}' is not in the current session")
        self.scene_id = scene_id
