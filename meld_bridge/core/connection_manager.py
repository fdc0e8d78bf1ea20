"""
core/connection_manager.py — Global Meld instance singleton for dependency injection.
"""

from __future__ import annotations

from typing import Optional

from meld_bridge.config import MeldSettings

from .instance import HostCallbacks, MeldInstance
from .transport import Endpoint, Transport

_instance: Optional[MeldInstance] = None


def build_meld_instance(host: HostCallbacks, settings: MeldSettings) -> MeldInstance:
    transport = Transport(
        reconnect_interval=settings.reconnect_interval,
        reconnect_backoff=settings.reconnect_backoff,
        max_reconnect_interval=settings.max_reconnect_interval,
        max_reconnect_attempts=settings.max_reconnect_attempts,
    )
    return MeldInstance(
        host,
        Endpoint(settings.host, settings.port),
        root_object=settings.root_object,
        call_timeout=settings.call_timeout or None,
        handshake_timeout=settings.handshake_timeout or None,
        transport=transport,
    )


def init_meld_instance(host: HostCallbacks, settings: MeldSettings) -> MeldInstance:
    global _instance
    _instance = build_meld_instance(host, settings)
    return _instance


def get_meld_instance() -> MeldInstance:
    if _instance is None:
        raise RuntimeError("Meld instance not initialized. Call init_meld_instance() first.")
    return _instance
