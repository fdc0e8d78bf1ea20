"""osc — TouchOSC / OSC UDP bridge."""
from .bridge import OSCBridge

__all__ = ["OSCBridge"]
