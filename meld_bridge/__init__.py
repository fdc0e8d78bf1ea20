"""
meld-bridge — Control-surface bridge for Meld Studio over Qt WebChannel.

Modules:
  core/        — WebSocket transport, WebChannel proxies, connection instance
  state/       — session mirror (scenes, current scene, record/stream flags)
  descriptors/ — actions, feedbacks, presets & variables derived from state
  commands/    — command dispatcher with remote method-name fallback
  api/         — FastAPI REST + WebSocket relay
  osc/         — OSC control-surface bridge
  config/      — Settings, env loading, YAML config
  host.py      — in-process host: descriptor store fanned out to api/ and osc/
"""

__version__ = "1.0.0"
__author__ = "meld-bridge"
