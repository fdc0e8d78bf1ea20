"""commands — Logical commands → remote Meld methods."""
from .dispatcher import COMMAND_ALIASES, CommandDispatcher, parse_arguments

__all__ = ["COMMAND_ALIASES", "CommandDispatcher", "parse_arguments"]
