#!/usr/bin/env python3
"""
run.py — Launch meld-bridge without installing.

Usage (from the meld-bridge directory):
    python run.py start
    python run.py start --meld-host 192.168.1.20
    python run.py init-config
    python run.py check
"""
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent))

from meld_bridge.main import app

if __name__ == "__main__":
    app()
