"""
Entry point for: python3 -m src.player

Runs the mpv-remote command line.
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
