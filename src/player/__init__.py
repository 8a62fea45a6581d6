"""
Player package for MPV Remote.
Contains the media engine adapter, command channel, status publisher,
session controller and daemon lifecycle.
"""

__version__ = "0.1.0"
