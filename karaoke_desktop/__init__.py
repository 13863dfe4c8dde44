"""Karaoke Successor desktop shell: starts the local game server and points the window at it."""

__version__ = "0.1.0"
