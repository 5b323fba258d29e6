"""serverpulse - periodic runtime stats digest for the game server."""

__version__ = "0.1.0"
