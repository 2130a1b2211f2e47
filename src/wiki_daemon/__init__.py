"""Local folder <-> wiki space synchronisation daemon."""

__version__ = "0.3.0"
