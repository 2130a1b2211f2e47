"""Daemon lifecycle: startup wiring, periodic reconciliation, CLI."""

from .lifespan import daemon_lifespan
from .service import WikiDaemon, main, run

__all__ = ["WikiDaemon", "daemon_lifespan", "main", "run"]
