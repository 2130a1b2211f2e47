"""Core infrastructure: wiki API client and async bridging helpers."""

from .async_utils import init_semaphore, run_sync, run_sync_limited
from .client import WikiClient

__all__ = [
    "WikiClient",
    "init_semaphore",
    "run_sync",
    "run_sync_limited",
]
