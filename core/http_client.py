"""Shared HTTP client with connection pooling for all device calls.

Discovery probes hit the pool from many worker threads at once, so creation
is guarded by a lock. The device speaks plain HTTP/1.1.
"""

import logging
import threading
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_POOL_SIZE = 64

_lock = threading.Lock()
_shared_client: Optional[httpx.Client] = None
_timeout = DEFAULT_TIMEOUT
_pool_size = DEFAULT_POOL_SIZE


def configure_shared_client(timeout: float = DEFAULT_TIMEOUT, pool_size: int = DEFAULT_POOL_SIZE):
    """Set pool limits for the next client; an existing client is closed first."""
    global _timeout, _pool_size
    close_shared_client()
    with _lock:
        _timeout = float(timeout)
        # One connection per in-flight probe, plus room for health/upload calls.
        _pool_size = max(1, int(pool_size)) + 4


def get_shared_client() -> httpx.Client:
    """Get or create a shared httpx.Client with connection pooling."""
    global _shared_client
    with _lock:
        if _shared_client is None:
            _shared_client = httpx.Client(
                timeout=_timeout,
                limits=httpx.Limits(
                    max_keepalive_connections=10,
                    max_connections=_pool_size,
                    keepalive_expiry=30.0,
                ),
            )
            logger.debug("Created shared HTTP client (pool of %d)", _pool_size)
        return _shared_client


def close_shared_client():
    """Close the shared client. Call on app shutdown."""
    global _shared_client
    with _lock:
        client, _shared_client = _shared_client, None
    if client is not None:
        client.close()
        logger.debug("Closed shared HTTP client")
