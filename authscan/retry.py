"""
AuthScan Orchestrator - Retry Wrapper
Exponential-backoff retry for engine calls that start or configure work.
Status polls are never wrapped: a failed poll is just retried on the next tick.
"""
import asyncio
import errno
import logging
import socket
from typing import Any, Awaitable, Callable

import aiohttp

from authscan.errors import TransientNetworkError

logger = logging.getLogger("Retry")

# Substrings that mark an error as transient even when its type does not
TRANSIENT_MESSAGE_MARKERS = ("timeout", "socket hang up", "econnrefused")

_TRANSIENT_OS_ERRORS = (
    ConnectionResetError,
    ConnectionRefusedError,
    socket.gaierror,
    TimeoutError,
)

# aiohttp wraps mid-request socket failures in ClientOSError, keeping only errno
_TRANSIENT_ERRNOS = frozenset((errno.ECONNRESET, errno.ECONNREFUSED, errno.ETIMEDOUT, errno.EPIPE))


def is_transient(exc: BaseException) -> bool:
    """Return True when `exc` is a network hiccup worth retrying."""
    # Certificate and SSL failures subclass the connector error but never heal
    if isinstance(exc, (aiohttp.ClientConnectorCertificateError, aiohttp.ClientSSLError)):
        return False
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ServerDisconnectedError)):
        return True
    if isinstance(exc, aiohttp.ClientConnectorError):
        return isinstance(exc.os_error, _TRANSIENT_OS_ERRORS)
    if isinstance(exc, _TRANSIENT_OS_ERRORS):
        return True
    if isinstance(exc, OSError) and exc.errno in _TRANSIENT_ERRNOS:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_MESSAGE_MARKERS)


async def with_retry(
    call: Callable[[], Awaitable[Any]],
    operation: str,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """
    Run `call` up to `max_attempts` times.

    The delay before attempt n+1 is base_delay * 2**(n-1). Non-transient errors
    propagate on the first failure; exhausting the attempts raises
    TransientNetworkError chained to the last error.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await call()
        except Exception as e:
            if not is_transient(e):
                raise
            last_error = e
            if attempt < max_attempts:
                delay = base_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"{operation} failed (attempt {attempt}/{max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await sleep(delay)

    logger.error(f"{operation} failed after {max_attempts} attempts: {last_error}")
    raise TransientNetworkError(operation, max_attempts) from last_error
