"""Transport error helpers shared by the provider adapters.

SDK and HTTP failures are mapped to :class:`TransportError` with a stable
``retryable`` flag so the retry policy never has to match on messages.
"""

import asyncio
from typing import Optional

import httpx

from ..exceptions import PromptLoopError, TransportError, walk_exception_chain
from ..options import ProviderOptions, sanitize_credentials

RETRYABLE_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})

# Failures of the transport itself; SDK providers add their APIError base.
TRANSPORT_ERRORS: tuple = (
    TransportError,
    httpx.HTTPError,
    httpx.StreamError,
    ConnectionError,
    TimeoutError,
)


def extract_status_code(exc: BaseException) -> Optional[int]:
    """Walk the exception chain to find an HTTP status code."""
    for e in walk_exception_chain(exc):
        for attr in ("status_code", "status"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def _is_network_error(exc: BaseException) -> bool:
    for e in walk_exception_chain(exc):
        if isinstance(e, (httpx.TimeoutException, httpx.RequestError, TimeoutError, ConnectionError)):
            return True
        name = type(e).__name__
        if "Timeout" in name or "Connection" in name:
            return True
    return False


def wrap_transport_error(
    exc: BaseException,
    provider: str,
    message: Optional[str] = None,
    options: Optional[ProviderOptions] = None,
) -> PromptLoopError:
    """Map an SDK or httpx exception to :class:`TransportError`.

    PromptLoop errors are returned unchanged.
    """
    if isinstance(exc, asyncio.CancelledError):
        raise exc
    if isinstance(exc, PromptLoopError):
        if isinstance(exc, TransportError) and exc.provider is None:
            exc.provider = provider
        return exc

    status_code = extract_status_code(exc)
    retryable = (
        status_code in RETRYABLE_STATUS_CODES
        if status_code is not None
        else _is_network_error(exc)
    )
    msg = message or f"{provider} request failed"
    status_note = f" (status={status_code})" if status_code is not None else ""
    cause = sanitize_credentials(str(exc), options) if options is not None else str(exc)
    return TransportError(
        f"{msg}{status_note}: {cause}" if cause else f"{msg}{status_note}",
        provider=provider,
        retryable=retryable,
        status_code=status_code,
        response=getattr(exc, "response", None),
    )
