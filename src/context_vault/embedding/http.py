from __future__ import annotations

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential_jitter


def default_timeout() -> httpx.Timeout:
    return httpx.Timeout(connect=10.0, read=60.0, write=20.0, pool=10.0)


def default_limits() -> httpx.Limits:
    return httpx.Limits(max_connections=20, max_keepalive_connections=5)


TransientHttpError = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)

RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, TransientHttpError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS
    return False


def transient_retry(attempts: int = 4):
    """Retry network blips and throttling; anything else surfaces at once."""
    return retry(
        reraise=True,
        stop=stop_after_attempt(attempts),
        wait=wait_exponential_jitter(initial=0.5, max=10.0),
        retry=retry_if_exception(is_transient),
    )
