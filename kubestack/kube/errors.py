"""Classification of Kubernetes API errors."""

from __future__ import annotations

import asyncio

import aiohttp
from kubernetes_asyncio.client import ApiException

# everything a cluster call can fail with, HTTP status or not
API_ERRORS: tuple[type[BaseException], ...] = (
    ApiException,
    aiohttp.ClientError,
    asyncio.TimeoutError,
    ConnectionError,
)


class WatchExpiredError(Exception):
    """The watch resource version is too old (HTTP 410); a relist is needed."""


def _status(exc: BaseException) -> int | None:
    if isinstance(exc, ApiException):
        return exc.status
    return None


def is_conflict(exc: BaseException) -> bool:
    return _status(exc) == 409


def is_not_found(exc: BaseException) -> bool:
    return _status(exc) == 404


def is_forbidden(exc: BaseException) -> bool:
    return _status(exc) == 403


def is_gone(exc: BaseException) -> bool:
    return _status(exc) == 410


def is_invalid(exc: BaseException) -> bool:
    return _status(exc) == 422


def is_transient(exc: BaseException) -> bool:
    """Throttling, server-side failures and connection problems."""
    status = _status(exc)
    if status is not None:
        return status == 429 or status >= 500
    return isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError))


def reason(exc: BaseException) -> str:
    """Short description of a failed call for logs and status messages."""
    if isinstance(exc, ApiException):
        return str(exc.reason or exc.status)
    return str(exc) or type(exc).__name__
