"""
Request Context for Security Logging.

Holds the request id and client key of the request being processed in
context variables, so log lines and security events emitted anywhere in the
pipeline can be tied back to the request without threading arguments through.

Usage:
    with request_context(client_key="203.0.113.5") as request_id:
        logger.info("Processing")   # ContextLogger adds request_id/client_key
"""

from __future__ import annotations

import contextvars
import re
import uuid
from collections.abc import Mapping
from contextlib import contextmanager
from typing import Any, Generator

REQUEST_ID_HEADER = "X-Request-ID"
CORRELATION_ID_HEADER = "X-Correlation-ID"

_SAFE_REQUEST_ID = re.compile(r"[A-Za-z0-9._:-]{1,128}")

_request_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id", default=None
)
_client_key: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "client_key", default=None
)


def generate_request_id() -> str:
    """New request id, format ``rg-<16 hex>``."""
    return f"rg-{uuid.uuid4().hex[:16]}"


def get_request_id() -> str | None:
    return _request_id.get()


def get_client_key() -> str | None:
    return _client_key.get()


def extract_request_id(headers: Mapping[str, str]) -> str | None:
    """
    Take a caller-supplied request id from headers.

    Values that are too long or carry unexpected characters are ignored so
    they cannot be used to inject content into logs.
    """
    normalized = {k.lower(): v for k, v in headers.items()}
    for header in (REQUEST_ID_HEADER.lower(), CORRELATION_ID_HEADER.lower()):
        value = normalized.get(header)
        if value and _SAFE_REQUEST_ID.fullmatch(value):
            return value
    return None


@contextmanager
def request_context(
    request_id: str | None = None,
    *,
    client_key: str | None = None,
) -> Generator[str, None, None]:
    """Bind request id and client key for the duration of the block."""
    rid = request_id or generate_request_id()
    rid_token = _request_id.set(rid)
    key_token = _client_key.set(client_key)
    try:
        yield rid
    finally:
        _request_id.reset(rid_token)
        _client_key.reset(key_token)


class ContextLogger:
    """
    Logger wrapper that adds request_id and client_key to ``extra``.

    Usage:
        logger = ContextLogger(logging.getLogger(__name__))
        logger.warning("Token rejected: %s", reason)
    """

    def __init__(self, logger: Any) -> None:
        self._logger = logger

    def _with_context(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("request_id", get_request_id())
        extra.setdefault("client_key", get_client_key())
        kwargs["extra"] = extra
        return kwargs

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.debug(msg, *args, **self._with_context(kwargs))

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.info(msg, *args, **self._with_context(kwargs))

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.warning(msg, *args, **self._with_context(kwargs))

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.error(msg, *args, **self._with_context(kwargs))

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.exception(msg, *args, **self._with_context(kwargs))

    def log(self, level: int, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.log(level, msg, *args, **self._with_context(kwargs))
