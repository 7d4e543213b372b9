"""Unit tests for request context propagation."""

import asyncio
import logging

import pytest

from review_gatekeeper.core.context import (
    ContextLogger,
    extract_request_id,
    generate_request_id,
    get_client_key,
    get_request_id,
    request_context,
)


class TestRequestId:
    """Tests for request id functions."""

    def test_generate_format(self) -> None:
        """Generated IDs should have correct format."""
        rid = generate_request_id()
        assert rid.startswith("rg-")
        assert len(rid) == 19  # "rg-" + 16 hex chars

    def test_generate_unique(self) -> None:
        ids = {generate_request_id() for _ in range(1000)}
        assert len(ids) == 1000

    def test_none_by_default(self) -> None:
        assert get_request_id() is None
        assert get_client_key() is None

    def test_extract_from_headers(self) -> None:
        assert extract_request_id({"X-Request-ID": "abc-123"}) == "abc-123"
        assert extract_request_id({"x-correlation-id": "corr-1"}) == "corr-1"

    def test_request_id_preferred_over_correlation_id(self) -> None:
        headers = {"X-Correlation-ID": "corr-1", "X-Request-ID": "req-1"}
        assert extract_request_id(headers) == "req-1"

    @pytest.mark.parametrize("value", ["", "has space", "x" * 129, "line\nbreak", "<b>"])
    def test_unsafe_values_ignored(self, value) -> None:
        assert extract_request_id({"X-Request-ID": value}) is None


class TestRequestContext:
    """Tests for request_context context manager."""

    def test_binds_and_restores(self) -> None:
        with request_context("req-1", client_key="203.0.113.5") as rid:
            assert rid == "req-1"
            assert get_request_id() == "req-1"
            assert get_client_key() == "203.0.113.5"

        assert get_request_id() is None
        assert get_client_key() is None

    def test_generates_id(self) -> None:
        with request_context() as rid:
            assert rid.startswith("rg-")
            assert get_request_id() == rid

    def test_nested(self) -> None:
        with request_context("outer"):
            with request_context("inner"):
                assert get_request_id() == "inner"
            assert get_request_id() == "outer"

    def test_restored_after_exception(self) -> None:
        with pytest.raises(RuntimeError):
            with request_context("req-1"):
                raise RuntimeError("boom")

        assert get_request_id() is None

    @pytest.mark.asyncio
    async def test_isolated_between_tasks(self) -> None:
        """Concurrent requests do not see each other's ids."""

        async def handle(rid: str) -> str | None:
            with request_context(rid):
                await asyncio.sleep(0.01)
                return get_request_id()

        results = await asyncio.gather(*(handle(f"req-{i}") for i in range(10)))

        assert results == [f"req-{i}" for i in range(10)]


class TestContextLogger:
    """Tests for ContextLogger."""

    def test_adds_context(self, caplog) -> None:
        logger = ContextLogger(logging.getLogger("review_gatekeeper.test"))

        with caplog.at_level(logging.INFO, logger="review_gatekeeper.test"):
            with request_context("req-9", client_key="198.51.100.1"):
                logger.info("hello %s", "world")

        record = caplog.records[-1]
        assert record.getMessage() == "hello world"
        assert record.request_id == "req-9"
        assert record.client_key == "198.51.100.1"

    def test_keeps_explicit_extra(self, caplog) -> None:
        logger = ContextLogger(logging.getLogger("review_gatekeeper.test"))

        with caplog.at_level(logging.WARNING, logger="review_gatekeeper.test"):
            logger.warning("denied", extra={"client_key": "override", "user": "u1"})

        record = caplog.records[-1]
        assert record.client_key == "override"
        assert record.user == "u1"
        assert record.request_id is None
