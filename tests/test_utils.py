from __future__ import annotations

import logging

import pytest

from folioquote.marketdata.errors import ProviderUnavailable, RateLimited
from folioquote.utils import as_utc, exponential_backoff, retry, safe_float


@pytest.mark.asyncio
async def test_retry_succeeds_after_transient_failures() -> None:
    calls = []

    @retry(max_attempts=3, backoff=lambda n: 0.0)
    async def flaky() -> str:
        calls.append(1)
        if len(calls) < 3:
            raise ProviderUnavailable("yahoo", "blip")
        return "ok"

    assert await flaky() == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_retry_reraises_last_exception_unchanged() -> None:
    raised = []

    @retry(max_attempts=2, backoff=lambda n: 0.0, exceptions=(RateLimited,))
    async def limited() -> None:
        exc = RateLimited("yahoo", retry_after=None)
        raised.append(exc)
        raise exc

    with pytest.raises(RateLimited) as exc_info:
        await limited()
    assert exc_info.value is raised[-1]
    assert len(raised) == 2


@pytest.mark.asyncio
async def test_retry_ignores_unlisted_exceptions() -> None:
    calls = []

    @retry(max_attempts=3, backoff=lambda n: 0.0, exceptions=(RateLimited,))
    async def broken() -> None:
        calls.append(1)
        raise ValueError("bad payload")

    with pytest.raises(ValueError):
        await broken()
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_retry_after_hint_is_capped(caplog) -> None:  # noqa: ANN001
    calls = []

    @retry(max_attempts=2, backoff=lambda n: 5.0, max_wait=0.0)
    async def throttled() -> str:
        calls.append(1)
        if len(calls) == 1:
            raise RateLimited("yahoo", retry_after=60.0)
        return "ok"

    with caplog.at_level(logging.WARNING):
        assert await throttled() == "ok"
    assert "retrying in 0.0s" in caplog.text


def test_retry_rejects_zero_attempts() -> None:
    with pytest.raises(ValueError):
        retry(max_attempts=0)


def test_helpers() -> None:
    backoff = exponential_backoff(0.5)
    assert [backoff(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]
    assert safe_float("1,234.50") == 1234.5
    assert safe_float("") is None
    assert safe_float("n/a", 0.0) == 0.0
    from datetime import datetime
    assert as_utc(datetime(2024, 1, 8, 4, 30)).tzinfo is not None
