"""Shared utilities: logging, retry decorator, user agents, time helpers."""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import random
import sys
from datetime import datetime, timezone
from typing import Any, Callable


# ── Structured JSON logging ───────────────────────────────────────────

class _JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure root logger with structured JSON output to stderr."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JSONFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


# ── Retry decorator with pluggable backoff ────────────────────────────

def exponential_backoff(base_delay: float = 1.0) -> Callable[[int], float]:
    """Backoff of ``base_delay * 2 ** (attempt - 1)`` seconds."""

    def _backoff(attempt: int) -> float:
        return base_delay * (2 ** (attempt - 1))

    return _backoff


def retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    exceptions: tuple[type[BaseException], ...] = (Exception,),
    backoff: Callable[[int], float] | None = None,
    max_wait: float = 15.0,
) -> Callable:
    """Async retry decorator.

    ``backoff`` maps the 1-based attempt that just failed to a wait in
    seconds; it defaults to exponential backoff from ``base_delay``. An
    exception exposing a numeric ``retry_after`` attribute overrides the
    computed wait. Waits are capped at ``max_wait``. Once attempts are
    exhausted the last exception is re-raised unchanged.

    Usage::

        @retry(max_attempts=3, backoff=lambda n: 2.0 * n)
        async def flaky_call():
            ...
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    wait_for = backoff or exponential_backoff(base_delay)

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await fn(*args, **kwargs)
                except exceptions as exc:
                    if attempt >= max_attempts:
                        raise
                    hinted = getattr(exc, "retry_after", None)
                    wait = float(hinted) if isinstance(hinted, (int, float)) else wait_for(attempt)
                    wait = max(0.0, min(wait, max_wait))
                    logging.getLogger(fn.__module__).warning(
                        "%s failed (attempt %d/%d): %s, retrying in %.1fs",
                        fn.__qualname__,
                        attempt,
                        max_attempts,
                        exc,
                        wait,
                    )
                    await asyncio.sleep(wait)

        return wrapper

    return decorator


# ── Browser user agents for unauthenticated endpoints ─────────────────

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/133.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/133.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/133.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:134.0) Gecko/20100101 Firefox/134.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:134.0) Gecko/20100101 Firefox/134.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/18.3 Safari/605.1.15",
]


def random_user_agent() -> str:
    return random.choice(USER_AGENTS)


def browser_headers(accept: str = "application/json") -> dict[str, str]:
    return {
        "User-Agent": random_user_agent(),
        "Accept": accept,
        "Accept-Language": "en-US,en;q=0.9",
    }


# ── Timestamp helpers ─────────────────────────────────────────────────

def utc_now() -> datetime:
    """Return the current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite round-trips drop tzinfo)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def safe_float(v: Any, default: float | None = None) -> float | None:
    """Parse provider numbers, tolerating ``None``, commas and junk."""
    if v is None:
        return default
    try:
        if isinstance(v, str):
            v = v.replace(",", "").strip()
            if not v:
                return default
        return float(v)
    except (TypeError, ValueError):
        return default
