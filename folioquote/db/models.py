"""SQLAlchemy 2.0 async-compatible ORM models for folioquote."""

from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Shared declarative base for all folioquote models."""


# ── Market data cache ─────────────────────────────────────────────────

class PriceCacheEntry(Base):
    """Most recent successful quote per symbol (one row per symbol)."""

    __tablename__ = "price_cache"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    asset_kind: Mapped[str] = mapped_column(String(16), nullable=False, default="EQUITY")
    price: Mapped[float] = mapped_column(Float, nullable=False)
    previous_close: Mapped[float | None] = mapped_column(Float, nullable=True)
    change_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    change_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="INR")
    price_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_live_session: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


# ── Background sync audit ─────────────────────────────────────────────

class PriceSyncJob(Base):
    __tablename__ = "price_sync_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # RUNNING / COMPLETED / FAILED
    trigger: Mapped[str] = mapped_column(String(16), nullable=False, default="scheduled")  # scheduled / manual
    symbols_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    symbols_fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    symbols_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_price_sync_jobs_started", "started_at"),
    )


# ── Request-frequency ranking ─────────────────────────────────────────

class SymbolPriority(Base):
    __tablename__ = "symbol_priority"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    asset_kind: Mapped[str] = mapped_column(String(16), nullable=False, default="EQUITY")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_symbol_priority_rank", "priority", "request_count"),
    )
