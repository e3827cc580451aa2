"""Audit records for background and manual price syncs."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select, update

from folioquote.db.database import SessionFactory, get_session
from folioquote.db.models import PriceSyncJob
from folioquote.utils import as_utc, utc_now

RUNNING = "RUNNING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"


class SyncJobStore:
    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session = session_factory

    async def start(self, total: int, trigger: str = "scheduled") -> int:
        async with self._session() as session:
            job = PriceSyncJob(status=RUNNING, trigger=trigger, symbols_total=total, started_at=utc_now())
            session.add(job)
            await session.flush()
            return job.id

    async def progress(self, job_id: int, fetched: int, failed: int) -> None:
        async with self._session() as session:
            await session.execute(
                update(PriceSyncJob)
                .where(PriceSyncJob.id == job_id)
                .values(symbols_fetched=fetched, symbols_failed=failed)
            )

    async def finish(
        self,
        job_id: int,
        status: str,
        fetched: int,
        failed: int,
        error: str | None = None,
    ) -> None:
        async with self._session() as session:
            await session.execute(
                update(PriceSyncJob)
                .where(PriceSyncJob.id == job_id)
                .values(
                    status=status,
                    symbols_fetched=fetched,
                    symbols_failed=failed,
                    completed_at=utc_now(),
                    error_message=error[:2000] if error else None,
                )
            )

    async def recent(self, limit: int = 10) -> list[dict[str, Any]]:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(PriceSyncJob).order_by(PriceSyncJob.started_at.desc(), PriceSyncJob.id.desc()).limit(limit)
                )
            ).scalars().all()
            return [_job_dict(row) for row in rows]


def _job_dict(job: PriceSyncJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "status": job.status,
        "trigger": job.trigger,
        "symbols_total": job.symbols_total,
        "symbols_fetched": job.symbols_fetched,
        "symbols_failed": job.symbols_failed,
        "started_at": as_utc(job.started_at).isoformat() if job.started_at else None,
        "completed_at": as_utc(job.completed_at).isoformat() if job.completed_at else None,
        "error_message": job.error_message,
    }
