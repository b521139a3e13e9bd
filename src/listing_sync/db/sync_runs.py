"""Log of sync cycles: one row per run, opened at start and closed when it ends."""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime, timedelta
from typing import Any

import aiosqlite

from listing_sync.db.row_mappers import now_iso, row_to_sync_run
from listing_sync.errors import NotFoundError
from listing_sync.logging import get_logger
from listing_sync.models import SyncCycleResult, SyncRun, SyncRunStatus

logger = get_logger(__name__)

DEFAULT_STALE_MINUTES = 30


class SyncRunRepository:
    """Records sync runs and closes runs that never finished."""

    def __init__(
        self,
        get_connection: Callable[[], Coroutine[Any, Any, aiosqlite.Connection]],
        transaction: Callable[[], AbstractAsyncContextManager[aiosqlite.Connection]],
    ) -> None:
        self._get_connection = get_connection
        self._transaction = transaction

    async def start(self, *, kind: str = "manual", started_at: str | None = None) -> int:
        """Open a run in the running state. Returns its id."""
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "INSERT INTO sync_runs (kind, status, started_at) VALUES (?, ?, ?)",
                (kind, SyncRunStatus.RUNNING.value, started_at or now_iso()),
            )
            run_id = cursor.lastrowid
        logger.info("sync_run_started", run_id=run_id, kind=kind)
        return run_id  # type: ignore[return-value]

    async def finish(
        self,
        run_id: int,
        result: SyncCycleResult,
        *,
        status: SyncRunStatus,
        error: str | None = None,
    ) -> None:
        """Close a run with its final counts."""
        async with self._transaction() as conn:
            await conn.execute(
                """
                UPDATE sync_runs
                SET status = ?, finished_at = ?, listing_count = ?, new_count = ?,
                    updated_count = ?, unchanged_count = ?, failed_count = ?,
                    deactivated_count = ?, error = ?
                WHERE id = ?
                """,
                (
                    status.value,
                    now_iso(),
                    result.listing_count,
                    result.new_count,
                    result.updated_count,
                    result.unchanged_count,
                    result.failed_count,
                    result.reconcile.deactivated_count,
                    error,
                    run_id,
                ),
            )
        logger.info("sync_run_finished", run_id=run_id, status=status.value)

    async def get(self, run_id: int) -> SyncRun:
        """Raises NotFoundError for unknown ids."""
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM sync_runs WHERE id = ?", (run_id,))
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"No sync run {run_id}")
        return row_to_sync_run(row)

    async def list_recent(self, limit: int = 20) -> list[SyncRun]:
        """Most recent runs first."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [row_to_sync_run(row) for row in rows]

    async def fail_stale(
        self,
        *,
        older_than_minutes: int = DEFAULT_STALE_MINUTES,
        run_id: int | None = None,
    ) -> int:
        """Mark runs stuck in the running state as failed.

        With ``run_id`` only that run is closed, however recent. Otherwise every
        run started more than ``older_than_minutes`` ago is closed.

        Returns:
            Number of runs marked as failed.
        """
        if run_id is not None:
            where = "id = ?"
            params: tuple[Any, ...] = (run_id,)
            error = "Marked as failed manually"
        else:
            cutoff = datetime.now(UTC) - timedelta(minutes=older_than_minutes)
            where = "started_at < ?"
            params = (cutoff.isoformat(),)
            error = f"Still running after {older_than_minutes} minutes"

        async with self._transaction() as conn:
            cursor = await conn.execute(
                f"""
                UPDATE sync_runs
                SET status = ?, finished_at = ?, error = ?
                WHERE status = ? AND {where}
                """,
                (
                    SyncRunStatus.FAILED.value,
                    now_iso(),
                    error,
                    SyncRunStatus.RUNNING.value,
                    *params,
                ),
            )
            cleaned = cursor.rowcount
        if cleaned:
            logger.warning("stale_sync_runs_failed", count=cleaned, run_id=run_id)
        return cleaned
