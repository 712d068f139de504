"""
Database operations for EPG data

This module contains the program store used as the ingestion write sink,
plus the read/prune/metadata operations for stored programs.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from time import perf_counter
from typing import Protocol, TypeVar, cast

from sqlalchemy import DateTime, bindparam, delete, func, select, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import OperationalError

from epg_ingest.config import settings
from epg_ingest.database import session_scope
from epg_ingest.models import EPGMetadata, EPGProgram
from epg_ingest.services.ingest_types import InsertableProgram


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class ProgramRecord:
    """Stored program row as returned by read queries."""
    id: int
    playlist_id: str
    channel_id: str
    title: str
    description: str | None
    start: int
    end: int
    epg_channel_id: str | None = None


@dataclass(slots=True, frozen=True)
class PlaylistMetadata:
    playlist_id: str
    last_updated: int
    source_signature: str | None = None


class ProgramSink(Protocol):
    """Write sink contract used by the ingestion pipeline."""

    async def insert_batch(self, playlist_id: str, records: Sequence[InsertableProgram]) -> int:
        """Insert records, returning the number of rows that were actually new."""
        ...

    async def query_by_playlist(self, playlist_id: str) -> Sequence[ProgramRecord]:
        ...


_INSERT_STMT = text(
    """
    INSERT INTO epg_programs (
        playlist_id,
        channel_id,
        title,
        description,
        start_ms,
        end_ms,
        epg_channel_id,
        created_at
    )
    VALUES (
        :playlist_id,
        :channel_id,
        :title,
        :description,
        :start_ms,
        :end_ms,
        :epg_channel_id,
        :created_at
    )
    ON CONFLICT(playlist_id, channel_id, start_ms, end_ms, title) DO NOTHING
    """
).bindparams(bindparam("created_at", type_=DateTime()))


def _is_database_locked(exc: Exception) -> bool:
    message = str(exc).lower()
    return "database is locked" in message or "busy" in message


def _to_record(row: EPGProgram) -> ProgramRecord:
    return ProgramRecord(
        id=row.id,
        playlist_id=row.playlist_id,
        channel_id=row.channel_id,
        title=row.title,
        description=row.description,
        start=row.start_ms,
        end=row.end_ms,
        epg_channel_id=row.epg_channel_id,
    )


class SQLProgramStore:
    """
    SQLite-backed program store.

    Writes are serialized through an asyncio.Lock so concurrent refreshes
    (manual and scheduled) never interleave batches. Each batch runs in its
    own transaction: it either fully commits or fails as a unit.
    """

    def __init__(
        self,
        *,
        lock_retries: int | None = None,
        lock_backoff_ms: int | None = None,
    ) -> None:
        self._write_lock = asyncio.Lock()
        self._lock_retries = lock_retries if lock_retries is not None else settings.epg_store_lock_retries
        self._lock_backoff = (
            lock_backoff_ms if lock_backoff_ms is not None else settings.epg_store_lock_backoff_ms
        ) / 1000

    async def _run_with_lock_retry(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Retry an operation while SQLite reports the database as locked."""
        backoff = self._lock_backoff
        for attempt in range(1, self._lock_retries + 1):
            try:
                return await operation()
            except OperationalError as exc:
                if not _is_database_locked(exc) or attempt == self._lock_retries:
                    raise
                logger.warning(
                    "Database locked on attempt %s/%s; retrying in %.3fs",
                    attempt,
                    self._lock_retries,
                    backoff,
                )
                await asyncio.sleep(backoff)
                backoff *= 2
        raise RuntimeError("unreachable")

    async def insert_batch(self, playlist_id: str, records: Sequence[InsertableProgram]) -> int:
        """
        Store programs using INSERT ... ON CONFLICT DO NOTHING.

        Args:
            playlist_id: Playlist the batch belongs to
            records: Programs to insert

        Returns:
            Number of programs actually inserted (duplicates are ignored)
        """
        if not records:
            logger.debug("No programs to store")
            return 0

        now = datetime.now(timezone.utc)
        payload = [
            {
                "playlist_id": playlist_id,
                "channel_id": program.channel_id,
                "title": program.title,
                "description": program.description,
                "start_ms": program.start,
                "end_ms": program.end,
                "epg_channel_id": program.source_channel_ref,
                "created_at": now,
            }
            for program in records
        ]

        async def _insert() -> int:
            async with session_scope() as session:
                raw_result = await session.execute(_INSERT_STMT, payload)
            rowcount = cast(CursorResult, raw_result).rowcount
            if rowcount is None or rowcount < 0:
                return len(payload)
            return rowcount

        loop_start = perf_counter()
        async with self._write_lock:
            inserted = await self._run_with_lock_retry(_insert)

        logger.debug(
            "Batch persisted for %s: payload=%s, inserted=%s, duplicates=%s, time=%.3fs",
            playlist_id,
            len(payload),
            inserted,
            len(payload) - inserted,
            perf_counter() - loop_start,
        )
        return inserted

    async def query_by_playlist(self, playlist_id: str) -> list[ProgramRecord]:
        """Return every stored program for a playlist, ordered by channel and start."""
        async with session_scope() as session:
            result = await session.execute(
                select(EPGProgram)
                .where(EPGProgram.playlist_id == playlist_id)
                .order_by(EPGProgram.channel_id, EPGProgram.start_ms)
            )
            return [_to_record(row) for row in result.scalars().all()]

    async def query_programs_for_channels(
        self,
        playlist_id: str,
        channel_ids: Sequence[str],
    ) -> dict[str, list[ProgramRecord]]:
        """
        Query programs for specific channels of a playlist

        Args:
            playlist_id: Playlist identifier
            channel_ids: Channel ids to look up

        Returns:
            Programs grouped by channel id, ordered by start time
        """
        if not channel_ids:
            return {}

        async with session_scope() as session:
            result = await session.execute(
                select(EPGProgram)
                .where(
                    EPGProgram.playlist_id == playlist_id,
                    EPGProgram.channel_id.in_(list(channel_ids)),
                )
                .order_by(EPGProgram.channel_id, EPGProgram.start_ms)
            )
            rows = result.scalars().all()

        grouped: dict[str, list[ProgramRecord]] = {}
        for row in rows:
            grouped.setdefault(row.channel_id, []).append(_to_record(row))
        return grouped

    async def count_programs(self, playlist_id: str) -> int:
        async with session_scope() as session:
            result = await session.execute(
                select(func.count(EPGProgram.id)).where(EPGProgram.playlist_id == playlist_id)
            )
            return result.scalar_one_or_none() or 0

    async def prune_old_programs(self, playlist_id: str, cutoff_ms: int) -> int:
        """
        Delete programs that ended before the cutoff.

        Args:
            playlist_id: Playlist identifier
            cutoff_ms: Delete programs with end time before this (epoch ms)

        Returns:
            Number of deleted programs
        """
        condition = (EPGProgram.playlist_id == playlist_id) & (EPGProgram.end_ms < cutoff_ms)

        async def _prune() -> int:
            async with session_scope() as session:
                result = await session.execute(select(func.count(EPGProgram.id)).where(condition))
                deleted_count = result.scalar_one_or_none() or 0
                await session.execute(delete(EPGProgram).where(condition))
            return deleted_count

        async with self._write_lock:
            deleted = await self._run_with_lock_retry(_prune)

        logger.info("Deleted %s old programs for playlist %s", deleted, playlist_id)
        return deleted

    async def clear_playlist(self, playlist_id: str) -> int:
        """Delete all programs and metadata stored for a playlist."""

        async def _clear() -> int:
            async with session_scope() as session:
                result = await session.execute(
                    select(func.count(EPGProgram.id)).where(EPGProgram.playlist_id == playlist_id)
                )
                deleted_count = result.scalar_one_or_none() or 0
                await session.execute(delete(EPGProgram).where(EPGProgram.playlist_id == playlist_id))
                await session.execute(delete(EPGMetadata).where(EPGMetadata.playlist_id == playlist_id))
            return deleted_count

        async with self._write_lock:
            deleted = await self._run_with_lock_retry(_clear)

        logger.info("Cleared %s programs for playlist %s", deleted, playlist_id)
        return deleted

    async def set_playlist_metadata(
        self,
        playlist_id: str,
        last_updated: int,
        source_signature: str | None = None,
    ) -> None:
        stmt = sqlite_insert(EPGMetadata).values(
            playlist_id=playlist_id,
            last_updated=last_updated,
            source_signature=source_signature,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[EPGMetadata.playlist_id],
            set_={
                "last_updated": stmt.excluded.last_updated,
                "source_signature": stmt.excluded.source_signature,
            },
        )

        async def _upsert() -> None:
            async with session_scope() as session:
                await session.execute(stmt)

        async with self._write_lock:
            await self._run_with_lock_retry(_upsert)

    async def get_playlist_metadata(self, playlist_id: str) -> PlaylistMetadata | None:
        async with session_scope() as session:
            row = await session.get(EPGMetadata, playlist_id)
            if row is None:
                return None
            return PlaylistMetadata(
                playlist_id=row.playlist_id,
                last_updated=row.last_updated,
                source_signature=row.source_signature,
            )
