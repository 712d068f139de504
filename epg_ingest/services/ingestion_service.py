"""
EPG Ingestion Service

Drives the streaming XMLTV parser, converts programmes against the channel
index and writes accepted rows to the program sink in bounded batches.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from epg_ingest.config import IngestSettings, settings
from epg_ingest.services.channel_index import ChannelIndex, build_channel_index
from epg_ingest.services.db_service import ProgramSink
from epg_ingest.services.fetch_coordinator import IngestionSuperseded, RunToken
from epg_ingest.services.ingest_types import (
    Channel,
    ChunkProcessed,
    IngestionStats,
    InsertableProgram,
    RejectionReason,
    XmltvChannelEvent,
    XmltvProgramEvent,
)
from epg_ingest.services.program_converter import (
    DEFAULT_MISSING_STOP,
    ProgramWindow,
    convert_program,
)
from epg_ingest.services.xmltv_parser_service import XmltvParseError, parse_xmltv_stream
from epg_ingest.utils.streams import DEFAULT_CHUNK_SIZE
from epg_ingest.utils.timezone import from_epoch_millis


logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class IngestionOptions:
    """Tunables for one ingestion run."""
    window: ProgramWindow = field(default_factory=ProgramWindow)
    missing_stop: timedelta = DEFAULT_MISSING_STOP
    insert_threshold: int = 500
    max_queue_size: int = 2000
    min_flush_interval: float = 0.25  # seconds
    progress_interval_bytes: int = 100_000
    chunk_size: int = DEFAULT_CHUNK_SIZE

    def __post_init__(self) -> None:
        if self.insert_threshold <= 0:
            raise ValueError("insert_threshold must be > 0")
        if self.max_queue_size <= 0:
            raise ValueError("max_queue_size must be > 0")
        if self.min_flush_interval < 0:
            raise ValueError("min_flush_interval must be >= 0")

    @classmethod
    def from_settings(cls, config: IngestSettings | None = None) -> "IngestionOptions":
        config = config or settings
        return cls(
            window=ProgramWindow(
                hours_before=config.epg_window_hours_before,
                hours_after=config.epg_window_hours_after,
            ),
            missing_stop=timedelta(minutes=config.epg_missing_stop_minutes),
            insert_threshold=config.epg_insert_threshold,
            max_queue_size=config.epg_max_queue_size,
            min_flush_interval=config.epg_min_flush_interval_ms / 1000,
            progress_interval_bytes=config.epg_progress_interval_bytes,
            chunk_size=config.epg_read_chunk_size,
        )


class _IngestionRun:
    """Mutable state of a single run: the bounded queue and its flush policy."""

    def __init__(
        self,
        sink: ProgramSink,
        options: IngestionOptions,
        index: ChannelIndex,
        stats: IngestionStats,
        now: datetime,
        token: RunToken | None,
        clock: Callable[[], float],
    ) -> None:
        self.sink = sink
        self.options = options
        self.index = index
        self.stats = stats
        self.now = now
        self.token = token
        self.clock = clock
        self.queue: deque[InsertableProgram] = deque()
        self.last_flush = clock()

    def check_token(self) -> None:
        if self.token is not None:
            self.token.raise_if_stale()

    async def on_channel(self, event: XmltvChannelEvent) -> None:
        self.stats.channels_seen += 1

    async def on_program(self, event: XmltvProgramEvent) -> None:
        self.stats.programs_seen += 1
        try:
            result = convert_program(
                event,
                self.index,
                self.stats.playlist_id,
                self.now,
                window=self.options.window,
                missing_stop=self.options.missing_stop,
            )
        except (OverflowError, ValueError) as exc:
            logger.debug("Failed to convert programme on %r: %s", event.channel_ref, exc)
            result = RejectionReason.OTHER

        match result:
            case InsertableProgram():
                if len(self.queue) >= self.options.max_queue_size:
                    self.stats.forced_flushes += 1
                    logger.debug(
                        "Queue reached %s programs; forcing flush",
                        self.options.max_queue_size,
                    )
                    await self.flush()
                self.queue.append(result)
                self.stats.accepted += 1
            case RejectionReason():
                self.stats.rejected[result] += 1

    async def on_chunk_processed(self, marker: ChunkProcessed) -> None:
        self.stats.bytes_read = marker.bytes_read
        self.check_token()

        while len(self.queue) >= self.options.insert_threshold:
            await self.flush()

        if self.queue and self.clock() - self.last_flush >= self.options.min_flush_interval:
            await self.flush()

        # Let the event loop run between chunks
        await asyncio.sleep(0)

    async def flush(self) -> None:
        """Send up to one batch to the sink. Sink failures drop the batch and the run continues."""
        self.check_token()
        if not self.queue:
            return

        size = min(self.options.insert_threshold, len(self.queue))
        batch = [self.queue.popleft() for _ in range(size)]
        self.stats.flushes += 1

        try:
            inserted = await self.sink.insert_batch(self.stats.playlist_id, batch)
        except Exception as exc:
            self.stats.failed_batches += 1
            self.stats.dropped_records += len(batch)
            logger.error(
                "[Playlist %s] Failed to store batch of %s programs: %s",
                self.stats.playlist_id,
                len(batch),
                exc,
                exc_info=True,
            )
        else:
            self.stats.inserted += inserted
            logger.debug(
                "[Playlist %s] Flushed %s programs (%s new, %s still queued)",
                self.stats.playlist_id,
                len(batch),
                inserted,
                len(self.queue),
            )

        self.last_flush = self.clock()
        await asyncio.sleep(0)
        self.check_token()

    async def drain(self) -> None:
        while self.queue:
            await self.flush()

    def discard(self) -> int:
        discarded = len(self.queue)
        self.queue.clear()
        return discarded


class EPGIngestionPipeline:
    """Streams one XMLTV document into the program sink for a playlist."""

    def __init__(
        self,
        sink: ProgramSink,
        options: IngestionOptions | None = None,
        *,
        token: RunToken | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sink = sink
        self.options = options or IngestionOptions.from_settings()
        self.token = token
        self.clock = clock

    async def run(
        self,
        stream: Any,
        playlist_id: str,
        channels: Iterable[Channel],
        *,
        now: datetime | None = None,
    ) -> IngestionStats:
        """
        Ingest an XMLTV byte stream for a playlist.

        Args:
            stream: Byte source (async iterable, file-like or iterable of bytes)
            playlist_id: Playlist the programs belong to
            channels: Playlist channels used for matching

        Keyword Args:
            now: Reference instant for the window filter (defaults to current UTC time)

        Returns:
            Statistics for the run; inserted holds the sink-reported new row count

        Raises:
            XmltvParseError: If the document is malformed (earlier flushed batches stay committed)
        """
        now = now or datetime.now(timezone.utc)
        stats = IngestionStats(playlist_id=playlist_id, started_at=datetime.now(timezone.utc))
        index = build_channel_index(channels)
        run = _IngestionRun(self.sink, self.options, index, stats, now, self.token, self.clock)

        lower, upper = self.options.window.bounds(now)
        logger.info(
            "[Playlist %s] Starting EPG ingestion (%s channel keys, window %s -> %s)",
            playlist_id,
            len(index),
            from_epoch_millis(lower).isoformat(),
            from_epoch_millis(upper).isoformat(),
        )

        try:
            await parse_xmltv_stream(
                stream,
                on_channel=run.on_channel,
                on_program=run.on_program,
                on_chunk_processed=run.on_chunk_processed,
                progress_interval_bytes=self.options.progress_interval_bytes,
                chunk_size=self.options.chunk_size,
            )
            run.check_token()
            await run.drain()
        except IngestionSuperseded:
            stats.cancelled = True
            logger.warning(
                "[Playlist %s] Ingestion superseded by a newer run; %s queued programs discarded",
                playlist_id,
                run.discard(),
            )
        except XmltvParseError:
            logger.error(
                "[Playlist %s] Aborting ingestion on malformed XML; %s queued programs discarded, "
                "%s programs already stored",
                playlist_id,
                run.discard(),
                stats.inserted,
            )
            raise
        finally:
            stats.completed_at = datetime.now(timezone.utc)

        _log_summary(stats)
        return stats


def _log_summary(stats: IngestionStats) -> None:
    rejected = ", ".join(
        f"{reason.value}={count}" for reason, count in stats.rejected.items() if count
    ) or "none"
    logger.info(
        "[Playlist %s] Ingestion %s: %s programmes seen, %s accepted, %s inserted, "
        "rejected: %s, flushes=%s (forced=%s, failed=%s), %.2fs",
        stats.playlist_id,
        "cancelled" if stats.cancelled else "complete",
        stats.programs_seen,
        stats.accepted,
        stats.inserted,
        rejected,
        stats.flushes,
        stats.forced_flushes,
        stats.failed_batches,
        stats.duration_seconds,
    )


async def ingest(
    stream: Any,
    playlist_id: str,
    channels: Iterable[Channel],
    sink: ProgramSink,
    *,
    options: IngestionOptions | None = None,
    token: RunToken | None = None,
    now: datetime | None = None,
) -> int:
    """
    Ingest an XMLTV stream and return the number of newly inserted programs.

    Raises:
        XmltvParseError: If the document is malformed
    """
    pipeline = EPGIngestionPipeline(sink, options, token=token)
    stats = await pipeline.run(stream, playlist_id, channels, now=now)
    return stats.inserted
