"""
EPG Refresh Service

Coordinates streaming, ingestion and housekeeping of EPG data for a playlist
across all of its XMLTV sources.
"""
from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, Literal

from epg_ingest.config import settings
from epg_ingest.services.db_service import SQLProgramStore
from epg_ingest.services.fetch_coordinator import (
    IngestionCoordinator,
    RunToken,
    get_ingestion_coordinator,
)
from epg_ingest.services.ingest_types import Channel, IngestionStats
from epg_ingest.services.ingestion_service import EPGIngestionPipeline, IngestionOptions
from epg_ingest.utils.streams import open_http_stream, sanitize_url_for_logging
from epg_ingest.utils.timezone import to_epoch_millis


logger = logging.getLogger(__name__)

StreamOpener = Callable[[str], AbstractAsyncContextManager[Any]]


@dataclass(slots=True)
class RefreshRequest:
    playlist_id: str
    channels: list[Channel]
    epg_urls: list[str]
    force: bool = False


@dataclass(slots=True)
class SourceSummary:
    index: int
    source_url: str
    sanitized_url: str
    started_at: datetime
    completed_at: datetime
    status: Literal["success", "failed", "cancelled"]
    stats: IngestionStats | None = None
    error: str | None = None

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.completed_at - self.started_at).total_seconds())

    @property
    def programs_inserted(self) -> int:
        return self.stats.inserted if self.stats else 0

    def to_dict(self) -> dict:
        payload = {
            "source_index": self.index,
            "sanitized_url": self.sanitized_url,
            "status": self.status,
            "programs_inserted": self.programs_inserted,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": self.duration_seconds,
        }
        if self.stats:
            payload["ingestion"] = self.stats.to_dict()
        if self.error:
            payload["error"] = self.error
        return payload


def build_source_signature(playlist_id: str, channels: Sequence[Channel], epg_urls: Sequence[str]) -> str:
    """Digest of everything that changes what a refresh would store."""
    raw = "{}:{}:{}".format(
        playlist_id,
        "|".join(channel.id for channel in channels),
        "|".join(epg_urls),
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _normalize_urls(urls: Sequence[str]) -> list[str]:
    seen: dict[str, None] = {}
    for url in urls:
        cleaned = url.strip()
        if cleaned:
            seen.setdefault(cleaned, None)
    return list(seen)


class EPGRefreshService:
    """Runs the ingestion pipeline for each EPG source of a playlist."""

    def __init__(
        self,
        store: SQLProgramStore,
        *,
        coordinator: IngestionCoordinator | None = None,
        options: IngestionOptions | None = None,
        stream_opener: StreamOpener | None = None,
        min_refresh_age: timedelta | None = None,
    ) -> None:
        self.store = store
        self.coordinator = coordinator or get_ingestion_coordinator()
        self.options = options or IngestionOptions.from_settings()
        self._open_stream = stream_opener or partial(
            open_http_stream,
            timeout=settings.epg_http_timeout_sec,
            max_retries=settings.epg_http_max_retries,
            user_agent=settings.epg_http_user_agent,
            chunk_size=self.options.chunk_size,
        )
        self.min_refresh_age = (
            min_refresh_age
            if min_refresh_age is not None
            else timedelta(minutes=settings.epg_refresh_min_age_minutes)
        )

    async def refresh(self, request: RefreshRequest) -> dict:
        """
        Refresh stored EPG data for a playlist.

        A new call for the same playlist supersedes one still in progress.
        Source failures are reported in the result and never remove data
        stored by earlier refreshes.

        Returns:
            Dictionary with refresh statistics or a skip message
        """
        playlist_id = request.playlist_id
        urls = _normalize_urls(request.epg_urls)
        if not urls:
            logger.warning("[Playlist %s] No EPG sources configured - refresh skipped", playlist_id)
            return {"status": "skipped", "message": "No EPG sources configured for playlist"}

        started_at = datetime.now(timezone.utc)
        signature = build_source_signature(playlist_id, request.channels, urls)

        if not request.force and await self._is_fresh(playlist_id, signature, started_at):
            logger.info("[Playlist %s] EPG data is up to date - refresh skipped", playlist_id)
            return {"status": "skipped", "message": "EPG data is up to date"}

        token = self.coordinator.begin(playlist_id)
        summaries: list[SourceSummary] = []
        try:
            for index, url in enumerate(urls, start=1):
                summary = await self._process_source(index, url, request, token, started_at)
                summaries.append(summary)
                if summary.status == "cancelled":
                    break
        finally:
            self.coordinator.finish(token)

        cancelled = any(summary.status == "cancelled" for summary in summaries)
        succeeded = [summary for summary in summaries if summary.status == "success"]

        deleted = 0
        if succeeded and not cancelled:
            deleted = await self._housekeeping(playlist_id, signature, started_at)

        return self._build_result(playlist_id, started_at, summaries, deleted)

    async def _is_fresh(self, playlist_id: str, signature: str, now: datetime) -> bool:
        metadata = await self.store.get_playlist_metadata(playlist_id)
        if metadata is None or metadata.source_signature != signature:
            return False
        age_ms = to_epoch_millis(now) - metadata.last_updated
        return age_ms < self.min_refresh_age.total_seconds() * 1000

    async def _process_source(
        self,
        index: int,
        url: str,
        request: RefreshRequest,
        token: RunToken,
        now: datetime,
    ) -> SourceSummary:
        sanitized_url = sanitize_url_for_logging(url)
        started_at = datetime.now(timezone.utc)
        logger.info("[Playlist %s] Processing source %s: %s", request.playlist_id, index, sanitized_url)

        pipeline = EPGIngestionPipeline(self.store, self.options, token=token)
        try:
            async with self._open_stream(url) as stream:
                stats = await pipeline.run(stream, request.playlist_id, request.channels, now=now)
        except Exception as exc:
            logger.error(
                "[Playlist %s] Failed to process source %s (%s): %s",
                request.playlist_id,
                index,
                sanitized_url,
                exc,
                exc_info=True,
            )
            return SourceSummary(
                index=index,
                source_url=url,
                sanitized_url=sanitized_url,
                started_at=started_at,
                completed_at=datetime.now(timezone.utc),
                status="failed",
                error=str(exc),
            )

        return SourceSummary(
            index=index,
            source_url=url,
            sanitized_url=sanitized_url,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            status="cancelled" if stats.cancelled else "success",
            stats=stats,
        )

    async def _housekeeping(self, playlist_id: str, signature: str, now: datetime) -> int:
        """Prune programs that ended before the window and record the refresh."""
        lower, _ = self.options.window.bounds(now)
        deleted = 0
        try:
            deleted = await self.store.prune_old_programs(playlist_id, lower)
            await self.store.set_playlist_metadata(playlist_id, to_epoch_millis(now), signature)
        except Exception as exc:
            logger.error(
                "[Playlist %s] Post-refresh housekeeping failed: %s",
                playlist_id,
                exc,
                exc_info=True,
            )
        return deleted

    def _build_result(
        self,
        playlist_id: str,
        started_at: datetime,
        summaries: list[SourceSummary],
        deleted: int,
    ) -> dict:
        successes = sum(1 for summary in summaries if summary.status == "success")
        failures = sum(1 for summary in summaries if summary.status == "failed")
        cancelled = any(summary.status == "cancelled" for summary in summaries)

        if cancelled:
            status = "cancelled"
        elif failures and not successes:
            status = "failed"
        elif failures:
            status = "partial"
        else:
            status = "success"

        result = {
            "status": status,
            "playlist_id": playlist_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "started_at": started_at.isoformat(),
            "sources_processed": len(summaries),
            "sources_succeeded": successes,
            "sources_failed": failures,
            "programs_inserted": sum(summary.programs_inserted for summary in summaries),
            "programs_deleted": deleted,
            "source_details": [summary.to_dict() for summary in summaries],
        }
        if status == "failed":
            result["error"] = "\n".join(
                f"{summary.sanitized_url} - {summary.error}" for summary in summaries if summary.error
            )
        return result


# Global singleton instances
_store: SQLProgramStore | None = None
_service: EPGRefreshService | None = None


def get_program_store() -> SQLProgramStore:
    global _store
    if _store is None:
        _store = SQLProgramStore()
    return _store


def get_refresh_service() -> EPGRefreshService:
    global _service
    if _service is None:
        _service = EPGRefreshService(get_program_store())
    return _service


def reset_refresh_service() -> None:
    """
    Reset the store and service singletons (mainly for testing).

    WARNING: Only use this in test environments!
    """
    global _store, _service
    _store = None
    _service = None


async def refresh_playlist_epg(request: RefreshRequest) -> dict:
    """
    Main entry point for a playlist EPG refresh.

    Never raises for source or storage problems; they are reported once in
    the returned dictionary so the host application keeps running.
    """
    logger.info("EPG refresh started for playlist %s at %s", request.playlist_id, datetime.now(timezone.utc).isoformat())
    try:
        result = await get_refresh_service().refresh(request)
    except RuntimeError as exc:
        logger.error("EPG refresh failed: %s", exc, exc_info=True)
        return {"status": "failed", "error": str(exc)}
    except Exception as exc:  # Catch-all to ensure API stability
        logger.error("Unexpected error during EPG refresh: %s", exc, exc_info=True)
        return {"status": "failed", "error": str(exc)}
    logger.info("EPG refresh for playlist %s finished with status %s", request.playlist_id, result["status"])
    return result
