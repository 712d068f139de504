"""Tests for multi-source playlist refreshes."""

from datetime import datetime, timedelta, timezone

import pytest

from epg_ingest.services.epg_refresh_service import (
    EPGRefreshService,
    RefreshRequest,
    build_source_signature,
)
from epg_ingest.services.fetch_coordinator import IngestionCoordinator
from epg_ingest.services.ingest_types import InsertableProgram
from epg_ingest.services.ingestion_service import IngestionOptions
from epg_ingest.utils.timezone import to_epoch_millis

from conftest import FakeSources, current_document


def make_service(store, sources: FakeSources, **kwargs) -> EPGRefreshService:
    return EPGRefreshService(
        store,
        coordinator=IngestionCoordinator(),
        options=IngestionOptions(),
        stream_opener=sources,
        min_refresh_age=kwargs.pop("min_refresh_age", timedelta(minutes=30)),
        **kwargs,
    )


class TestRefresh:
    """Test EPGRefreshService.refresh."""

    async def test_single_source_success(self, store, channels):
        sources = FakeSources({"http://a/epg.xml": current_document()})
        service = make_service(store, sources)

        result = await service.refresh(RefreshRequest("playlist-1", channels, ["http://a/epg.xml"]))

        assert result["status"] == "success"
        assert result["programs_inserted"] == 3
        assert result["sources_succeeded"] == 1
        assert result["source_details"][0]["ingestion"]["programs_accepted"] == 3
        metadata = await store.get_playlist_metadata("playlist-1")
        assert metadata.source_signature == build_source_signature("playlist-1", channels, ["http://a/epg.xml"])

    async def test_no_sources_skipped(self, store, channels):
        service = make_service(store, FakeSources({}))
        result = await service.refresh(RefreshRequest("playlist-1", channels, ["  "]))
        assert result["status"] == "skipped"

    async def test_recent_refresh_skipped_unless_forced(self, store, channels):
        """Unchanged sources refreshed recently are not fetched again."""
        sources = FakeSources({"http://a/epg.xml": current_document()})
        service = make_service(store, sources)
        request = RefreshRequest("playlist-1", channels, ["http://a/epg.xml"])

        await service.refresh(request)
        assert (await service.refresh(request))["status"] == "skipped"
        assert len(sources.opened) == 1

        forced = await service.refresh(RefreshRequest("playlist-1", channels, ["http://a/epg.xml"], force=True))
        assert forced["status"] == "success"
        assert forced["programs_inserted"] == 0
        assert len(sources.opened) == 2

    async def test_changed_sources_refresh_again(self, store, channels):
        sources = FakeSources({
            "http://a/epg.xml": current_document(),
            "http://b/epg.xml": current_document("sports.two"),
        })
        service = make_service(store, sources)

        await service.refresh(RefreshRequest("playlist-1", channels, ["http://a/epg.xml"]))
        result = await service.refresh(
            RefreshRequest("playlist-1", channels, ["http://a/epg.xml", "http://b/epg.xml"])
        )
        assert result["status"] == "success"
        assert result["sources_processed"] == 2
        assert result["programs_inserted"] == 3

    async def test_partial_failure(self, store, channels):
        """One unreachable source does not stop the others."""
        sources = FakeSources({"http://good/epg.xml": current_document()})
        service = make_service(store, sources)

        result = await service.refresh(
            RefreshRequest("playlist-1", channels, ["http://down/epg.xml", "http://good/epg.xml"])
        )

        assert result["status"] == "partial"
        assert result["sources_failed"] == 1
        assert result["programs_inserted"] == 3
        assert "cannot reach" in result["source_details"][0]["error"]

    async def test_all_sources_failed(self, store, channels):
        service = make_service(store, FakeSources({"http://bad/epg.xml": b"<tv><programme>"}))

        result = await service.refresh(
            RefreshRequest("playlist-1", channels, ["http://bad/epg.xml", "http://down/epg.xml"])
        )

        assert result["status"] == "failed"
        assert "http://down/epg.xml" in result["error"]
        assert await store.get_playlist_metadata("playlist-1") is None

    async def test_old_programs_pruned_after_success(self, store, channels):
        """Programs that ended before the window are deleted after a successful refresh."""
        stale_start = to_epoch_millis(datetime.now(timezone.utc) - timedelta(days=3))
        await store.insert_batch(
            "playlist-1",
            [InsertableProgram("playlist-1", "c1", "Old", stale_start, stale_start + 3_600_000, "news.one")],
        )
        service = make_service(store, FakeSources({"http://a/epg.xml": current_document()}))

        result = await service.refresh(RefreshRequest("playlist-1", channels, ["http://a/epg.xml"]))

        assert result["programs_deleted"] == 1
        titles = {r.title for r in await store.query_by_playlist("playlist-1")}
        assert "Old" not in titles

    async def test_failed_refresh_keeps_existing_data(self, store, channels):
        service = make_service(store, FakeSources({"http://a/epg.xml": current_document()}))
        await service.refresh(RefreshRequest("playlist-1", channels, ["http://a/epg.xml"]))

        failing = make_service(store, FakeSources({}))
        result = await failing.refresh(RefreshRequest("playlist-1", channels, ["http://down/epg.xml"]))

        assert result["status"] == "failed"
        assert await store.count_programs("playlist-1") == 3


class TestSourceSignature:
    """Test build_source_signature."""

    def test_signature_changes_with_inputs(self, channels):
        base = build_source_signature("p", channels, ["http://a"])
        assert base == build_source_signature("p", channels, ["http://a"])
        assert base != build_source_signature("p", channels, ["http://b"])
        assert base != build_source_signature("p", channels[:1], ["http://a"])
        assert base != build_source_signature("q", channels, ["http://a"])
