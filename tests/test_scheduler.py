"""Tests for per-playlist refresh scheduling."""

from epg_ingest.services.epg_refresh_service import RefreshRequest
from epg_ingest.services.scheduler_service import EPGScheduler


def make_request(playlist_id: str = "playlist-1") -> RefreshRequest:
    return RefreshRequest(playlist_id, [], ["http://epg.test/guide.xml"], force=True)


class TestEPGScheduler:
    """Test EPGScheduler job management."""

    async def test_schedule_and_unschedule(self):
        scheduler = EPGScheduler()
        scheduler.start()
        try:
            scheduler.schedule_playlist(make_request())
            job = scheduler.scheduler.get_job("epg_sync_playlist-1")
            assert job is not None
            assert job.max_instances == 1
            assert scheduler.get_next_run_time("playlist-1") is not None
            assert scheduler.scheduled_playlists() == ["playlist-1"]

            assert scheduler.unschedule_playlist("playlist-1")
            assert scheduler.scheduler.get_job("epg_sync_playlist-1") is None
            assert not scheduler.unschedule_playlist("playlist-1")
        finally:
            scheduler.shutdown()

    async def test_scheduled_refreshes_are_not_forced(self):
        """Periodic runs honour the freshness check."""
        scheduler = EPGScheduler()
        scheduler.schedule_playlist(make_request())
        assert scheduler._requests["playlist-1"].force is False

    async def test_playlists_registered_before_start(self):
        """Jobs are created once the scheduler starts."""
        scheduler = EPGScheduler()
        scheduler.schedule_playlist(make_request("a"))
        scheduler.schedule_playlist(make_request("b"))
        assert scheduler.get_next_run_time("a") is None

        scheduler.start()
        try:
            assert scheduler.get_next_run_time("a") is not None
            assert scheduler.get_next_run_time("b") is not None
        finally:
            scheduler.shutdown()

    async def test_rescheduling_replaces_job(self):
        scheduler = EPGScheduler()
        scheduler.start()
        try:
            scheduler.schedule_playlist(make_request())
            scheduler.schedule_playlist(make_request())
            jobs = [job for job in scheduler.scheduler.get_jobs() if job.id == "epg_sync_playlist-1"]
            assert len(jobs) == 1
        finally:
            scheduler.shutdown()
