import logging
from datetime import datetime
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from epg_ingest.config import settings
from epg_ingest.services.epg_refresh_service import RefreshRequest, refresh_playlist_epg


logger = logging.getLogger(__name__)

JOB_PREFIX = "epg_sync_"


class EPGScheduler:
    """Scheduler for periodic per-playlist EPG refreshes"""

    def __init__(self):
        self.scheduler: AsyncIOScheduler | None = None
        self._requests: dict[str, RefreshRequest] = {}

    @staticmethod
    def _job_id(playlist_id: str) -> str:
        return f"{JOB_PREFIX}{playlist_id}"

    async def _refresh_job(self, playlist_id: str) -> None:
        """Background job that runs the EPG refresh for one playlist"""
        request = self._requests.get(playlist_id)
        if request is None:
            logger.warning(f"Scheduled refresh for unknown playlist {playlist_id}")
            return

        logger.info(f"Scheduled EPG refresh triggered for playlist {playlist_id}")
        try:
            result = await refresh_playlist_epg(request)
            if result.get("status") == "failed":
                logger.error(f"Scheduled refresh failed: {result.get('error')}")
        except Exception as e:
            logger.error(f"Exception in scheduled refresh: {e}", exc_info=True)

    def start(self) -> None:
        """Start the scheduler"""
        if self.scheduler and self.scheduler.running:
            logger.warning("Scheduler already running")
            return

        self.scheduler = AsyncIOScheduler(timezone='UTC')
        self.scheduler.start()
        for request in self._requests.values():
            self._add_job(request.playlist_id)
        logger.info("Scheduler started (%s playlists scheduled)", len(self._requests))

    def shutdown(self) -> None:
        """Shutdown the scheduler"""
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("Scheduler stopped")
            self.scheduler = None

    def _add_job(self, playlist_id: str) -> None:
        if not self.scheduler:
            return

        try:
            trigger = CronTrigger.from_crontab(settings.epg_sync_cron)
        except (ValueError, KeyError) as exc:
            logger.error("Invalid cron expression '%s': %s", settings.epg_sync_cron, exc)
            raise

        self.scheduler.add_job(
            self._refresh_job,
            trigger=trigger,
            args=[playlist_id],
            id=self._job_id(playlist_id),
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=settings.epg_sync_misfire_grace_sec
        )

    def schedule_playlist(self, request: RefreshRequest) -> None:
        """Register (or replace) the periodic refresh for a playlist"""
        self._requests[request.playlist_id] = RefreshRequest(
            playlist_id=request.playlist_id,
            channels=list(request.channels),
            epg_urls=list(request.epg_urls),
            force=False,
        )
        self._add_job(request.playlist_id)
        next_time = self.get_next_run_time(request.playlist_id)
        logger.info(
            "Scheduled periodic EPG refresh for %s. Next refresh: %s",
            request.playlist_id,
            next_time.isoformat() if next_time else "when scheduler starts"
        )

    def unschedule_playlist(self, playlist_id: str) -> bool:
        """Remove the periodic refresh for a playlist"""
        removed = self._requests.pop(playlist_id, None) is not None
        if self.scheduler and self.scheduler.get_job(self._job_id(playlist_id)):
            self.scheduler.remove_job(self._job_id(playlist_id))
        if removed:
            logger.info("Cancelled periodic EPG refresh for %s", playlist_id)
        return removed

    def scheduled_playlists(self) -> list[str]:
        return sorted(self._requests)

    def get_next_run_time(self, playlist_id: str) -> datetime | None:
        """Get next scheduled refresh time for a playlist"""
        if not self.scheduler:
            return None
        job = self.scheduler.get_job(self._job_id(playlist_id))
        return job.next_run_time if job else None


epg_scheduler = EPGScheduler()
