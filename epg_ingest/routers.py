from typing import Annotated
from fastapi import APIRouter, HTTPException, Query
import logging

from epg_ingest.schemas import ProgramsResponse, RefreshRequestSchema, validate_timezone_name
from epg_ingest.services import (
    RefreshRequest,
    epg_scheduler,
    get_ingestion_coordinator,
    get_program_store,
    get_programs,
    refresh_playlist_epg
)
from epg_ingest.services.ingest_types import Channel


logger = logging.getLogger(__name__)

main_router = APIRouter()

@main_router.get("/")
async def root() -> dict:
    """Root endpoint with service information"""
    return {
        "service": "EPG Ingest",
        "version": "0.1.0",
        "scheduled_playlists": epg_scheduler.scheduled_playlists(),
        "endpoints": {
            "refresh": "/playlists/{playlist_id}/refresh - Refresh EPG for a playlist (POST)",
            "programs": "/playlists/{playlist_id}/programs - Get stored programs",
            "delete": "/playlists/{playlist_id} - Stop refreshing and remove stored programs (DELETE)",
            "health": "/health - Health check"
        }
    }


@main_router.get("/health")
async def health_check() -> dict:
    """Health check endpoint"""
    return {
        "status": "ok",
        "scheduler_running": epg_scheduler.scheduler.running if epg_scheduler.scheduler else False,
        "scheduled_playlists": len(epg_scheduler.scheduled_playlists())
    }


@main_router.post("/playlists/{playlist_id}/refresh")
async def trigger_refresh(playlist_id: str, request: RefreshRequestSchema) -> dict:
    """
    Refresh EPG data for a playlist

    This will stream, parse and store EPG data from every source of the playlist
    """
    logger.info(f"Manual EPG refresh triggered via API for playlist {playlist_id}")
    refresh_request = RefreshRequest(
        playlist_id=playlist_id,
        channels=[Channel(id=c.id, name=c.name, tvg_id=c.tvg_id) for c in request.channels],
        epg_urls=request.epg_urls,
        force=request.force
    )
    result = await refresh_playlist_epg(refresh_request)

    if result.get("status") == "failed":
        raise HTTPException(status_code=500, detail=result.get("error") or "EPG refresh failed")

    if request.schedule and refresh_request.epg_urls:
        epg_scheduler.schedule_playlist(refresh_request)
        next_run = epg_scheduler.get_next_run_time(playlist_id)
        result["next_scheduled_refresh"] = next_run.isoformat() if next_run else None

    return result


@main_router.get("/playlists/{playlist_id}/programs", response_model=ProgramsResponse)
async def list_programs(
    playlist_id: str,
    channel_id: Annotated[list[str] | None, Query()] = None,
    timezone: str = "UTC"
) -> ProgramsResponse:
    """
    Get stored programs for a playlist

    Args:
        playlist_id: Playlist identifier
        channel_id: Optional repeated channel id filter
        timezone: Timezone for response timestamps

    Returns:
        Programs grouped by channel id with timestamps in requested timezone
    """
    try:
        validate_timezone_name(timezone)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return await get_programs(get_program_store(), playlist_id, channel_id, timezone)


@main_router.delete("/playlists/{playlist_id}")
async def delete_playlist(playlist_id: str) -> dict:
    """Cancel any running refresh, stop scheduling and remove stored programs"""
    get_ingestion_coordinator().cancel(playlist_id)
    unscheduled = epg_scheduler.unschedule_playlist(playlist_id)
    deleted = await get_program_store().clear_playlist(playlist_id)
    logger.info(f"Playlist {playlist_id} removed ({deleted} programs deleted)")
    return {
        "status": "deleted",
        "playlist_id": playlist_id,
        "programs_deleted": deleted,
        "unscheduled": unscheduled
    }
