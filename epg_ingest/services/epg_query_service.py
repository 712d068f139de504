"""
EPG Query Service

Business logic for reading stored EPG programs back for a playlist.
This service handles all read operations for programs.
"""
from datetime import datetime, timezone
import logging

from epg_ingest.schemas import ProgramResponse, ProgramsResponse
from epg_ingest.services.db_service import ProgramRecord, SQLProgramStore
from epg_ingest.utils.timezone import convert_to_timezone, from_epoch_millis

logger = logging.getLogger(__name__)


async def get_programs(
    store: SQLProgramStore,
    playlist_id: str,
    channel_ids: list[str] | None,
    timezone_str: str = "UTC"
) -> ProgramsResponse:
    """
    Get stored programs for a playlist

    Args:
        store: Program store
        playlist_id: Playlist identifier
        channel_ids: Restrict to these channels (None or empty means all channels)
        timezone_str: Timezone for response timestamps

    Returns:
        Programs grouped by channel id with timestamps in requested timezone
    """
    logger.info(
        f"Received programs request: playlist={playlist_id}, "
        f"channels={len(channel_ids) if channel_ids else 'all'}, timezone={timezone_str}"
    )

    if channel_ids:
        grouped = await store.query_programs_for_channels(playlist_id, channel_ids)
    else:
        grouped = {}
        for record in await store.query_by_playlist(playlist_id):
            grouped.setdefault(record.channel_id, []).append(record)

    programs: dict[str, list[ProgramResponse]] = {}
    for channel_id in channel_ids or grouped:
        programs[channel_id] = [
            _to_response(record, timezone_str) for record in grouped.get(channel_id, [])
        ]

    total_programs = sum(len(items) for items in programs.values())
    channels_found = sum(1 for items in programs.values() if items)
    logger.info(f"Programs response: {channels_found} channels found, {total_programs} programs")

    return ProgramsResponse(
        timestamp=convert_to_timezone(datetime.now(timezone.utc), timezone_str),
        timezone=timezone_str,
        playlist_id=playlist_id,
        channels_found=channels_found,
        total_programs=total_programs,
        programs=programs
    )


def _to_response(record: ProgramRecord, timezone_str: str) -> ProgramResponse:
    return ProgramResponse(
        id=record.id,
        channel_id=record.channel_id,
        start_time=convert_to_timezone(from_epoch_millis(record.start), timezone_str),
        stop_time=convert_to_timezone(from_epoch_millis(record.end), timezone_str),
        title=record.title,
        description=record.description,
        epg_channel_id=record.epg_channel_id
    )
