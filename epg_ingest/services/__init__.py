"""
Services package for EPG ingestion

This package contains all business logic and service layer components.
"""
from epg_ingest.services.epg_query_service import get_programs
from epg_ingest.services.epg_refresh_service import (
    RefreshRequest,
    get_program_store,
    get_refresh_service,
    refresh_playlist_epg,
)
from epg_ingest.services.fetch_coordinator import get_ingestion_coordinator
from epg_ingest.services.ingestion_service import EPGIngestionPipeline, IngestionOptions, ingest
from epg_ingest.services.scheduler_service import epg_scheduler
from epg_ingest.services.xmltv_parser_service import parse_xmltv_stream

__all__ = [
    'get_programs',
    'RefreshRequest',
    'get_program_store',
    'get_refresh_service',
    'refresh_playlist_epg',
    'get_ingestion_coordinator',
    'EPGIngestionPipeline',
    'IngestionOptions',
    'ingest',
    'epg_scheduler',
    'parse_xmltv_stream',
]
