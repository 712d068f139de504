from pydantic import BaseModel, Field, field_validator
from zoneinfo import ZoneInfo


def validate_timezone_name(v: str) -> str:
    """Validate an IANA timezone name (or UTC)"""
    if v == "UTC":
        return v
    try:
        # Check if timezone is valid
        ZoneInfo(v)
        return v
    except (KeyError, ValueError):
        raise ValueError(f"Invalid timezone: {v}. Must be a valid IANA timezone (e.g., 'Europe/London', 'America/New_York') or 'UTC'")


class ChannelSchema(BaseModel):
    """Playlist channel used for matching XMLTV programmes"""
    id: str = Field(..., min_length=1, description="Playlist channel ID")
    name: str = Field(..., description="Display name of the channel")
    tvg_id: str | None = Field(None, description="Guide identifier from the playlist (tvg-id)")


class RefreshRequestSchema(BaseModel):
    """EPG refresh request for a playlist"""
    channels: list[ChannelSchema] = Field(..., description="Playlist channels")
    epg_urls: list[str] = Field(default_factory=list, description="XMLTV source URLs")
    force: bool = Field(False, description="Refresh even if stored data is recent")
    schedule: bool = Field(True, description="Keep refreshing this playlist periodically")

    @field_validator('epg_urls')
    @classmethod
    def validate_urls(cls, v: list[str]) -> list[str]:
        """Only http(s) sources are fetched"""
        for url in v:
            if not url.strip().lower().startswith(("http://", "https://")):
                raise ValueError(f"Invalid EPG URL: {url}. Must start with http:// or https://")
        return v


class ProgramResponse(BaseModel):
    """Single program data"""
    id: int
    channel_id: str
    start_time: str
    stop_time: str
    title: str
    description: str | None
    epg_channel_id: str | None = None


class ProgramsResponse(BaseModel):
    """Stored programs for a playlist"""
    timestamp: str
    timezone: str = Field(..., description="Timezone used for all timestamps in response")
    playlist_id: str
    channels_found: int
    total_programs: int
    programs: dict[str, list[ProgramResponse]] = Field(..., description="Programs grouped by playlist channel id")
