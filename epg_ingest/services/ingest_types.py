"""
Shared dataclasses used across the EPG ingestion pipeline.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


@dataclass(slots=True, frozen=True)
class Channel:
    """Playlist channel supplied by the caller (M3U/Xtream output)."""
    id: str
    name: str
    tvg_id: str | None = None


@dataclass(slots=True, frozen=True)
class ChannelIndexEntry:
    """Channel registered under a normalized key; lower priority number wins."""
    channel: Channel
    priority: int


@dataclass(slots=True)
class XmltvChannelEvent:
    """Raw <channel> declaration read from the stream."""
    id: str | None = None
    display_name: str | None = None


@dataclass(slots=True)
class XmltvProgramEvent:
    """Raw <programme> element read from the stream, before time parsing."""
    channel_ref: str
    start: str
    stop: str | None = None
    title: str = ""
    description: str | None = None


@dataclass(slots=True, frozen=True)
class ChunkProcessed:
    """Marker emitted by the stream reader between batches of parsed input."""
    bytes_read: int


@dataclass(slots=True, frozen=True)
class InsertableProgram:
    """Program row ready for persistence. Times are epoch milliseconds."""
    playlist_id: str
    channel_id: str
    title: str
    start: int
    end: int
    source_channel_ref: str
    description: str | None = None


class RejectionReason(str, Enum):
    """Why a programme event was not converted into an InsertableProgram."""
    NO_CHANNEL = "no-channel"
    INVALID_DATES = "invalid-dates"
    OUTSIDE_WINDOW = "outside-window"
    OTHER = "other"


@dataclass(slots=True)
class IngestionStats:
    """Per-run counters returned by the ingestion pipeline."""
    playlist_id: str
    started_at: datetime
    completed_at: datetime | None = None
    bytes_read: int = 0
    channels_seen: int = 0
    programs_seen: int = 0
    accepted: int = 0
    inserted: int = 0
    flushes: int = 0
    forced_flushes: int = 0
    failed_batches: int = 0
    dropped_records: int = 0
    cancelled: bool = False
    rejected: dict[RejectionReason, int] = field(
        default_factory=lambda: {reason: 0 for reason in RejectionReason}
    )

    @property
    def rejected_total(self) -> int:
        return sum(self.rejected.values())

    @property
    def duration_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return max(0.0, (self.completed_at - self.started_at).total_seconds())

    def to_dict(self) -> dict:
        return {
            "playlist_id": self.playlist_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "bytes_read": self.bytes_read,
            "channels_seen": self.channels_seen,
            "programs_seen": self.programs_seen,
            "programs_accepted": self.accepted,
            "programs_inserted": self.inserted,
            "programs_rejected": {reason.value: count for reason, count in self.rejected.items()},
            "flushes": self.flushes,
            "forced_flushes": self.forced_flushes,
            "failed_batches": self.failed_batches,
            "dropped_records": self.dropped_records,
            "cancelled": self.cancelled,
        }


__all__ = [
    "Channel",
    "ChannelIndexEntry",
    "ChunkProcessed",
    "IngestionStats",
    "InsertableProgram",
    "RejectionReason",
    "XmltvChannelEvent",
    "XmltvProgramEvent",
]
