"""
Program Window Filter & Converter

Turns raw <programme> events into InsertableProgram rows for one playlist.
Pure functions: the caller supplies "now" so results are reproducible.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from epg_ingest.services.channel_index import ChannelIndex
from epg_ingest.services.ingest_types import (
    InsertableProgram,
    RejectionReason,
    XmltvProgramEvent,
)
from epg_ingest.utils.timezone import parse_xmltv_timestamp, to_epoch_millis


DEFAULT_TITLE = "Untitled"
DEFAULT_MISSING_STOP = timedelta(hours=1)

_CDATA = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.DOTALL)
_XML_ENTITY = re.compile(r"&(amp|lt|gt|quot|apos|#[0-9]+|#[xX][0-9a-fA-F]+);")
_XML_ENTITIES = {"amp": "&", "lt": "<", "gt": ">", "quot": "\"", "apos": "'"}
_HOUR_MS = 60 * 60 * 1000


@dataclass(slots=True, frozen=True)
class ProgramWindow:
    """Admission window around "now": [now - hours_before, now + hours_after]."""
    hours_before: int = 12
    hours_after: int = 36

    def bounds(self, now: datetime) -> tuple[int, int]:
        now_ms = to_epoch_millis(now)
        return now_ms - self.hours_before * _HOUR_MS, now_ms + self.hours_after * _HOUR_MS

    def contains(self, start: int, end: int, now: datetime) -> bool:
        """Interval overlap test; touching the bounds counts as inside."""
        lower, upper = self.bounds(now)
        return not (end < lower or start > upper)


def _decode_xml_entity(match: re.Match) -> str:
    name = match.group(1)
    if not name.startswith("#"):
        return _XML_ENTITIES[name]
    try:
        code = int(name[2:], 16) if name[1] in "xX" else int(name[1:])
        return chr(code)
    except (ValueError, OverflowError):
        return match.group(0)


def clean_xml_text(value: str | None) -> str | None:
    """
    Strip CDATA wrappers, decode XML character entities and trim. Empty -> None.

    Only the five predefined XML entities and numeric references are decoded;
    anything else (e.g. '&copy') is kept as written.
    """
    if not value:
        return None
    cleaned = _XML_ENTITY.sub(_decode_xml_entity, _CDATA.sub(r"\1", value)).strip()
    return cleaned or None


def convert_program(
    event: XmltvProgramEvent,
    index: ChannelIndex,
    playlist_id: str,
    now: datetime,
    *,
    window: ProgramWindow | None = None,
    missing_stop: timedelta = DEFAULT_MISSING_STOP,
) -> InsertableProgram | RejectionReason:
    """
    Resolve, time-parse and window-filter a single programme event.

    Checks run in a fixed order: channel resolution, start timestamp,
    window overlap. A missing or unparseable stop falls back to
    start + missing_stop instead of rejecting the programme.

    Args:
        event: Raw programme event from the stream parser
        index: Channel index built for this run
        playlist_id: Playlist the rows belong to
        now: Reference instant for the window filter

    Keyword Args:
        window: Admission window (defaults to 12h before / 36h after)
        missing_stop: Duration used when stop is absent or invalid

    Returns:
        InsertableProgram on success, otherwise the RejectionReason
    """
    channel = index.resolve(event.channel_ref)
    if channel is None:
        return RejectionReason.NO_CHANNEL

    start_dt = parse_xmltv_timestamp(event.start)
    if start_dt is None:
        return RejectionReason.INVALID_DATES

    stop_dt = parse_xmltv_timestamp(event.stop)
    if stop_dt is None:
        stop_dt = start_dt + missing_stop

    start = to_epoch_millis(start_dt)
    end = to_epoch_millis(stop_dt)

    if not (window or ProgramWindow()).contains(start, end, now):
        return RejectionReason.OUTSIDE_WINDOW

    return InsertableProgram(
        playlist_id=playlist_id,
        channel_id=channel.id,
        title=clean_xml_text(event.title) or DEFAULT_TITLE,
        description=clean_xml_text(event.description),
        start=start,
        end=end,
        source_channel_ref=event.channel_ref,
    )
