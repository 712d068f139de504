"""
Channel Index

Maps normalized identifiers from XMLTV documents onto playlist channels.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from epg_ingest.services.ingest_types import Channel, ChannelIndexEntry


logger = logging.getLogger(__name__)

TVG_ID_PRIORITY = 1
CHANNEL_ID_PRIORITY = 2
NAME_PRIORITY = 3

_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9]")


def normalize_key_variants(value: str | None) -> list[str]:
    """
    Produce the lookup keys for a raw identifier.

    The lowercase form always comes first. The alphanumeric-only form is
    appended when it is non-empty and differs from the lowercase form.

    Args:
        value: Raw identifier (tvg-id, channel id, display name...)

    Returns:
        Zero, one or two keys
    """
    if value is None:
        return []
    trimmed = value.strip()
    if not trimmed:
        return []

    lower = trimmed.lower()
    sanitized = _NON_ALPHANUMERIC.sub("", lower)
    if sanitized and sanitized != lower:
        return [lower, sanitized]
    return [lower]


class ChannelIndex:
    """Lookup table of normalized keys to the highest-priority channel."""

    def __init__(self) -> None:
        self._entries: dict[str, ChannelIndexEntry] = {}

    def register(self, key: str | None, priority: int, channel: Channel) -> None:
        for variant in normalize_key_variants(key):
            existing = self._entries.get(variant)
            if existing is None or priority < existing.priority:
                self._entries[variant] = ChannelIndexEntry(channel=channel, priority=priority)

    def resolve(self, raw_id: str | None) -> Channel | None:
        for variant in normalize_key_variants(raw_id):
            entry = self._entries.get(variant)
            if entry is not None:
                return entry.channel
        return None

    def entry(self, key: str) -> ChannelIndexEntry | None:
        return self._entries.get(key)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries


def build_channel_index(channels: Iterable[Channel]) -> ChannelIndex:
    """
    Build the channel index for one ingestion run.

    Each channel registers its tvg-id (priority 1) and id (priority 2); the
    display name (priority 3) is registered only for channels without a
    tvg-id. A key is only replaced by a strictly higher-priority registration,
    so the outcome does not depend on channel order.

    Args:
        channels: Channels resolved from the playlist source

    Returns:
        Populated ChannelIndex
    """
    index = ChannelIndex()
    count = 0
    for channel in channels:
        count += 1
        index.register(channel.tvg_id, TVG_ID_PRIORITY, channel)
        index.register(channel.id, CHANNEL_ID_PRIORITY, channel)
        if not channel.tvg_id:
            index.register(channel.name, NAME_PRIORITY, channel)

    logger.debug("Built channel index: %s channels, %s keys", count, len(index))
    return index


def resolve_channel(raw_id: str | None, index: ChannelIndex) -> Channel | None:
    """Return the channel matching any key variant of raw_id, or None."""
    return index.resolve(raw_id)
