"""Shared fixtures for the EPG ingestion tests."""

from collections.abc import Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest

from epg_ingest.database import close_db, init_db
from epg_ingest.services.db_service import SQLProgramStore
from epg_ingest.services.ingest_types import Channel, InsertableProgram


NOW = datetime(2025, 10, 9, 12, 0, 0, tzinfo=timezone.utc)


def chunked(data: bytes, size: int) -> list[bytes]:
    """Split a document into fixed-size byte chunks."""
    return [data[i:i + size] for i in range(0, len(data), size)]


def xmltv_document(body: str) -> bytes:
    return ('<?xml version="1.0" encoding="UTF-8"?>\n<tv>' + body + "</tv>").encode("utf-8")


def programme(channel: str, start: str, stop: str | None = None, title: str = "Show", desc: str | None = None) -> str:
    stop_attr = f' stop="{stop}"' if stop else ""
    desc_el = f"<desc>{desc}</desc>" if desc is not None else ""
    return f'<programme start="{start}"{stop_attr} channel="{channel}"><title>{title}</title>{desc_el}</programme>'


def xmltv_time(dt: datetime) -> str:
    return dt.strftime("%Y%m%d%H%M%S +0000")


def current_document(channel: str = "news.one", count: int = 3) -> bytes:
    """Programmes around the real current time so they fall inside the window."""
    base = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
    return xmltv_document(
        "".join(
            programme(channel, xmltv_time(base + timedelta(hours=i)), xmltv_time(base + timedelta(hours=i + 1)), f"Show {i}")
            for i in range(count)
        )
    )


class FakeSources:
    """Stream opener serving in-memory documents by URL."""

    def __init__(self, documents: dict[str, bytes]):
        self.documents = documents
        self.opened: list[str] = []

    @asynccontextmanager
    async def __call__(self, url: str):
        self.opened.append(url)
        if url not in self.documents:
            raise ConnectionError(f"cannot reach {url}")
        yield chunked(self.documents[url], 128)


class CountingSink:
    """Records every batch; treats every record as new."""

    def __init__(self):
        self.batches: list[list[InsertableProgram]] = []

    async def insert_batch(self, playlist_id: str, records: Sequence[InsertableProgram]) -> int:
        self.batches.append(list(records))
        return len(records)

    async def query_by_playlist(self, playlist_id: str) -> list[InsertableProgram]:
        return [r for batch in self.batches for r in batch if r.playlist_id == playlist_id]

    @property
    def records(self) -> list[InsertableProgram]:
        return [r for batch in self.batches for r in batch]


class DedupSink(CountingSink):
    """Ignores records whose (playlist, channel, start, end, title) key was already stored."""

    def __init__(self):
        super().__init__()
        self.keys: set[tuple] = set()

    async def insert_batch(self, playlist_id: str, records: Sequence[InsertableProgram]) -> int:
        self.batches.append(list(records))
        inserted = 0
        for r in records:
            key = (playlist_id, r.channel_id, r.start, r.end, r.title)
            if key not in self.keys:
                self.keys.add(key)
                inserted += 1
        return inserted


class FailingSink(CountingSink):
    """Raises on the batch numbers listed in fail_on (1-based)."""

    def __init__(self, fail_on: set[int]):
        super().__init__()
        self.fail_on = fail_on
        self.calls = 0

    async def insert_batch(self, playlist_id: str, records: Sequence[InsertableProgram]) -> int:
        self.calls += 1
        if self.calls in self.fail_on:
            raise RuntimeError("database unavailable")
        return await super().insert_batch(playlist_id, records)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def channels() -> list[Channel]:
    return [
        Channel(id="c1", name="News One", tvg_id="news.one"),
        Channel(id="c2", name="Sports Two", tvg_id="sports.two"),
        Channel(id="c3", name="Movie Three"),
    ]


@pytest.fixture
def counting_sink() -> CountingSink:
    return CountingSink()


@pytest.fixture
def dedup_sink() -> DedupSink:
    return DedupSink()


@pytest.fixture
async def store(tmp_path):
    """Program store backed by a fresh SQLite file."""
    await init_db(str(tmp_path / "epg.db"))
    yield SQLProgramStore(lock_retries=2, lock_backoff_ms=1)
    await close_db()
