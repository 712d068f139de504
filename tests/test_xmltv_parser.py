"""Tests for the streaming XMLTV parser."""

import pytest

from epg_ingest.services.ingest_types import ChunkProcessed, XmltvChannelEvent, XmltvProgramEvent
from epg_ingest.services.xmltv_parser_service import (
    XmltvParseError,
    XmltvStreamParser,
    iter_xmltv_events,
    parse_xmltv_stream,
)

from conftest import chunked, programme, xmltv_document


SAMPLE = xmltv_document(
    '<channel id="news.one"><display-name>News One</display-name></channel>'
    '<channel id="sports.two"><display-name lang="en">Sports Two</display-name></channel>'
    + programme("news.one", "20251009120000 +0000", "20251009130000 +0000", "Morning News", "Headlines")
    + programme("sports.two", "20251009130000 +0000", "20251009150000 +0000", "Match Day")
)


async def collect(stream, **kwargs) -> list:
    return [event async for event in iter_xmltv_events(stream, **kwargs)]


class TestStreamParser:
    """Test XmltvStreamParser fed directly."""

    def test_events_in_document_order(self):
        """Channels and programmes come out in the order they appear."""
        parser = XmltvStreamParser()
        events = parser.feed(SAMPLE) + parser.close()

        assert [type(e) for e in events] == [
            XmltvChannelEvent,
            XmltvChannelEvent,
            XmltvProgramEvent,
            XmltvProgramEvent,
        ]
        assert events[0] == XmltvChannelEvent(id="news.one", display_name="News One")
        first = events[2]
        assert first.channel_ref == "news.one"
        assert first.start == "20251009120000 +0000"
        assert first.stop == "20251009130000 +0000"
        assert first.title == "Morning News"
        assert first.description == "Headlines"
        assert events[3].description is None

    def test_case_insensitive_tags_and_attributes(self):
        """Upper-case element and attribute names are accepted."""
        doc = b'<TV><PROGRAMME START="20251009120000" CHANNEL="x"><TITLE>Loud</TITLE></PROGRAMME></TV>'
        parser = XmltvStreamParser()
        events = parser.feed(doc) + parser.close()
        assert len(events) == 1
        assert events[0].channel_ref == "x"
        assert events[0].start == "20251009120000"
        assert events[0].stop is None
        assert events[0].title == "Loud"

    def test_last_title_wins(self):
        """Repeated title elements keep the last value."""
        doc = xmltv_document(
            '<programme start="20251009120000" channel="x">'
            '<title lang="de">Erste</title><title lang="en">Second</title></programme>'
        )
        parser = XmltvStreamParser()
        events = parser.feed(doc) + parser.close()
        assert events[0].title == "Second"

    def test_entities_and_cdata_decoded(self):
        """Entity references and CDATA sections become plain text."""
        doc = xmltv_document(
            programme("x", "20251009120000", title="Tom &amp; Jerry", desc="<![CDATA[<b>bold</b>]]>")
        )
        parser = XmltvStreamParser()
        events = parser.feed(doc) + parser.close()
        assert events[0].title == "Tom & Jerry"
        assert events[0].description == "<b>bold</b>"

    def test_programme_without_channel_attribute(self):
        """A missing channel attribute yields an empty reference."""
        doc = xmltv_document('<programme start="20251009120000"><title>Orphan</title></programme>')
        parser = XmltvStreamParser()
        events = parser.feed(doc) + parser.close()
        assert events[0].channel_ref == ""

    def test_malformed_document_raises(self):
        """Mismatched tags raise XmltvParseError."""
        parser = XmltvStreamParser()
        with pytest.raises(XmltvParseError):
            parser.feed(b"<tv><programme></channel></tv>")
            parser.close()

    def test_truncated_document_raises_on_close(self):
        """An unterminated document is reported at end of input."""
        parser = XmltvStreamParser()
        parser.feed(b'<tv><programme start="20251009120000" channel="x">')
        with pytest.raises(XmltvParseError):
            parser.close()


class TestIterXmltvEvents:
    """Test chunked iteration and progress markers."""

    @pytest.mark.parametrize("size", [5, 17, 64, 100_000])
    async def test_chunking_does_not_change_events(self, size):
        """Chunk boundaries anywhere produce the same events."""
        events = await collect(chunked(SAMPLE, size))
        parsed = [e for e in events if not isinstance(e, ChunkProcessed)]
        assert len(parsed) == 4
        assert parsed[2].title == "Morning News"

    async def test_multibyte_character_split_across_chunks(self):
        """A UTF-8 sequence split between two chunks is decoded intact."""
        doc = xmltv_document(programme("x", "20251009120000", title="Café Ünïcødé ✓"))
        split_at = doc.index("é".encode("utf-8")) + 1
        events = await collect([doc[:split_at], doc[split_at:]])
        programs = [e for e in events if isinstance(e, XmltvProgramEvent)]
        assert programs[0].title == "Café Ünïcødé ✓"

    async def test_progress_markers(self):
        """Markers follow the byte interval and always close the stream."""
        events = await collect(chunked(SAMPLE, 50), progress_interval_bytes=100)
        markers = [e for e in events if isinstance(e, ChunkProcessed)]
        assert len(markers) >= 2
        assert markers[-1] == ChunkProcessed(bytes_read=len(SAMPLE))
        assert isinstance(events[-1], ChunkProcessed)
        byte_counts = [m.bytes_read for m in markers]
        assert byte_counts == sorted(byte_counts)

    async def test_empty_stream_raises(self):
        """No input at all is not a valid document."""
        with pytest.raises(XmltvParseError):
            await collect([])

    async def test_rejects_in_memory_document(self):
        """A bare bytes value is not treated as a stream."""
        with pytest.raises(TypeError):
            await collect(SAMPLE)


class TestParseXmltvStream:
    """Test handler dispatch."""

    async def test_sync_and_async_handlers(self):
        """Handlers may be plain functions or coroutines."""
        channels: list = []
        programs: list = []
        markers: list = []

        async def on_program(event):
            programs.append(event)

        summary = await parse_xmltv_stream(
            chunked(SAMPLE, 32),
            on_channel=channels.append,
            on_program=on_program,
            on_chunk_processed=markers.append,
        )

        assert summary.channels == 2
        assert summary.programs == 2
        assert summary.bytes_read == len(SAMPLE)
        assert [c.id for c in channels] == ["news.one", "sports.two"]
        assert [p.title for p in programs] == ["Morning News", "Match Day"]
        assert markers

    async def test_malformed_after_valid_events(self):
        """Events before the error are delivered, then the error propagates."""
        broken = SAMPLE.replace(b"</tv>", b"<!-- " + b"x" * 200 + b" --><programme></tv>")
        programs: list = []
        with pytest.raises(XmltvParseError):
            await parse_xmltv_stream(chunked(broken, 16), on_program=programs.append)
        assert len(programs) == 2
