"""
Streaming XMLTV parser

Feeds byte chunks into lxml's incremental parser and emits channel and
programme events in document order, keeping memory bounded regardless of
document size.
"""
from __future__ import annotations

import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Union

from lxml import etree # type: ignore

from epg_ingest.services.ingest_types import (
    ChunkProcessed,
    XmltvChannelEvent,
    XmltvProgramEvent,
)
from epg_ingest.utils.streams import DEFAULT_CHUNK_SIZE, iter_byte_chunks

logger = logging.getLogger(__name__)

DEFAULT_PROGRESS_INTERVAL_BYTES = 100_000

XmltvEvent = Union[XmltvChannelEvent, XmltvProgramEvent]


class XmltvParseError(ValueError):
    """Raised when the XMLTV byte stream is not well-formed XML"""
    pass


@dataclass(slots=True)
class XmltvParseSummary:
    bytes_read: int = 0
    channels: int = 0
    programs: int = 0


def _local_name(tag: Any) -> str | None:
    if not isinstance(tag, str):
        return None
    if tag.startswith("{"):
        tag = tag.rsplit("}", 1)[1]
    return tag.lower()


def _element_text(elem: etree._Element) -> str:
    return "".join(elem.itertext()).strip()


def _attributes(elem: etree._Element) -> dict[str, str]:
    return {str(key).lower(): value for key, value in elem.attrib.items()}


class XmltvStreamParser:
    """
    Incremental XMLTV tokenizer.

    Push bytes with feed(); each call returns the channel/programme events
    completed by that chunk. close() flushes the decoder and reports any
    structural error left at end of input.
    """

    def __init__(self) -> None:
        self._parser = etree.XMLPullParser(
            events=("start", "end"),
            resolve_entities=False,
            no_network=True,
            huge_tree=True,
        )
        self._depth = 0
        self._channel: XmltvChannelEvent | None = None
        self._program: XmltvProgramEvent | None = None

    def feed(self, data: bytes) -> list[XmltvEvent]:
        try:
            self._parser.feed(data)
        except etree.XMLSyntaxError as exc:
            logger.error("XML parsing error: %s", exc)
            raise XmltvParseError(f"Malformed XMLTV document: {exc}") from exc
        return self._drain()

    def close(self) -> list[XmltvEvent]:
        try:
            self._parser.close()
        except etree.XMLSyntaxError as exc:
            logger.error("XML parsing error at end of document: %s", exc)
            raise XmltvParseError(f"Malformed XMLTV document: {exc}") from exc
        return self._drain()

    def _drain(self) -> list[XmltvEvent]:
        events: list[XmltvEvent] = []
        for action, elem in self._parser.read_events():
            tag = _local_name(elem.tag)
            if action == "start":
                self._depth += 1
                self._on_start(tag, elem)
            else:
                completed = self._on_end(tag, elem)
                if completed is not None:
                    events.append(completed)
                if self._depth == 2:
                    # Completed child of <tv>: release it and its earlier siblings
                    elem.clear(keep_tail=False)
                    while elem.getprevious() is not None:
                        del elem.getparent()[0]
                self._depth -= 1
        return events

    def _on_start(self, tag: str | None, elem: etree._Element) -> None:
        if tag == "channel" and self._program is None:
            self._channel = XmltvChannelEvent(id=_attributes(elem).get("id"))
        elif tag == "programme":
            attrs = _attributes(elem)
            self._program = XmltvProgramEvent(
                channel_ref=attrs.get("channel", ""),
                start=attrs.get("start", ""),
                stop=attrs.get("stop"),
            )

    def _on_end(self, tag: str | None, elem: etree._Element) -> XmltvEvent | None:
        if self._program is not None:
            if tag == "title":
                self._program.title = _element_text(elem)
            elif tag == "desc":
                self._program.description = _element_text(elem)
            elif tag == "programme":
                program, self._program = self._program, None
                return program
            return None

        if self._channel is not None:
            if tag == "display-name":
                self._channel.display_name = _element_text(elem)
            elif tag == "channel":
                channel, self._channel = self._channel, None
                return channel
        return None


async def iter_xmltv_events(
    stream: Any,
    *,
    progress_interval_bytes: int = DEFAULT_PROGRESS_INTERVAL_BYTES,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> AsyncIterator[XmltvChannelEvent | XmltvProgramEvent | ChunkProcessed]:
    """
    Pull events out of an XMLTV byte stream.

    Yields channel and programme events in document order, plus a
    ChunkProcessed marker each time at least progress_interval_bytes have
    been consumed since the previous marker, and a final marker at end of stream.

    Raises:
        XmltvParseError: If the document is malformed
    """
    parser = XmltvStreamParser()
    bytes_read = 0
    last_marker = 0

    async for chunk in iter_byte_chunks(stream, chunk_size):
        bytes_read += len(chunk)
        for event in parser.feed(chunk):
            yield event
        if bytes_read - last_marker >= progress_interval_bytes:
            last_marker = bytes_read
            logger.debug("Processed %s bytes of XMLTV input", bytes_read)
            yield ChunkProcessed(bytes_read=bytes_read)

    for event in parser.close():
        yield event
    yield ChunkProcessed(bytes_read=bytes_read)


async def _call(handler: Callable[[Any], Any] | None, *args: Any) -> None:
    if handler is None:
        return
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


async def parse_xmltv_stream(
    stream: Any,
    *,
    on_channel: Callable[[XmltvChannelEvent], Awaitable[None] | None] | None = None,
    on_program: Callable[[XmltvProgramEvent], Awaitable[None] | None] | None = None,
    on_chunk_processed: Callable[[ChunkProcessed], Awaitable[None] | None] | None = None,
    progress_interval_bytes: int = DEFAULT_PROGRESS_INTERVAL_BYTES,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> XmltvParseSummary:
    """
    Parse an XMLTV byte stream, dispatching each event to its handler.

    Handlers may be plain callables or coroutine functions; each one is
    awaited before the next event is produced.

    Args:
        stream: Byte source accepted by iter_byte_chunks

    Keyword Args:
        on_channel: Called once per complete <channel>
        on_program: Called once per complete <programme>
        on_chunk_processed: Called periodically between chunks and at end of stream
        progress_interval_bytes: Minimum bytes between on_chunk_processed calls

    Returns:
        Summary with byte, channel and programme counts

    Raises:
        XmltvParseError: If XML is malformed
    """
    summary = XmltvParseSummary()
    events = iter_xmltv_events(
        stream,
        progress_interval_bytes=progress_interval_bytes,
        chunk_size=chunk_size,
    )
    async with aclosing(events):
        async for event in events:
            if isinstance(event, XmltvProgramEvent):
                summary.programs += 1
                await _call(on_program, event)
            elif isinstance(event, XmltvChannelEvent):
                summary.channels += 1
                await _call(on_channel, event)
            else:
                summary.bytes_read = event.bytes_read
                await _call(on_chunk_processed, event)

    logger.info(
        "XMLTV parsing complete: %s channels, %s programs, %s bytes",
        summary.channels,
        summary.programs,
        summary.bytes_read,
    )
    return summary
