"""Tests for XMLTV timestamp parsing and epoch conversions."""

from datetime import datetime, timezone

import pytest

from epg_ingest.utils.timezone import (
    DateFormatError,
    convert_to_timezone,
    from_epoch_millis,
    parse_iso8601_to_utc,
    parse_xmltv_timestamp,
    to_epoch_millis,
)


class TestParseXmltvTimestamp:
    """Test parse_xmltv_timestamp."""

    @pytest.mark.parametrize(
        "raw",
        [
            "20251009120000 +0000",
            "20251009120000+0000",
            "20251009120000 Z",
            "20251009140000 +0200",
            "20251009140000 +02:00",
            "20251009070000 -0500",
            "20251009120000",
        ],
    )
    def test_offsets_normalized_to_utc(self, raw):
        """All supported offset spellings land on the same UTC instant."""
        assert parse_xmltv_timestamp(raw) == datetime(2025, 10, 9, 12, 0, tzinfo=timezone.utc)

    def test_offset_crossing_midnight(self):
        """Offsets shift the calendar date when needed."""
        result = parse_xmltv_timestamp("20251009003000 +0100")
        assert result == datetime(2025, 10, 8, 23, 30, tzinfo=timezone.utc)

    def test_iso8601_fallback(self):
        """Non-XMLTV strings are retried as ISO8601."""
        result = parse_xmltv_timestamp("2025-10-09T12:00:00Z")
        assert result == datetime(2025, 10, 9, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "raw", [None, "", "   ", "not a date", "20251339120000 +0000", "0001-01-01T00:00:00+01:00"],
    )
    def test_invalid_returns_none(self, raw):
        """Absent or unparseable values never raise."""
        assert parse_xmltv_timestamp(raw) is None


class TestEpochMillis:
    """Test epoch millisecond conversions."""

    def test_round_trip(self):
        """Converting back and forth keeps the instant."""
        dt = datetime(2025, 10, 9, 12, 0, 0, 123000, tzinfo=timezone.utc)
        assert from_epoch_millis(to_epoch_millis(dt)) == dt

    def test_one_hour_is_3600000_ms(self):
        """A one-hour programme spans exactly 3,600,000 ms."""
        start = parse_xmltv_timestamp("20251009120000 +0000")
        stop = parse_xmltv_timestamp("20251009130000 +0000")
        assert to_epoch_millis(stop) - to_epoch_millis(start) == 3_600_000

    def test_epoch_zero(self):
        assert to_epoch_millis(datetime(1970, 1, 1, tzinfo=timezone.utc)) == 0


class TestTimezoneRendering:
    """Test convert_to_timezone and parse_iso8601_to_utc."""

    def test_convert_to_utc(self):
        dt = datetime(2025, 10, 9, 12, 0, tzinfo=timezone.utc)
        assert convert_to_timezone(dt, "UTC") == "2025-10-09T12:00:00+00:00"

    def test_convert_to_named_zone(self):
        dt = datetime(2025, 1, 9, 12, 0, tzinfo=timezone.utc)
        assert convert_to_timezone(dt, "Europe/Berlin") == "2025-01-09T13:00:00+01:00"

    def test_parse_iso8601_invalid(self):
        with pytest.raises(DateFormatError):
            parse_iso8601_to_utc("yesterday")

    def test_parse_iso8601_out_of_range(self):
        """Offsets that push the value before year 1 are reported as format errors."""
        with pytest.raises(DateFormatError):
            parse_iso8601_to_utc("0001-01-01T00:00:00+01:00")
