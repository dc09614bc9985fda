"""Tests for UTC time helpers."""

from datetime import datetime, timedelta, timezone

from veilguard.common.time_utils import ensure_utc, parse_timestamp, utc_now


class TestTimeUtils:
    
    def test_utc_now_is_aware(self):
        assert utc_now().tzinfo is not None
    
    def test_ensure_utc_assumes_naive_is_utc(self):
        naive = datetime(2026, 1, 28, 12, 0, 0)
        assert ensure_utc(naive) == datetime(2026, 1, 28, 12, 0, 0, tzinfo=timezone.utc)
    
    def test_ensure_utc_converts_offsets(self):
        plus_two = datetime(2026, 1, 28, 14, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        assert ensure_utc(plus_two) == datetime(2026, 1, 28, 12, 0, 0, tzinfo=timezone.utc)
    
    def test_parse_timestamp_with_z_suffix(self):
        parsed = parse_timestamp("2026-01-28T12:00:00.000000Z")
        assert parsed == datetime(2026, 1, 28, 12, 0, 0, tzinfo=timezone.utc)
