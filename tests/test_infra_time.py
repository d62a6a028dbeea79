"""Tests for timestamp parsing and usage buckets."""

from datetime import datetime, timedelta, timezone

import pytest

from unibox.infra.time import (
    day_bucket,
    day_bucket_end,
    ensure_utc,
    hour_bucket,
    hour_bucket_end,
    isoformat,
    parse_timestamp,
)

T0 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


class TestParseTimestamp:
    def test_unix_seconds(self):
        assert parse_timestamp(int(T0.timestamp())) == T0

    def test_epoch_millis_string(self):
        assert parse_timestamp(str(int(T0.timestamp() * 1000)), numeric_unit="millis") == T0

    def test_iso_with_z(self):
        assert parse_timestamp("2026-03-02T10:00:00Z") == T0

    def test_iso_with_offset_converted_to_utc(self):
        assert parse_timestamp("2026-03-02T07:00:00-03:00") == T0

    def test_naive_datetime_assumed_utc(self):
        assert parse_timestamp(datetime(2026, 3, 2, 10, 0)) == T0

    @pytest.mark.parametrize("value", [None, "", "   ", 0, -5, "0", True, "yesterday", [1]])
    def test_missing_or_garbage(self, value):
        assert parse_timestamp(value) is None


class TestBuckets:
    def test_keys(self):
        moment = T0 + timedelta(minutes=59, seconds=59)
        assert hour_bucket(moment) == "2026-03-02T10"
        assert day_bucket(moment) == "2026-03-02"

    def test_bucket_ends(self):
        moment = T0 + timedelta(minutes=15)
        assert hour_bucket_end(moment) == datetime(2026, 3, 2, 11, 0, tzinfo=timezone.utc)
        assert day_bucket_end(moment) == datetime(2026, 3, 3, 0, 0, tzinfo=timezone.utc)

    def test_buckets_use_utc(self):
        local = datetime(2026, 3, 2, 23, 30, tzinfo=timezone(timedelta(hours=-3)))
        assert day_bucket(local) == "2026-03-03"
        assert hour_bucket(local) == "2026-03-03T02"


class TestFormatting:
    def test_isoformat(self):
        assert isoformat(T0) == "2026-03-02T10:00:00+00:00"
        assert isoformat(None) is None

    def test_ensure_utc(self):
        assert ensure_utc(datetime(2026, 3, 2, 10, 0)).tzinfo == timezone.utc
