"""Tests for the usage blob codec."""

import datetime
import json
import logging

import pytest

from keyrotation.services.errors import MalformedUsageRecord
from keyrotation.services.model_defaults import default_snapshot, get_model_limits
from keyrotation.services.usage_codec import (
    decode_usage,
    encode_usage,
    format_timestamp,
    load_usage,
    parse_timestamp,
)
from keyrotation.services.usage_windows import UsageSnapshot, Window

NOW = datetime.datetime(2026, 10, 19, 12, 0, 0, 123456, tzinfo=datetime.timezone.utc)
MODEL = "gemini-2.5-flash"


def test_round_trip_preserves_snapshot() -> None:
    snapshot = UsageSnapshot(
        rpm=Window(used=3, limit=10, window_start=NOW),
        rph=Window(used=40, limit=600, window_start=NOW - datetime.timedelta(minutes=12)),
        rpd=Window(used=0, limit=250),
        tpm=Window(used=8123, limit=250_000, window_start=NOW),
    )

    assert decode_usage(encode_usage(snapshot), MODEL) == snapshot


def test_encoded_shape_uses_camel_case_window_start() -> None:
    blob = json.loads(encode_usage(default_snapshot(MODEL)))

    assert set(blob) == {"rpm", "rph", "rpd", "tpm"}
    assert blob["rpm"] == {"used": 0, "limit": 10, "windowStart": None}


def test_timestamps_are_utc_with_z_suffix() -> None:
    assert format_timestamp(NOW) == "2026-10-19T12:00:00.123456Z"

    naive = datetime.datetime(2026, 10, 19, 12, 0, 0)
    assert format_timestamp(naive) == "2026-10-19T12:00:00Z"

    plus_two = datetime.timezone(datetime.timedelta(hours=2))
    assert format_timestamp(datetime.datetime(2026, 10, 19, 14, 0, tzinfo=plus_two)) == "2026-10-19T12:00:00Z"


def test_parses_millisecond_timestamps() -> None:
    parsed = parse_timestamp("2026-10-19T08:00:00.000Z")

    assert parsed == datetime.datetime(2026, 10, 19, 8, 0, tzinfo=datetime.timezone.utc)


@pytest.mark.parametrize("raw", [None, "", "   "])
def test_empty_blob_decodes_to_defaults(raw) -> None:
    assert decode_usage(raw, MODEL) == default_snapshot(MODEL)


def test_missing_window_gets_model_default() -> None:
    raw = json.dumps({"rpm": {"used": 2, "limit": 10, "windowStart": "2026-10-19T11:59:30.000Z"}})

    snapshot = decode_usage(raw, MODEL)

    assert snapshot.rpm.used == 2
    assert snapshot.rph == Window(used=0, limit=get_model_limits(MODEL).rph)
    assert snapshot.tpm == Window(used=0, limit=get_model_limits(MODEL).tpm)


@pytest.mark.parametrize("limit", [None, 0, -5])
def test_unusable_limit_falls_back_to_default(limit) -> None:
    raw = json.dumps({"tpm": {"used": 10, "limit": limit, "windowStart": None}})

    snapshot = decode_usage(raw, MODEL)

    assert snapshot.tpm.limit == get_model_limits(MODEL).tpm
    assert snapshot.tpm.used == 10


def test_unknown_fields_are_ignored() -> None:
    raw = json.dumps(
        {
            "rpm": {"used": 1, "limit": 10, "windowStart": None, "lastUpdated": "whenever"},
            "exhaustedAt": "2026-10-19T00:00:00.000Z",
        }
    )

    assert decode_usage(raw, MODEL).rpm == Window(used=1, limit=10)


@pytest.mark.parametrize(
    "raw",
    [
        "{not json",
        "[1, 2, 3]",
        json.dumps({"rpm": "full"}),
        json.dumps({"rpm": {"used": -1, "limit": 10}}),
        json.dumps({"rpm": {"used": True, "limit": 10}}),
        json.dumps({"rpm": {"used": 1, "limit": "ten"}}),
        json.dumps({"rpm": {"used": 1, "limit": 10, "windowStart": "yesterday"}}),
        json.dumps({"rpm": {"used": 1, "limit": 10, "windowStart": 1700000000}}),
    ],
)
def test_malformed_blob_raises(raw: str) -> None:
    with pytest.raises(MalformedUsageRecord):
        decode_usage(raw, MODEL)


def test_load_usage_resets_malformed_blob_and_logs(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="keyrotation.services.usage_codec"):
        snapshot = load_usage("{broken", MODEL)

    assert snapshot == default_snapshot(MODEL)
    assert "Malformed usage" in caplog.text
    assert MODEL in caplog.text


def test_unknown_model_uses_fallback_limits() -> None:
    snapshot = decode_usage(None, "gemini-9-ultra")

    assert snapshot.rpm.limit == 10
    assert snapshot.rpd.limit == 250
