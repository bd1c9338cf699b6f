"""Tests for job records and wire shapes."""

import json
from datetime import datetime, timezone

import pytest

from scrape_engine.errors import ErrorKind, InvalidJobSpec
from scrape_engine.queue.models import (
    Job,
    JobOptions,
    JobSpec,
    JobState,
    LastError,
    build_search_url,
    isoformat,
)


def test_keyword_job_wire_shape():
    job = Job.create(JobSpec(keyword="iphone 15", max_pages=2))
    wire = job.to_wire()

    assert wire["keyword"] == "iphone 15"
    assert wire["maxPages"] == 2
    assert wire["createdAt"].endswith("Z")
    # absent optionals are omitted, not null
    for key in ("url", "priority", "delay_ms", "lastError"):
        assert key not in wire


def test_url_only_job_round_trip():
    job = Job.create(JobSpec(url="https://shop.test/p/1"), default_max_pages=3)
    restored = Job.from_wire(json.loads(json.dumps(job.to_wire())), job_id="42")

    assert restored.id == "42"
    assert restored.keyword is None
    assert restored.url == "https://shop.test/p/1"
    assert restored.max_pages == 3
    assert restored.created_at == job.created_at


def test_round_trip_with_last_error():
    job = Job.create(JobSpec(keyword="laptop"), JobOptions(priority=3, delay_ms=500))
    job.last_error = LastError(
        kind=ErrorKind.RATE_LIMITED,
        message="429",
        attempt=1,
        timestamp=datetime(2024, 5, 1, 12, 30, 0, 123000, tzinfo=timezone.utc),
    )

    wire = job.to_wire()
    assert wire["lastError"] == {
        "kind": "rate_limited",
        "message": "429",
        "attempt": 1,
        "timestamp": "2024-05-01T12:30:00.123Z",
    }
    assert wire["priority"] == 3
    assert wire["delay_ms"] == 500

    restored = Job.from_wire(wire)
    assert restored.last_error == job.last_error
    assert restored.priority == 3


def test_error_streak_survives_wire_and_defaults_to_one():
    error = LastError(kind=ErrorKind.BLOCKED_OR_BANNED, message="403", attempt=3, streak=2)
    wire = error.to_wire()
    assert wire["streak"] == 2
    assert LastError.from_wire(wire).streak == 2

    single = LastError(kind=ErrorKind.TIMEOUT, message="slow", attempt=1)
    assert "streak" not in single.to_wire()
    assert LastError.from_wire(single.to_wire()).streak == 1


def test_unknown_error_kind_falls_back():
    error = LastError.from_wire({"kind": "exotic", "message": "?", "attempt": 2})
    assert error.kind == ErrorKind.UNKNOWN


def test_delayed_job_starts_delayed():
    assert Job.create(JobSpec(keyword="a"), JobOptions(delay_ms=100)).state == JobState.DELAYED
    assert Job.create(JobSpec(keyword="a")).state == JobState.WAITING


def test_resolved_url_prefers_url():
    assert Job(keyword="tv", url="https://x.test/a").resolved_url == "https://x.test/a"
    assert Job(keyword="smart tv").resolved_url == build_search_url("smart tv")


def test_build_search_url():
    base = "https://shop.test/search"
    assert build_search_url("smart tv", base_url=base) == "https://shop.test/search?q=smart%20tv"
    assert build_search_url("a&b", page=3, base_url=base) == "https://shop.test/search?q=a%26b&page=3"


@pytest.mark.parametrize(
    "spec",
    [
        JobSpec(),
        JobSpec(keyword="   "),
        JobSpec(keyword="x", max_pages=0),
    ],
)
def test_invalid_specs(spec):
    with pytest.raises(InvalidJobSpec):
        Job.create(spec)


def test_invalid_options():
    with pytest.raises(InvalidJobSpec):
        Job.create(JobSpec(keyword="x"), JobOptions(priority=-1))
    with pytest.raises(InvalidJobSpec):
        Job.create(JobSpec(keyword="x"), JobOptions(delay_ms=-5))


def test_spec_from_dict_accepts_both_key_styles():
    assert JobSpec.from_dict({"keyword": "a", "maxPages": 4}).max_pages == 4
    assert JobSpec.from_dict({"keyword": "a", "max_pages": 2}).max_pages == 2
    with pytest.raises(InvalidJobSpec):
        JobSpec.from_dict(["not", "a", "dict"])


def test_isoformat_millisecond_precision():
    value = datetime(2024, 1, 2, 3, 4, 5, 678901, tzinfo=timezone.utc)
    assert isoformat(value) == "2024-01-02T03:04:05.678Z"
