"""Tests for the command-line entry point."""

import json

import pytest

from fakes import make_settings
from scrape_engine.cli import build_parser, main


def _settings(tmp_path):
    return make_settings(log_json=False, log_dir=str(tmp_path))


def test_enqueue_requires_exactly_one_target():
    parser = build_parser()
    with pytest.raises(SystemExit):
        parser.parse_args(["enqueue"])
    with pytest.raises(SystemExit):
        parser.parse_args(["enqueue", "-k", "tv", "-u", "https://x.test"])

    args = parser.parse_args(["enqueue", "-k", "tv", "-p", "3", "--priority", "2"])
    assert args.keyword == "tv"
    assert args.pages == 3
    assert args.priority == 2


def test_enqueue_prints_job_id(tmp_path, capsys):
    assert main(["enqueue", "--keyword", "smart tv", "--pages", "2"], settings=_settings(tmp_path)) == 0

    out = capsys.readouterr().out
    assert "Job enqueued: 1" in out
    assert '"waiting": 1' in out


def test_invalid_job_exits_with_error(tmp_path):
    assert main(["enqueue", "--keyword", "tv", "--pages", "0"], settings=_settings(tmp_path)) == 2


def test_enqueue_bulk(tmp_path, capsys):
    path = tmp_path / "jobs.json"
    path.write_text(json.dumps({"jobs": [{"keyword": "a"}, {"url": "https://x.test", "maxPages": 1}]}))

    assert main(["enqueue-bulk", str(path)], settings=_settings(tmp_path)) == 0
    assert "Bulk enqueued 2 jobs" in capsys.readouterr().out


def test_bulk_with_invalid_entry_enqueues_nothing(tmp_path, capsys):
    path = tmp_path / "jobs.json"
    path.write_text(json.dumps([{"keyword": "a"}, {"maxPages": 2}]))

    assert main(["enqueue-bulk", str(path)], settings=_settings(tmp_path)) == 2
    assert "Bulk enqueued" not in capsys.readouterr().out
