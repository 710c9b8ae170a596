"""Tests for the probe feed reader."""

import json
import os

import pytest

from probe_feed import ProbeFeed
from providers.base import AccountRecord


def _event(provider_id, used=10, batch_id="b1", wrapped=True):
    output = {
        "providerId": provider_id,
        "displayName": provider_id.title(),
        "lines": [{"type": "progress", "label": "Session", "used": used, "limit": 100}],
    }
    if wrapped:
        return {"batchId": batch_id, "output": output}
    return dict(output, batchId=batch_id)


@pytest.fixture
def feed(tmp_dir):
    return ProbeFeed(tmp_dir)


def _append(feed, *entries, raw=None):
    with open(feed.events_path, "a") as f:
        for entry in entries:
            f.write(json.dumps(entry) + "\n")
        if raw is not None:
            f.write(raw)


class TestReadNewEvents:
    def test_missing_file(self, feed):
        assert feed.read_new_events() == []

    def test_reads_in_order(self, feed):
        _append(feed, _event("codex", 10), _event("claude", 20, wrapped=False))
        events = feed.read_new_events()
        assert [e.output.provider_id for e in events] == ["codex", "claude"]
        assert events[0].batch_id == "b1"
        assert events[1].output.lines[0].used == 20

    def test_only_new_events(self, feed):
        _append(feed, _event("codex", 10))
        assert len(feed.read_new_events()) == 1
        assert feed.read_new_events() == []

        _append(feed, _event("codex", 30))
        events = feed.read_new_events()
        assert [e.output.lines[0].used for e in events] == [30]

    def test_partial_line_left_for_next_poll(self, feed):
        line = json.dumps(_event("codex", 10))
        _append(feed, raw=line[:20])
        assert feed.read_new_events() == []

        _append(feed, raw=line[20:] + "\n")
        events = feed.read_new_events()
        assert len(events) == 1

    def test_rotated_file_reread(self, feed):
        _append(feed, _event("codex", 10), _event("codex", 20))
        feed.read_new_events()

        with open(feed.events_path, "w") as f:
            f.write(json.dumps(_event("zai", 5)) + "\n")
        events = feed.read_new_events()
        assert [e.output.provider_id for e in events] == ["zai"]

    def test_skips_bad_lines(self, feed):
        _append(feed, {"batchId": "x"}, [1, 2], raw="not json\n\n")
        _append(feed, _event("codex"))
        events = feed.read_new_events()
        assert [e.output.provider_id for e in events] == ["codex"]


class TestReadAccounts:
    def test_reads_accounts(self, feed):
        with open(feed.accounts_path, "w") as f:
            json.dump(
                [
                    {"id": "a1", "providerId": "codex", "label": "Work"},
                    {"id": "", "providerId": "codex"},
                    "junk",
                ],
                f,
            )
        assert feed.read_accounts() == [AccountRecord(id="a1", provider_id="codex", label="Work")]

    def test_missing_or_bad(self, feed):
        assert feed.read_accounts() == []
        with open(feed.accounts_path, "w") as f:
            f.write("{bad")
        assert feed.read_accounts() == []

    def test_expands_user(self):
        assert ProbeFeed("~/probe").feed_dir == os.path.expanduser("~/probe")
