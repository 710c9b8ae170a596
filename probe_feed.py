"""Probe feed reader — consumes what the external probe service publishes.

The probe service writes into one directory:

    events.jsonl   one ProviderOutput event per line, appended in arrival order
    accounts.json  the account list, [{"id", "providerId", "label"}, ...]

The feed remembers how far into events.jsonl it has read, so each poll
returns only new events.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass

from providers.base import AccountRecord, ProviderOutput

logger = logging.getLogger(__name__)

EVENTS_FILENAME = "events.jsonl"
ACCOUNTS_FILENAME = "accounts.json"


@dataclass(frozen=True)
class ProbeEvent:
    batch_id: str
    output: ProviderOutput


class ProbeFeed:
    """Incremental reader for the probe service's output directory."""

    def __init__(self, feed_dir: str):
        self.feed_dir = os.path.expanduser(feed_dir)
        self._offset = 0

    @property
    def events_path(self) -> str:
        return os.path.join(self.feed_dir, EVENTS_FILENAME)

    @property
    def accounts_path(self) -> str:
        return os.path.join(self.feed_dir, ACCOUNTS_FILENAME)

    def read_new_events(self) -> list[ProbeEvent]:
        """Return events appended since the last call, oldest first.

        A trailing line without a newline is still being written and is left
        for the next poll. If the file shrank it was rotated, and reading
        restarts from the top.
        """
        path = self.events_path
        try:
            size = os.path.getsize(path)
        except OSError:
            logger.debug("Probe events file does not exist: %s", path)
            return []

        if size < self._offset:
            logger.info("Probe events file shrank, re-reading from start.")
            self._offset = 0
        if size == self._offset:
            return []

        try:
            with open(path, "rb") as f:
                f.seek(self._offset)
                chunk = f.read()
        except OSError as e:
            logger.debug("Failed to read probe events %s: %s", path, e)
            return []

        complete, sep, _partial = chunk.rpartition(b"\n")
        if not sep:
            return []
        self._offset += len(complete) + 1

        events = []
        for raw_line in complete.split(b"\n"):
            event = self._parse_event(raw_line)
            if event is not None:
                events.append(event)
        return events

    def _parse_event(self, raw_line: bytes) -> ProbeEvent | None:
        line = raw_line.strip()
        if not line:
            return None
        try:
            entry = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.debug("Skipping undecodable probe event line.")
            return None
        if not isinstance(entry, dict):
            return None

        # Events either wrap the output or carry its fields inline
        payload = entry.get("output", entry)
        output = ProviderOutput.from_dict(payload)
        if output is None:
            logger.debug("Skipping probe event without a provider id.")
            return None
        batch_id = entry.get("batchId")
        return ProbeEvent(batch_id=str(batch_id) if batch_id is not None else "", output=output)

    def read_accounts(self) -> list[AccountRecord]:
        """Read the account list; empty on any failure."""
        path = self.accounts_path
        if not os.path.exists(path):
            return []
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.debug("Failed to parse accounts file %s: %s", path, e)
            return []
        if not isinstance(data, list):
            return []

        accounts = []
        for entry in data:
            account = AccountRecord.from_dict(entry)
            if account is not None:
                accounts.append(account)
        return accounts
