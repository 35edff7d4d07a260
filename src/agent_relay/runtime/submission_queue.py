"""Per-key FIFO of follow-up input submitted while a run is in flight."""

from __future__ import annotations

from collections import defaultdict

from agent_relay.runtime.models import ConcurrencyKey, QueueEntry

QUEUE_SEPARATOR = "\n\n---\n\n"


class SubmissionQueue:
    """Holds queued entries until the key's drain takes all of them at once."""

    def __init__(self) -> None:
        self._entries: defaultdict[ConcurrencyKey, list[QueueEntry]] = defaultdict(list)

    def enqueue(self, entry: QueueEntry) -> int:
        """Append ``entry`` and return the key's new queue depth."""

        entries = self._entries[entry.key]
        entries.append(entry)
        return len(entries)

    def depth(self, key: ConcurrencyKey) -> int:
        entries = self._entries.get(key)
        return len(entries) if entries else 0

    def take_all(self, key: ConcurrencyKey) -> list[QueueEntry]:
        return self._entries.pop(key, [])

    def discard(self, key: ConcurrencyKey) -> int:
        return len(self._entries.pop(key, []))

    def keys(self) -> list[ConcurrencyKey]:
        return [key for key, entries in self._entries.items() if entries]


def combine_payloads(entries: list[QueueEntry]) -> str:
    """Join queued payloads in submission order."""

    return QUEUE_SEPARATOR.join(entry.payload for entry in entries)
