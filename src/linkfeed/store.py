"""Merged, deduplicated message store."""

import logging
from typing import Iterable

from linkfeed.models import Message

logger = logging.getLogger(__name__)


class MessageStore:
    """Canonical set of messages keyed by composite id.

    Consumption order is newest first. Messages with the same date keep the
    position they were merged at: a prepend (``append=False``) lands ahead of
    existing same-date records, an append lands behind them.
    """

    def __init__(self):
        self._messages: dict[str, Message] = {}
        self._positions: dict[str, int] = {}
        self._head = 0  # next position for prepends (counts down)
        self._tail = 0  # next position for appends (counts up)
        self._ordered: list[Message] | None = None

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._messages

    def get(self, message_id: str) -> Message | None:
        return self._messages.get(message_id)

    def _insert(self, message: Message, append: bool) -> None:
        mid = message.id
        if append:
            self._positions[mid] = self._tail
            self._tail += 1
        else:
            self._head -= 1
            self._positions[mid] = self._head
        self._messages[mid] = message

    def _changed(self) -> None:
        self._ordered = None

    def merge_historical(self, messages: Iterable[Message], append: bool = False) -> list[Message]:
        """Merge a batch from a historical fetch.

        Existing records win; their matched terms absorb the incoming ones.
        Returns the messages that were new to the store.
        """
        batch = [m for m in messages if isinstance(m, Message)]
        if not append:
            # Walk backwards so the batch keeps its own order at the head.
            batch = batch[::-1]

        added: list[Message] = []
        touched = False
        for message in batch:
            existing = self._messages.get(message.id)
            if existing is not None:
                if not message.matched_terms <= existing.matched_terms:
                    existing.matched_terms |= message.matched_terms
                    touched = True
                continue
            message.matched_terms = set(message.matched_terms)
            self._insert(message, append)
            added.append(message)

        if added or touched:
            self._changed()
        if not append:
            added.reverse()
        logger.debug("Merged %d new of %d historical messages", len(added), len(batch))
        return added

    def merge_streaming(self, message: Message) -> bool:
        """Merge one live push. A message the store already has is a no-op."""
        if message.id in self._messages:
            return False
        message.matched_terms = set(message.matched_terms)
        self._insert(message, append=False)
        self._changed()
        return True

    def messages(self) -> list[Message]:
        """All messages, newest first."""
        if self._ordered is None:
            self._ordered = sorted(
                self._messages.values(),
                key=lambda m: (-m.date, self._positions[m.id]),
            )
        return list(self._ordered)

    def clear(self) -> None:
        self._messages.clear()
        self._positions.clear()
        self._head = 0
        self._tail = 0
        self._changed()
