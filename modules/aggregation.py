"""Topic vote count derivation."""

from __future__ import annotations

import time
from typing import Callable, Optional

from modules.locks import KeyedLocks
from modules.voting_store import VotingStore


class VoteAggregator:
    """Derives a topic's cached vote count from the voters' vote sets.

    ``recompute_count`` is the only writer of ``topics.vote_count``. It is a
    pure function of the vote rows, so calling it again is always safe.
    """

    def __init__(
        self,
        store: VotingStore,
        logger: Optional[Callable[[str, str], None]] = None,
        time_fn: Callable[[], float] = time.time,
    ):
        self.store = store
        self._logger = logger
        self._time_fn = time_fn
        self._topic_locks = KeyedLocks()

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def recompute_count(self, topic_id: int) -> Optional[int]:
        """Recompute and store the count; None if the topic does not exist."""
        with self._topic_locks.hold(topic_id):
            with self.store.transaction():
                if self.store.get_topic(topic_id) is None:
                    return None
                tally = self.store.tally_topic(topic_id)
                vote_count = tally["up"] - tally["down"]
                self.store.set_topic_vote_count(topic_id, vote_count, int(self._time_fn()))
        return vote_count

    def recompute_all(self) -> int:
        """Recompute every topic that has votes or a stale count.

        Returns the number of topics whose stored count changed.
        """
        changed = 0
        for topic_id in self.store.list_topics_needing_count():
            topic = self.store.get_topic(topic_id)
            before = int(topic["vote_count"]) if topic else None
            after = self.recompute_count(topic_id)
            if after is not None and after != before:
                changed += 1
                self._log(f"voting: topic {topic_id} count corrected {before} -> {after}", "info")
        return changed
