"""Release and reclaim of votes as topics close, reopen, or change category."""

from __future__ import annotations

import sqlite3
from typing import Any, Callable, Dict, Optional

from modules.aggregation import VoteAggregator
from modules.eligibility import VotingEligibility
from modules.ledger import VoteLedger
from modules.vote_jobs import VoteJobQueue
from modules.vote_sets import ACTIVE_SET, ARCHIVE_SET, DIRECTIONS
from modules.voting_store import VotingStore

RELEASE_JOB = "release"
RECLAIM_JOB = "reclaim"

CLOSING_STATUSES = ("closed", "autoclosed", "archived")


class LifecycleManager:
    """Moves votes between the active and archive sets of every voter."""

    def __init__(
        self,
        store: VotingStore,
        ledger: VoteLedger,
        aggregator: VoteAggregator,
        eligibility: VotingEligibility,
        queue: VoteJobQueue,
        logger: Optional[Callable[[str, str], None]] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.aggregator = aggregator
        self.eligibility = eligibility
        self.queue = queue
        self._logger = logger
        queue.register(RELEASE_JOB, self._handle_release)
        queue.register(RECLAIM_JOB, self._handle_reclaim)

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _handle_release(self, topic_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        del payload
        return self.release(topic_id)

    def _handle_reclaim(self, topic_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        del payload
        return self.reclaim(topic_id)

    def _migrate(self, topic_id: int, to_archive: bool) -> Dict[str, Any]:
        action = RELEASE_JOB if to_archive else RECLAIM_JOB
        if self.store.get_topic(topic_id) is None:
            self._log(f"voting: {action} skipped, topic {topic_id} no longer exists", "info")
            return {"ok": True, "topic_id": topic_id, "moved": 0, "skipped": 0, "topic_missing": True}

        moved = 0
        skipped = 0
        try:
            for direction in DIRECTIONS:
                source = ACTIVE_SET[direction] if to_archive else ARCHIVE_SET[direction]
                for voter_id in self.store.list_voter_ids_for_topic(topic_id, [source]):
                    if self.store.get_voter(voter_id) is None:
                        self._log(f"voting: {action} skipped unknown voter {voter_id}", "debug")
                        continue
                    try:
                        with self.ledger.voter_votes(voter_id) as votes:
                            if to_archive:
                                changed = votes.archive(direction, topic_id)
                            else:
                                changed = votes.restore(direction, topic_id)
                    except (sqlite3.Error, ValueError) as exc:
                        skipped += 1
                        self._log(f"voting: {action} of topic {topic_id} failed for voter {voter_id}: {exc}", "warn")
                        continue
                    if changed:
                        moved += 1
        finally:
            vote_count = self.aggregator.recompute_count(topic_id)

        self._log(f"voting: {action} topic {topic_id} moved {moved} vote(s)", "info")
        return {
            "ok": True,
            "topic_id": topic_id,
            "moved": moved,
            "skipped": skipped,
            "vote_count": vote_count,
        }

    def release(self, topic_id: int) -> Dict[str, Any]:
        """Archive every active vote on the topic."""
        return self._migrate(topic_id, to_archive=True)

    def reclaim(self, topic_id: int) -> Dict[str, Any]:
        """Return every archived vote on the topic to the active sets."""
        return self._migrate(topic_id, to_archive=False)

    def on_topic_status_updated(self, topic_id: int, status: str, enabled: bool) -> Optional[int]:
        if status not in CLOSING_STATUSES:
            return None
        if enabled:
            return self.queue.enqueue(RELEASE_JOB, topic_id)
        return self.queue.enqueue(RECLAIM_JOB, topic_id)

    def on_topic_recategorized(self, topic_id: int, category_id: Optional[int]) -> Optional[int]:
        if not self.eligibility.settings.enabled:
            return None
        if not self.store.topic_has_votes(topic_id):
            return None
        if self.eligibility.can_vote(category_id):
            return self.queue.enqueue(RECLAIM_JOB, topic_id)
        return self.queue.enqueue(RELEASE_JOB, topic_id)
