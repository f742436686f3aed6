"""Consolidation of votes when one topic is merged into another."""

from __future__ import annotations

import sqlite3
from typing import Any, Callable, Dict, Optional

from modules.aggregation import VoteAggregator
from modules.ledger import VoteLedger
from modules.vote_jobs import VoteJobQueue
from modules.vote_sets import ACTIVE_SET, DIRECTIONS
from modules.voting_store import VotingStore

MERGE_JOB = "merge"


class MergeReconciler:
    """Moves votes from a merged topic onto its destination."""

    def __init__(
        self,
        store: VotingStore,
        ledger: VoteLedger,
        aggregator: VoteAggregator,
        queue: VoteJobQueue,
        logger: Optional[Callable[[str, str], None]] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.aggregator = aggregator
        self.queue = queue
        self._logger = logger
        queue.register(MERGE_JOB, self._handle_merge)

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _handle_merge(self, topic_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        dest_id = payload.get("dest_topic_id")
        if not isinstance(dest_id, int) or isinstance(dest_id, bool):
            raise ValueError("merge job is missing dest_topic_id")
        return self.merge(topic_id, dest_id)

    def on_topic_merged(self, orig_id: int, dest_id: int) -> int:
        return self.queue.enqueue(MERGE_JOB, orig_id, {"dest_topic_id": dest_id})

    def merge(self, orig_id: int, dest_id: int) -> Dict[str, Any]:
        """Move active votes on orig_id over to dest_id.

        A voter who already has an active vote on dest_id, in either
        direction, keeps that vote and loses the one on orig_id.
        """
        moved = 0
        dropped = 0
        skipped = 0

        if self.store.get_topic(dest_id) is None:
            self._log(f"voting: merge skipped, topic {dest_id} no longer exists", "info")
            return {
                "ok": True,
                "orig_topic_id": orig_id,
                "dest_topic_id": dest_id,
                "moved": 0,
                "dropped": 0,
                "skipped": 0,
                "topic_missing": True,
                "orig_vote_count": self.aggregator.recompute_count(orig_id),
                "dest_vote_count": None,
            }

        if orig_id != dest_id:
            try:
                for direction in DIRECTIONS:
                    voter_ids = self.ledger.who_voted(orig_id, direction=direction)
                    for voter_id in voter_ids:
                        if self.store.get_voter(voter_id) is None:
                            self._log(f"voting: merge skipped unknown voter {voter_id}", "debug")
                            continue
                        try:
                            with self.ledger.voter_votes(voter_id) as votes:
                                active = votes.vote_set(ACTIVE_SET[direction])
                                if orig_id not in active:
                                    continue
                                if dest_id in votes.active_up or dest_id in votes.active_down:
                                    active.discard(orig_id)
                                    dropped += 1
                                else:
                                    active.replace(orig_id, dest_id)
                                    moved += 1
                        except (sqlite3.Error, ValueError) as exc:
                            skipped += 1
                            self._log(f"voting: merge of topic {orig_id} failed for voter {voter_id}: {exc}", "warn")
            finally:
                orig_count = self.aggregator.recompute_count(orig_id)
                dest_count = self.aggregator.recompute_count(dest_id)
        else:
            orig_count = dest_count = self.aggregator.recompute_count(orig_id)

        self._log(
            f"voting: merged topic {orig_id} into {dest_id} (moved={moved}, dropped={dropped})",
            "info",
        )
        return {
            "ok": True,
            "orig_topic_id": orig_id,
            "dest_topic_id": dest_id,
            "moved": moved,
            "dropped": dropped,
            "skipped": skipped,
            "orig_vote_count": orig_count,
            "dest_vote_count": dest_count,
        }
