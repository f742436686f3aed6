"""Vote ledger: per-voter vote sets, limits, and vote/unvote operations."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional

from modules.aggregation import VoteAggregator
from modules.eligibility import VotingEligibility
from modules.locks import KeyedLocks
from modules.settings import VotingSettings
from modules.vote_sets import ACTIVE_SET, ARCHIVE_SET, DIRECTIONS, DOWN, UP, VoterVotes, coerce_id
from modules.voting_store import VotingStore


class VotingError(Exception):
    """Base class for ledger errors."""


class InvalidAccess(VotingError):
    """The topic does not accept this vote, or the voter already cast it."""


class NotFound(VotingError):
    """The voter or topic does not exist."""


@dataclass
class LimitStatus:
    vote_limit: int
    votes_used: int
    remaining: int
    limit_reached: bool
    alert: bool


@dataclass
class VoteOutcome:
    recorded: bool
    limit_reached: bool
    vote_limit: int
    remaining: int
    vote_count: int
    alert: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class VoteLedger:
    """Owns every voter's active and archived vote sets."""

    def __init__(
        self,
        store: VotingStore,
        settings: VotingSettings,
        eligibility: VotingEligibility,
        aggregator: VoteAggregator,
        logger: Optional[Callable[[str, str], None]] = None,
        voter_locks: Optional[KeyedLocks] = None,
    ):
        self.store = store
        self.settings = settings
        self.eligibility = eligibility
        self.aggregator = aggregator
        self._logger = logger
        self.voter_locks = voter_locks or KeyedLocks()

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _require_topic(self, topic_id: Any) -> Dict[str, Any]:
        tid = coerce_id(topic_id)
        topic = self.store.get_topic(tid) if tid is not None else None
        if not topic:
            raise NotFound("topic not found")
        return topic

    def _require_voter(self, voter_id: Any) -> Dict[str, Any]:
        vid = coerce_id(voter_id)
        voter = self.store.get_voter(vid) if vid is not None else None
        if not voter:
            raise NotFound("voter not found")
        return voter

    @contextmanager
    def voter_votes(self, voter_id: int) -> Iterator[VoterVotes]:
        """Exclusive read-modify-write access to one voter's vote sets.

        The sets are saved back on exit if the block changed them.
        """
        with self.voter_locks.hold(voter_id):
            with self.store.transaction():
                votes = self.store.get_voter_votes(voter_id)
                before = votes.copy()
                yield votes
                if votes != before:
                    self.store.replace_voter_votes(votes)

    def limit_status(self, voter: Dict[str, Any], votes: Optional[VoterVotes] = None) -> LimitStatus:
        if votes is None:
            votes = self.store.get_voter_votes(int(voter["voter_id"]))
        vote_limit = self.settings.vote_limit(int(voter.get("trust_level") or 0))
        used = votes.active_count
        remaining = max(vote_limit - used, 0)
        return LimitStatus(
            vote_limit=vote_limit,
            votes_used=used,
            remaining=remaining,
            limit_reached=used >= vote_limit,
            alert=remaining <= self.settings.alert_votes_left,
        )

    def _cast(self, voter_id: Any, topic_id: Any, direction: str) -> VoteOutcome:
        topic = self._require_topic(topic_id)
        voter = self._require_voter(voter_id)
        tid = int(topic["topic_id"])
        vid = int(voter["voter_id"])

        if direction == UP:
            allowed = self.eligibility.topic_can_vote(topic)
        else:
            allowed = self.eligibility.topic_can_down_vote(topic)
        if not allowed:
            raise InvalidAccess(f"topic does not accept {direction} votes")
        if topic.get("closed") or topic.get("archived"):
            raise InvalidAccess("topic is not open for voting")

        recorded = False
        with self.voter_votes(vid) as votes:
            if tid in votes.active(direction):
                raise InvalidAccess(f"already {direction} voted")
            if not self.limit_status(voter, votes).limit_reached:
                votes.cast(direction, tid)
                recorded = True
            status = self.limit_status(voter, votes)

        if recorded:
            self._log(f"voting: voter {vid} {direction} voted topic {tid}", "debug")
            vote_count = self.aggregator.recompute_count(tid)
        else:
            self._log(f"voting: voter {vid} hit vote limit ({status.vote_limit})", "debug")
            vote_count = int(topic.get("vote_count") or 0)

        return VoteOutcome(
            recorded=recorded,
            limit_reached=status.limit_reached,
            vote_limit=status.vote_limit,
            remaining=status.remaining,
            vote_count=int(vote_count or 0),
            alert=status.alert,
        )

    def up_vote(self, voter_id: Any, topic_id: Any) -> VoteOutcome:
        return self._cast(voter_id, topic_id, UP)

    def down_vote(self, voter_id: Any, topic_id: Any) -> VoteOutcome:
        return self._cast(voter_id, topic_id, DOWN)

    def unvote(self, voter_id: Any, topic_id: Any) -> VoteOutcome:
        topic = self._require_topic(topic_id)
        voter = self._require_voter(voter_id)
        tid = int(topic["topic_id"])
        vid = int(voter["voter_id"])

        with self.voter_votes(vid) as votes:
            votes.withdraw(tid)
            status = self.limit_status(voter, votes)

        vote_count = self.aggregator.recompute_count(tid)
        return VoteOutcome(
            recorded=False,
            limit_reached=status.limit_reached,
            vote_limit=status.vote_limit,
            remaining=status.remaining,
            vote_count=int(vote_count or 0),
            alert=status.alert,
        )

    def who_voted(self, topic_id: int, direction: str = UP, include_archived: bool = False) -> List[int]:
        if direction not in DIRECTIONS:
            raise ValueError(f"unknown direction: {direction}")
        vote_sets = [ACTIVE_SET[direction]]
        if include_archived:
            vote_sets.append(ARCHIVE_SET[direction])
        return self.store.list_voter_ids_for_topic(topic_id, vote_sets)

    def voted_topics(self, voter_id: Any) -> List[int]:
        voter = self._require_voter(voter_id)
        return self.store.get_voter_votes(int(voter["voter_id"])).active_up.sorted()

    def topic_vote_state(self, voter_id: Any, topic_id: Any) -> Dict[str, Any]:
        topic = self._require_topic(topic_id)
        voter = self._require_voter(voter_id)
        tid = int(topic["topic_id"])
        votes = self.store.get_voter_votes(int(voter["voter_id"]))
        up_voted = tid in votes.active_up
        down_voted = tid in votes.active_down
        return {
            "topic_id": tid,
            "can_vote": self.eligibility.topic_can_vote(topic),
            "can_down_vote": self.eligibility.topic_can_down_vote(topic),
            "vote_count": int(topic.get("vote_count") or 0),
            "user_voted": up_voted or down_voted,
            "user_up_voted": up_voted,
            "user_down_voted": down_voted,
        }
