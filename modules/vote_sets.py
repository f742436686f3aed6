"""Typed per-voter vote sets for cl-topic-votes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

UP = "up"
DOWN = "down"
DIRECTIONS = (UP, DOWN)

# vote_set column values in voter_votes
ACTIVE_UP = "up"
ARCHIVED_UP = "up_archive"
ACTIVE_DOWN = "down"
ARCHIVED_DOWN = "down_archive"
VOTE_SETS = (ACTIVE_UP, ARCHIVED_UP, ACTIVE_DOWN, ARCHIVED_DOWN)

ACTIVE_SET = {UP: ACTIVE_UP, DOWN: ACTIVE_DOWN}
ARCHIVE_SET = {UP: ARCHIVED_UP, DOWN: ARCHIVED_DOWN}


def coerce_id(value: Any) -> Optional[int]:
    """Return a positive integer record id, or None if value is not one."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str):
        text = value.strip()
        if not text.isdigit():
            return None
        parsed = int(text)
        return parsed if parsed > 0 else None
    return None


class TopicIdSet:
    """Set of topic ids that refuses anything that is not a topic id."""

    __slots__ = ("_ids",)

    def __init__(self, ids: Iterable[Any] = ()):
        self._ids: Set[int] = set()
        for value in ids:
            self.add(value)

    @classmethod
    def from_stored(cls, values: Iterable[Any]) -> "TopicIdSet":
        """Build from persisted values, dropping anything malformed."""
        result = cls()
        for value in values:
            topic_id = coerce_id(value)
            if topic_id is not None:
                result._ids.add(topic_id)
        return result

    def add(self, value: Any) -> None:
        topic_id = coerce_id(value)
        if topic_id is None:
            raise ValueError(f"invalid topic id: {value!r}")
        self._ids.add(topic_id)

    def discard(self, value: Any) -> None:
        topic_id = coerce_id(value)
        if topic_id is not None:
            self._ids.discard(topic_id)

    def replace(self, old: int, new: int) -> None:
        if old in self._ids:
            self._ids.discard(old)
            self.add(new)

    def copy(self) -> "TopicIdSet":
        clone = TopicIdSet()
        clone._ids = set(self._ids)
        return clone

    def sorted(self) -> List[int]:
        return sorted(self._ids)

    def __contains__(self, value: Any) -> bool:
        topic_id = coerce_id(value)
        return topic_id is not None and topic_id in self._ids

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self._ids))

    def __len__(self) -> int:
        return len(self._ids)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TopicIdSet):
            return self._ids == other._ids
        return NotImplemented

    def __repr__(self) -> str:
        return f"TopicIdSet({self.sorted()!r})"


@dataclass
class VoterVotes:
    """The four vote sets of one voter.

    A topic is never in both active sets at once; the archive sets are a
    record of votes on closed or ineligible topics and still count towards
    the topic's tally, but not towards the voter's limit.
    """

    voter_id: int
    active_up: TopicIdSet = field(default_factory=TopicIdSet)
    archived_up: TopicIdSet = field(default_factory=TopicIdSet)
    active_down: TopicIdSet = field(default_factory=TopicIdSet)
    archived_down: TopicIdSet = field(default_factory=TopicIdSet)

    def vote_set(self, name: str) -> TopicIdSet:
        if name == ACTIVE_UP:
            return self.active_up
        if name == ARCHIVED_UP:
            return self.archived_up
        if name == ACTIVE_DOWN:
            return self.active_down
        if name == ARCHIVED_DOWN:
            return self.archived_down
        raise ValueError(f"unknown vote set: {name}")

    def active(self, direction: str) -> TopicIdSet:
        return self.vote_set(ACTIVE_SET[direction])

    def archived(self, direction: str) -> TopicIdSet:
        return self.vote_set(ARCHIVE_SET[direction])

    @property
    def active_count(self) -> int:
        return len(self.active_up) + len(self.active_down)

    def cast(self, direction: str, topic_id: int) -> None:
        """Record an active vote, discarding any other vote on the topic.

        Archived records for the topic are replaced by the fresh vote.
        """
        opposite = DOWN if direction == UP else UP
        self.active(opposite).discard(topic_id)
        self.archived_up.discard(topic_id)
        self.archived_down.discard(topic_id)
        self.active(direction).add(topic_id)

    def withdraw(self, topic_id: int) -> None:
        self.active_up.discard(topic_id)
        self.active_down.discard(topic_id)

    def archive(self, direction: str, topic_id: int) -> bool:
        if topic_id not in self.active(direction):
            return False
        self.active(direction).discard(topic_id)
        self.archived(direction).add(topic_id)
        return True

    def restore(self, direction: str, topic_id: int) -> bool:
        if topic_id not in self.archived(direction):
            return False
        self.archived(direction).discard(topic_id)
        opposite = DOWN if direction == UP else UP
        if topic_id in self.active(opposite):
            # superseded by an active vote the other way
            return False
        self.active(direction).add(topic_id)
        return True

    def copy(self) -> "VoterVotes":
        return VoterVotes(
            voter_id=self.voter_id,
            active_up=self.active_up.copy(),
            archived_up=self.archived_up.copy(),
            active_down=self.active_down.copy(),
            archived_down=self.archived_down.copy(),
        )

    def rows(self) -> List[tuple]:
        """Flatten into (voter_id, topic_id, vote_set) rows for storage."""
        out = []
        for name in VOTE_SETS:
            for topic_id in self.vote_set(name):
                out.append((self.voter_id, topic_id, name))
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "voter_id": self.voter_id,
            "active_up": self.active_up.sorted(),
            "archived_up": self.archived_up.sorted(),
            "active_down": self.active_down.sorted(),
            "archived_down": self.archived_down.sorted(),
        }
