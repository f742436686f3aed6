"""Category eligibility cache and topic voting eligibility."""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional

from modules.settings import VotingSettings


class CategoryEligibilityCache:
    """Process-wide set of category ids that allow voting.

    Built lazily from ``loader`` on the first query and rebuilt wholesale
    after ``invalidate()``. Invalidate whenever a category's configuration
    is saved.
    """

    def __init__(
        self,
        loader: Callable[[], Iterable[int]],
        logger: Optional[Callable[[str, str], None]] = None,
    ):
        self._loader = loader
        self._logger = logger
        self._lock = threading.Lock()
        self._allowed: Optional[FrozenSet[int]] = None
        self.rebuilds = 0

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def invalidate(self) -> None:
        with self._lock:
            self._allowed = None

    def _snapshot(self) -> FrozenSet[int]:
        allowed = self._allowed
        if allowed is not None:
            return allowed
        with self._lock:
            if self._allowed is None:
                self._allowed = frozenset(int(cid) for cid in self._loader())
                self.rebuilds += 1
                self._log(f"voting: eligibility cache rebuilt ({len(self._allowed)} categories)", "debug")
            return self._allowed

    def is_enabled(self, category_id: Any) -> bool:
        if category_id is None or isinstance(category_id, bool):
            return False
        try:
            return int(category_id) in self._snapshot()
        except (TypeError, ValueError):
            return False


class VotingEligibility:
    """Answers whether a category or topic accepts votes."""

    def __init__(
        self,
        settings: VotingSettings,
        cache: CategoryEligibilityCache,
        category_lookup: Callable[[int], Optional[Dict[str, Any]]],
    ):
        self.settings = settings
        self.cache = cache
        self._category_lookup = category_lookup

    def can_vote(self, category_id: Any) -> bool:
        if not self.settings.enabled:
            return False
        return self.cache.is_enabled(category_id)

    def can_down_vote(self, category_id: Any) -> bool:
        return self.settings.allow_down_vote and self.can_vote(category_id)

    def _is_definition_topic(self, topic: Dict[str, Any]) -> bool:
        category_id = topic.get("category_id")
        if category_id is None:
            return False
        category = self._category_lookup(int(category_id))
        if not category:
            return False
        return category.get("definition_topic_id") == topic.get("topic_id")

    def topic_can_vote(self, topic: Dict[str, Any]) -> bool:
        return self.can_vote(topic.get("category_id")) and not self._is_definition_topic(topic)

    def topic_can_down_vote(self, topic: Dict[str, Any]) -> bool:
        return self.can_down_vote(topic.get("category_id")) and not self._is_definition_topic(topic)
