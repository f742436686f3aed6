"""Service API used by cl-topic-votes RPC methods."""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional

from modules.aggregation import VoteAggregator
from modules.eligibility import CategoryEligibilityCache, VotingEligibility
from modules.ledger import InvalidAccess, NotFound, VoteLedger, VoteOutcome
from modules.lifecycle import CLOSING_STATUSES, LifecycleManager
from modules.merge import MergeReconciler
from modules.settings import MAX_TRUST_LEVEL, VotingSettings, parse_bool
from modules.vote_jobs import JobWorker, VoteJobQueue
from modules.vote_sets import UP, coerce_id
from modules.voting_store import VotingStore


class VotingService:
    """Wires the ledger, aggregation, lifecycle, and merge components."""

    MAX_USERNAME_LEN = 60
    MAX_NAME_LEN = 120
    MAX_TITLE_LEN = 255
    MAX_AVATAR_LEN = 500

    def __init__(
        self,
        store: VotingStore,
        settings: Optional[VotingSettings] = None,
        logger: Optional[Callable[[str, str], None]] = None,
        time_fn: Callable[[], float] = time.time,
    ):
        self.store = store
        self.settings = settings or VotingSettings()
        self._logger = logger
        self._time_fn = time_fn
        self.store.initialize()

        self.cache = CategoryEligibilityCache(self.store.list_voting_category_ids, logger=logger)
        self.eligibility = VotingEligibility(self.settings, self.cache, self.store.get_category)
        self.aggregator = VoteAggregator(self.store, logger=logger, time_fn=time_fn)
        self.ledger = VoteLedger(
            self.store,
            self.settings,
            self.eligibility,
            self.aggregator,
            logger=logger,
        )
        self.queue = VoteJobQueue(
            self.store,
            logger=logger,
            max_retries=self.settings.job_max_retries,
            time_fn=time_fn,
        )
        self.lifecycle = LifecycleManager(
            self.store,
            self.ledger,
            self.aggregator,
            self.eligibility,
            self.queue,
            logger=logger,
        )
        self.merger = MergeReconciler(
            self.store,
            self.ledger,
            self.aggregator,
            self.queue,
            logger=logger,
        )
        self.worker: Optional[JobWorker] = None

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _now(self) -> int:
        return int(self._time_fn())

    def start_worker(self) -> bool:
        if self.settings.job_interval_seconds <= 0:
            return False
        if self.worker is None:
            self.worker = JobWorker(
                self.queue,
                interval_seconds=self.settings.job_interval_seconds,
                logger=self._logger,
            )
        self.worker.start()
        return True

    def shutdown(self) -> None:
        if self.worker is not None:
            self.worker.stop()
        self.store.close()

    # collaborators: voters, categories, topics

    def register_voter(
        self,
        voter_id: Any,
        username: str,
        name: str = "",
        avatar_template: str = "",
        trust_level: Any = 0,
    ) -> Dict[str, Any]:
        vid = coerce_id(voter_id)
        if vid is None:
            return {"error": "invalid voter_id"}
        if not isinstance(username, str) or not username.strip():
            return {"error": "username is required"}
        username = username.strip()
        if len(username) > self.MAX_USERNAME_LEN:
            return {"error": f"username too long (max {self.MAX_USERNAME_LEN} chars)"}
        if not isinstance(name, str) or len(name.strip()) > self.MAX_NAME_LEN:
            return {"error": f"invalid name (max {self.MAX_NAME_LEN} chars)"}
        if not isinstance(avatar_template, str) or len(avatar_template) > self.MAX_AVATAR_LEN:
            return {"error": "invalid avatar_template"}
        if isinstance(trust_level, bool) or not isinstance(trust_level, int):
            return {"error": "trust_level must be an integer"}
        if trust_level < 0 or trust_level > MAX_TRUST_LEVEL:
            return {"error": f"trust_level must be between 0 and {MAX_TRUST_LEVEL}"}

        self.store.upsert_voter(
            voter_id=vid,
            username=username,
            name=name.strip(),
            avatar_template=avatar_template.strip(),
            trust_level=trust_level,
            now_ts=self._now(),
        )
        return {
            "ok": True,
            "voter_id": vid,
            "username": username,
            "trust_level": trust_level,
            "vote_limit": self.settings.vote_limit(trust_level),
        }

    def configure_category(
        self,
        category_id: Any,
        name: str = "",
        voting_enabled: Any = False,
        definition_topic_id: Any = None,
    ) -> Dict[str, Any]:
        cid = coerce_id(category_id)
        if cid is None:
            return {"error": "invalid category_id"}
        if not isinstance(name, str) or len(name.strip()) > self.MAX_NAME_LEN:
            return {"error": f"invalid name (max {self.MAX_NAME_LEN} chars)"}
        definition_id = None
        if definition_topic_id not in (None, "", 0):
            definition_id = coerce_id(definition_topic_id)
            if definition_id is None:
                return {"error": "invalid definition_topic_id"}

        enabled = parse_bool(voting_enabled)
        self.store.upsert_category(
            category_id=cid,
            name=name.strip(),
            voting_enabled=enabled,
            definition_topic_id=definition_id,
            now_ts=self._now(),
        )
        self.cache.invalidate()
        return {
            "ok": True,
            "category_id": cid,
            "voting_enabled": enabled,
            "definition_topic_id": definition_id,
        }

    def register_topic(self, topic_id: Any, category_id: Any = None, title: str = "") -> Dict[str, Any]:
        tid = coerce_id(topic_id)
        if tid is None:
            return {"error": "invalid topic_id"}
        cid = None
        if category_id not in (None, ""):
            cid = coerce_id(category_id)
            if cid is None:
                return {"error": "invalid category_id"}
        if not isinstance(title, str) or len(title.strip()) > self.MAX_TITLE_LEN:
            return {"error": f"invalid title (max {self.MAX_TITLE_LEN} chars)"}

        existing = self.store.get_topic(tid)
        if existing and existing.get("category_id") != cid:
            return {"error": "topic exists in another category", "hint": "use voting-recategorize"}

        self.store.upsert_topic(topic_id=tid, category_id=cid, title=title.strip(), now_ts=self._now())
        topic = self.store.get_topic(tid) or {}
        return {
            "ok": True,
            "topic_id": tid,
            "category_id": cid,
            "can_vote": self.eligibility.topic_can_vote(topic),
        }

    def update_topic_status(self, topic_id: Any, status: str, enabled: Any) -> Dict[str, Any]:
        tid = coerce_id(topic_id)
        if tid is None:
            return {"error": "invalid topic_id"}
        if status not in CLOSING_STATUSES:
            return {"error": "invalid status", "valid_statuses": list(CLOSING_STATUSES)}
        flag = "archived" if status == "archived" else "closed"
        enabled = parse_bool(enabled)
        if not self.store.set_topic_flag(tid, flag, enabled, self._now()):
            return {"error": "topic not found"}

        job_id = self.lifecycle.on_topic_status_updated(tid, status, enabled)
        return {"ok": True, "topic_id": tid, "status": status, "enabled": enabled, "job_id": job_id}

    def recategorize_topic(self, topic_id: Any, category_id: Any) -> Dict[str, Any]:
        tid = coerce_id(topic_id)
        if tid is None:
            return {"error": "invalid topic_id"}
        cid = coerce_id(category_id)
        if cid is None:
            return {"error": "invalid category_id"}
        topic = self.store.get_topic(tid)
        if not topic:
            return {"error": "topic not found"}
        if topic.get("category_id") == cid:
            return {"ok": True, "topic_id": tid, "category_id": cid, "job_id": None}

        self.store.set_topic_category(tid, cid, self._now())
        job_id = self.lifecycle.on_topic_recategorized(tid, cid)
        return {"ok": True, "topic_id": tid, "category_id": cid, "job_id": job_id}

    def merge_topics(self, orig_topic_id: Any, dest_topic_id: Any) -> Dict[str, Any]:
        """Merge one topic into another and close the original.

        The merge job is queued ahead of the release job for the original
        topic, so its active votes move to the destination before release.
        """
        orig_id = coerce_id(orig_topic_id)
        dest_id = coerce_id(dest_topic_id)
        if orig_id is None or dest_id is None:
            return {"error": "invalid topic id"}
        if orig_id == dest_id:
            return {"error": "cannot merge a topic into itself"}
        if not self.store.get_topic(orig_id) or not self.store.get_topic(dest_id):
            return {"error": "topic not found"}

        merge_job_id = self.merger.on_topic_merged(orig_id, dest_id)
        self.store.set_topic_flag(orig_id, "closed", True, self._now())
        release_job_id = self.lifecycle.on_topic_status_updated(orig_id, "closed", True)
        return {
            "ok": True,
            "orig_topic_id": orig_id,
            "dest_topic_id": dest_id,
            "merge_job_id": merge_job_id,
            "release_job_id": release_job_id,
        }

    # voting

    def _voter_summaries(self, topic_id: int) -> Optional[List[Dict[str, Any]]]:
        if not self.settings.show_who_voted:
            return None
        voter_ids = self.ledger.who_voted(topic_id, direction=UP, include_archived=True)
        return [
            {
                "id": voter["voter_id"],
                "username": voter["username"],
                "name": voter["name"],
                "avatar_template": voter["avatar_template"],
            }
            for voter in self.store.list_voters(voter_ids)
        ]

    def _vote_response(self, topic_id: Any, outcome: VoteOutcome, is_cast: bool) -> Dict[str, Any]:
        tid = coerce_id(topic_id)
        result: Dict[str, Any] = {
            "ok": True,
            "status": "forbidden" if is_cast and not outcome.recorded else "success",
            "limit_reached": outcome.limit_reached,
            "can_vote": not outcome.limit_reached,
            "vote_limit": outcome.vote_limit,
            "remaining": outcome.remaining,
            "vote_count": outcome.vote_count,
            "up_voters": self._voter_summaries(int(tid)) if tid is not None else None,
        }
        if is_cast:
            result["recorded"] = outcome.recorded
            result["alert"] = outcome.alert
        return result

    def _cast(self, direction: str, voter_id: Any, topic_id: Any) -> Dict[str, Any]:
        try:
            if direction == UP:
                outcome = self.ledger.up_vote(voter_id, topic_id)
            else:
                outcome = self.ledger.down_vote(voter_id, topic_id)
        except InvalidAccess as exc:
            return {"error": str(exc), "status": "forbidden"}
        except NotFound as exc:
            return {"error": str(exc), "status": "not_found"}
        return self._vote_response(topic_id, outcome, is_cast=True)

    def up_vote(self, voter_id: Any, topic_id: Any) -> Dict[str, Any]:
        return self._cast(UP, voter_id, topic_id)

    def down_vote(self, voter_id: Any, topic_id: Any) -> Dict[str, Any]:
        return self._cast("down", voter_id, topic_id)

    def unvote(self, voter_id: Any, topic_id: Any) -> Dict[str, Any]:
        try:
            outcome = self.ledger.unvote(voter_id, topic_id)
        except NotFound as exc:
            return {"error": str(exc), "status": "not_found"}
        return self._vote_response(topic_id, outcome, is_cast=False)

    def who(self, topic_id: Any) -> Dict[str, Any]:
        tid = coerce_id(topic_id)
        if tid is None or not self.store.get_topic(tid):
            return {"error": "topic not found", "status": "not_found"}
        return {"ok": True, "topic_id": tid, "voters": self._voter_summaries(tid)}

    def voted_by(self, voter_id: Any) -> Dict[str, Any]:
        if not self.settings.show_votes_on_profile:
            return {"error": "votes on profile are disabled", "status": "not_found"}
        try:
            topic_ids = self.ledger.voted_topics(voter_id)
        except NotFound as exc:
            return {"error": str(exc), "status": "not_found"}
        return {"ok": True, "voter_id": coerce_id(voter_id), "count": len(topic_ids), "topic_ids": topic_ids}

    def topic_state(self, voter_id: Any, topic_id: Any) -> Dict[str, Any]:
        try:
            state = self.ledger.topic_vote_state(voter_id, topic_id)
        except NotFound as exc:
            return {"error": str(exc), "status": "not_found"}
        return {"ok": True, **state}

    def voter_status(self, voter_id: Any) -> Dict[str, Any]:
        vid = coerce_id(voter_id)
        voter = self.store.get_voter(vid) if vid is not None else None
        if not voter:
            return {"error": "voter not found", "status": "not_found"}
        votes = self.store.get_voter_votes(vid)
        limit = self.ledger.limit_status(voter, votes)
        return {
            "ok": True,
            "voter_id": vid,
            "trust_level": voter["trust_level"],
            "vote_count": limit.votes_used,
            "vote_limit": limit.vote_limit,
            "remaining": limit.remaining,
            "votes_exceeded": limit.limit_reached,
            "alert": limit.alert,
            "votes": votes.to_dict(),
        }

    # maintenance

    def process_jobs(self, max_entries: Any = 10) -> Dict[str, Any]:
        if isinstance(max_entries, bool) or not isinstance(max_entries, int) or max_entries <= 0:
            return {"error": "max_entries must be positive"}
        return self.queue.process(max_entries=max_entries)

    def ensure_consistency(self) -> Dict[str, Any]:
        changed = self.aggregator.recompute_all()
        return {"ok": True, "topics_corrected": changed}

    def prune_jobs(self, retention_days: Any = 30) -> Dict[str, Any]:
        if isinstance(retention_days, bool) or not isinstance(retention_days, int) or retention_days < 1:
            return {"error": "retention_days must be a positive integer"}
        removed = self.queue.prune(retention_days)
        return {"ok": True, "jobs_removed": removed, "retention_days": retention_days}

    def status(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "settings": self.settings.to_dict(),
            "voters": self.store.count_voters(),
            "topics": self.store.count_topics(),
            "total_votes": self.store.count_total_votes(),
            "pending_jobs": self.store.count_jobs_by_status("pending"),
            "failed_jobs": self.store.count_jobs_by_status("failed"),
            "worker_running": bool(self.worker and self.worker.is_running()),
        }
