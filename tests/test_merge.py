"""Tests for merge reconciliation."""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from modules.settings import VotingSettings
from modules.voting_service import VotingService
from modules.voting_store import VotingStore


def _make_service(tmp_path, **settings_kwargs):
    settings_kwargs.setdefault("allow_down_vote", True)
    store = VotingStore(db_path=str(tmp_path / "votes.db"))
    service = VotingService(store=store, settings=VotingSettings(**settings_kwargs))
    service.configure_category(1, name="Features", voting_enabled=True)
    for topic_id in (10, 11, 12):
        service.register_topic(topic_id, category_id=1, title=f"Feature {topic_id}")
    for voter_id, username in ((1, "alice"), (2, "bob"), (3, "carol"), (4, "dave")):
        service.register_voter(voter_id, username, trust_level=2)
    return service


def _count(service, topic_id):
    return service.store.get_topic(topic_id)["vote_count"]


def test_merge_moves_and_collapses_up_votes(tmp_path):
    service = _make_service(tmp_path)
    service.ledger.up_vote(1, 10)
    service.ledger.up_vote(2, 10)
    service.ledger.up_vote(2, 11)

    result = service.merger.merge(10, 11)
    assert result["moved"] == 1
    assert result["dropped"] == 1

    assert service.store.get_voter_votes(1).active_up.sorted() == [11]
    assert service.store.get_voter_votes(2).active_up.sorted() == [11]
    assert _count(service, 10) == 0
    assert _count(service, 11) == 2


def test_merge_whole_topic_keeps_every_voter(tmp_path):
    service = _make_service(tmp_path)
    service.ledger.up_vote(1, 10)
    service.ledger.up_vote(2, 11)
    service.ledger.up_vote(3, 10)
    service.ledger.up_vote(3, 11)

    service.merger.merge(10, 11)

    assert service.store.get_voter_votes(1).active_up.sorted() == [11]
    assert service.store.get_voter_votes(2).active_up.sorted() == [11]
    assert service.store.get_voter_votes(3).active_up.sorted() == [11]
    assert service.store.get_voter_votes(4).active_up.sorted() == []
    assert _count(service, 10) == 0
    assert _count(service, 11) == 3


def test_merge_handles_down_votes_with_down_sets(tmp_path):
    service = _make_service(tmp_path)
    service.ledger.down_vote(1, 10)
    service.ledger.down_vote(2, 10)
    service.ledger.down_vote(2, 11)
    service.ledger.up_vote(3, 11)

    service.merger.merge(10, 11)

    alice = service.store.get_voter_votes(1)
    assert alice.active_down.sorted() == [11]
    assert alice.active_up.sorted() == []
    bob = service.store.get_voter_votes(2)
    assert bob.active_down.sorted() == [11]
    assert bob.active_up.sorted() == []
    assert _count(service, 10) == 0
    assert _count(service, 11) == -1


def test_merge_conserves_distinct_voters_per_direction(tmp_path):
    service = _make_service(tmp_path)
    service.ledger.up_vote(1, 10)
    service.ledger.up_vote(2, 10)
    service.ledger.up_vote(2, 11)
    service.ledger.down_vote(3, 10)
    service.ledger.down_vote(4, 11)
    service.ledger.down_vote(4, 10)

    up_voters = set(service.ledger.who_voted(10)) | set(service.ledger.who_voted(11))
    down_voters = set(service.ledger.who_voted(10, "down")) | set(service.ledger.who_voted(11, "down"))

    service.merger.merge(10, 11)

    tally_orig = service.store.tally_topic(10)
    tally_dest = service.store.tally_topic(11)
    assert tally_orig["up"] + tally_dest["up"] == len(up_voters)
    assert tally_orig["down"] + tally_dest["down"] == len(down_voters)
    assert _count(service, 11) == len(up_voters) - len(down_voters)


def test_merge_preserves_vote_usage(tmp_path):
    service = _make_service(tmp_path)
    service.ledger.up_vote(1, 10)
    service.ledger.up_vote(1, 12)

    service.merger.merge(10, 11)

    votes = service.store.get_voter_votes(1)
    assert votes.active_up.sorted() == [11, 12]
    assert votes.active_count == 2


def test_merge_without_voters_only_recomputes(tmp_path):
    service = _make_service(tmp_path)
    service.store.set_topic_vote_count(10, 5, 0)

    result = service.merger.merge(10, 11)
    assert result["moved"] == 0
    assert result["dropped"] == 0
    assert _count(service, 10) == 0
    assert _count(service, 11) == 0


def test_merge_into_missing_topic_is_skipped(tmp_path):
    service = _make_service(tmp_path)
    service.ledger.up_vote(1, 10)

    result = service.merger.merge(10, 999)
    assert result["topic_missing"] is True
    assert service.store.get_voter_votes(1).active_up.sorted() == [10]


def test_merge_topics_runs_merge_before_release(tmp_path):
    service = _make_service(tmp_path)
    service.ledger.up_vote(1, 10)
    service.ledger.up_vote(2, 10)
    service.ledger.up_vote(2, 11)

    result = service.merge_topics(10, 11)
    assert result["ok"] is True
    assert service.store.get_topic(10)["closed"] == 1
    assert service.store.get_job(result["merge_job_id"])["job_type"] == "merge"
    assert service.store.get_job(result["release_job_id"])["job_type"] == "release"

    # one job per topic per pass: merge first, then release
    first = service.process_jobs()
    assert first["processed"] == 1
    assert service.store.get_job(result["merge_job_id"])["status"] == "done"
    assert service.store.get_job(result["release_job_id"])["status"] == "pending"

    service.process_jobs()
    assert service.store.get_job(result["release_job_id"])["status"] == "done"

    for voter_id in (1, 2):
        votes = service.store.get_voter_votes(voter_id)
        assert votes.active_up.sorted() == [11]
        assert votes.archived_up.sorted() == []
    assert _count(service, 10) == 0
    assert _count(service, 11) == 2


def test_merge_topics_validates_input(tmp_path):
    service = _make_service(tmp_path)

    assert "error" in service.merge_topics(10, 10)
    assert "error" in service.merge_topics(10, 999)
    assert "error" in service.merge_topics("x", 11)


def test_merge_keeps_existing_opposite_vote_on_dest(tmp_path):
    service = _make_service(tmp_path)
    service.ledger.up_vote(1, 10)
    service.ledger.down_vote(1, 11)
    service.ledger.down_vote(2, 10)
    service.ledger.up_vote(2, 11)

    result = service.merger.merge(10, 11)
    assert result["moved"] == 0
    assert result["dropped"] == 2

    alice = service.store.get_voter_votes(1)
    assert alice.active_up.sorted() == []
    assert alice.active_down.sorted() == [11]
    bob = service.store.get_voter_votes(2)
    assert bob.active_up.sorted() == [11]
    assert bob.active_down.sorted() == []
    for votes in (alice, bob):
        assert not (set(votes.active_up) & set(votes.active_down))
        assert votes.active_count == 1
    assert _count(service, 10) == 0
    assert _count(service, 11) == 0
