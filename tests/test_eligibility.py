"""Tests for the category eligibility cache and settings."""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from modules.eligibility import CategoryEligibilityCache, VotingEligibility
from modules.settings import VotingSettings


def test_cache_builds_lazily_and_rebuilds_after_invalidate():
    allowed = [1, 3]
    calls = []

    def _loader():
        calls.append(1)
        return list(allowed)

    cache = CategoryEligibilityCache(_loader)
    assert calls == []

    assert cache.is_enabled(1) is True
    assert cache.is_enabled("3") is True
    assert cache.is_enabled(2) is False
    assert len(calls) == 1

    allowed.append(2)
    assert cache.is_enabled(2) is False

    cache.invalidate()
    assert cache.is_enabled(2) is True
    assert cache.rebuilds == 2


def test_cache_rejects_non_ids():
    cache = CategoryEligibilityCache(lambda: [1])
    assert cache.is_enabled(None) is False
    assert cache.is_enabled(True) is False
    assert cache.is_enabled("general") is False


def test_eligibility_rules():
    categories = {
        1: {"category_id": 1, "definition_topic_id": 100},
        2: {"category_id": 2, "definition_topic_id": None},
    }
    settings = VotingSettings(allow_down_vote=False)
    cache = CategoryEligibilityCache(lambda: [1])
    eligibility = VotingEligibility(settings, cache, categories.get)

    topic = {"topic_id": 10, "category_id": 1}
    definition = {"topic_id": 100, "category_id": 1}
    other = {"topic_id": 20, "category_id": 2}
    uncategorized = {"topic_id": 30, "category_id": None}

    assert eligibility.topic_can_vote(topic) is True
    assert eligibility.topic_can_vote(definition) is False
    assert eligibility.topic_can_vote(other) is False
    assert eligibility.topic_can_vote(uncategorized) is False
    assert eligibility.topic_can_down_vote(topic) is False

    settings.allow_down_vote = True
    assert eligibility.can_down_vote(1) is True
    assert eligibility.topic_can_down_vote(topic) is True
    assert eligibility.topic_can_down_vote(definition) is False

    settings.enabled = False
    assert eligibility.can_vote(1) is False
    assert eligibility.can_down_vote(1) is False


def test_settings_vote_limit_by_trust_level():
    settings = VotingSettings()
    assert [settings.vote_limit(level) for level in range(5)] == [2, 5, 10, 15, 20]
    assert settings.vote_limit(9) == 20
    assert settings.vote_limit(-1) == 2


def test_settings_from_options():
    settings = VotingSettings.from_options(
        {
            "voting-enabled": "false",
            "voting-allow-down-vote": "yes",
            "voting-show-who-voted": "0",
            "voting-alert-votes-left": "3",
            "voting-tl1-vote-limit": "7",
            "voting-tl2-vote-limit": "not-a-number",
            "voting-job-interval": "0",
            "voting-job-max-retries": "-4",
        }
    )

    assert settings.enabled is False
    assert settings.allow_down_vote is True
    assert settings.show_who_voted is False
    assert settings.show_votes_on_profile is True
    assert settings.alert_votes_left == 3
    assert settings.tl_vote_limits == (2, 7, 10, 15, 20)
    assert settings.job_interval_seconds == 0
    assert settings.job_max_retries == 1
