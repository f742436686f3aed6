#!/usr/bin/env python3
"""cl-topic-votes: bounded up/down voting on discussion topics."""

from __future__ import annotations

import os
import sys
from typing import Any, Dict

# Ensure this script's real directory is on sys.path so that `from modules.X`
# works even when CLN loads the plugin via a symlink in the plugins directory.
sys.path.insert(0, os.path.dirname(os.path.realpath(__file__)))

from pyln.client import Plugin

from modules.settings import DEFAULT_TL_VOTE_LIMITS, VotingSettings, parse_bool, parse_int
from modules.voting_service import VotingService
from modules.voting_store import VotingStore

plugin = Plugin()
service: VotingService | None = None


plugin.add_option(
    name="voting-db-path",
    default="~/.lightning/cl_topic_votes.db",
    description="SQLite path for cl-topic-votes state",
)

plugin.add_option(
    name="voting-enabled",
    default="true",
    description="Allow voting on topics in voting-enabled categories",
)

plugin.add_option(
    name="voting-allow-down-vote",
    default="false",
    description="Allow down-votes in addition to up-votes",
)

plugin.add_option(
    name="voting-show-who-voted",
    default="true",
    description="Include the list of up-voters in vote responses",
)

plugin.add_option(
    name="voting-show-votes-on-profile",
    default="true",
    description="Allow listing the topics a voter has up-voted",
)

plugin.add_option(
    name="voting-alert-votes-left",
    default="1",
    description="Raise the low-votes alert when this many votes or fewer remain",
)

for _level, _limit in enumerate(DEFAULT_TL_VOTE_LIMITS):
    plugin.add_option(
        name=f"voting-tl{_level}-vote-limit",
        default=str(_limit),
        description=f"Number of active votes allowed at trust level {_level}",
    )

plugin.add_option(
    name="voting-job-interval",
    default="30",
    description="Seconds between background reconciliation runs (0 disables)",
)

plugin.add_option(
    name="voting-job-max-retries",
    default="5",
    description="Attempts before a reconciliation job is marked failed",
)


def _logger(message: str, level: str = "info") -> None:
    plugin.log(message, level=level)


def _require_service() -> VotingService:
    if service is None:
        raise RuntimeError("service not initialized")
    return service


@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs: Any) -> None:
    del kwargs

    db_path_opt = str(options.get("voting-db-path") or "~/.lightning/cl_topic_votes.db")
    db_path = os.path.expanduser(db_path_opt)
    if not os.path.isabs(db_path):
        lightning_dir = str(configuration.get("lightning-dir") or os.path.expanduser("~/.lightning"))
        db_path = os.path.join(lightning_dir, db_path)

    settings = VotingSettings.from_options(options)
    store = VotingStore(db_path=db_path, logger=_logger)

    global service
    service = VotingService(store=store, settings=settings, logger=_logger)
    worker_started = service.start_worker()

    plugin.log(
        "cl-topic-votes initialized "
        f"(db_path={db_path}, enabled={settings.enabled}, "
        f"down_votes={settings.allow_down_vote}, worker={worker_started})"
    )


@plugin.subscribe("shutdown")
def on_shutdown(plugin: Plugin, **kwargs: Any) -> None:
    del kwargs
    if service is not None:
        service.shutdown()
    plugin.log("cl-topic-votes stopped")
    sys.exit(0)


@plugin.method("voting-up-vote")
def voting_up_vote(plugin: Plugin, voter_id: int, topic_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().up_vote(voter_id=voter_id, topic_id=topic_id)


@plugin.method("voting-down-vote")
def voting_down_vote(plugin: Plugin, voter_id: int, topic_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().down_vote(voter_id=voter_id, topic_id=topic_id)


@plugin.method("voting-unvote")
def voting_unvote(plugin: Plugin, voter_id: int, topic_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().unvote(voter_id=voter_id, topic_id=topic_id)


@plugin.method("voting-who")
def voting_who(plugin: Plugin, topic_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().who(topic_id=topic_id)


@plugin.method("voting-voted-by")
def voting_voted_by(plugin: Plugin, voter_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().voted_by(voter_id=voter_id)


@plugin.method("voting-topic-state")
def voting_topic_state(plugin: Plugin, voter_id: int, topic_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().topic_state(voter_id=voter_id, topic_id=topic_id)


@plugin.method("voting-voter-status")
def voting_voter_status(plugin: Plugin, voter_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().voter_status(voter_id=voter_id)


@plugin.method("voting-register-voter")
def voting_register_voter(
    plugin: Plugin,
    voter_id: int,
    username: str,
    name: str = "",
    avatar_template: str = "",
    trust_level: int = 0,
) -> Dict[str, Any]:
    del plugin
    return _require_service().register_voter(
        voter_id=voter_id,
        username=username,
        name=name,
        avatar_template=avatar_template,
        trust_level=parse_int(trust_level, -1),
    )


@plugin.method("voting-configure-category")
def voting_configure_category(
    plugin: Plugin,
    category_id: int,
    name: str = "",
    voting_enabled: str = "false",
    definition_topic_id: int = 0,
) -> Dict[str, Any]:
    del plugin
    return _require_service().configure_category(
        category_id=category_id,
        name=name,
        voting_enabled=parse_bool(voting_enabled),
        definition_topic_id=definition_topic_id,
    )


@plugin.method("voting-register-topic")
def voting_register_topic(plugin: Plugin, topic_id: int, category_id: int = 0, title: str = "") -> Dict[str, Any]:
    del plugin
    return _require_service().register_topic(
        topic_id=topic_id,
        category_id=category_id or None,
        title=title,
    )


@plugin.method("voting-topic-status")
def voting_topic_status(plugin: Plugin, topic_id: int, status: str, enabled: str = "true") -> Dict[str, Any]:
    del plugin
    return _require_service().update_topic_status(
        topic_id=topic_id,
        status=status,
        enabled=parse_bool(enabled),
    )


@plugin.method("voting-recategorize")
def voting_recategorize(plugin: Plugin, topic_id: int, category_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().recategorize_topic(topic_id=topic_id, category_id=category_id)


@plugin.method("voting-merge")
def voting_merge(plugin: Plugin, orig_topic_id: int, dest_topic_id: int) -> Dict[str, Any]:
    del plugin
    return _require_service().merge_topics(orig_topic_id=orig_topic_id, dest_topic_id=dest_topic_id)


@plugin.method("voting-process-jobs")
def voting_process_jobs(plugin: Plugin, max_entries: int = 10) -> Dict[str, Any]:
    del plugin
    return _require_service().process_jobs(max_entries=parse_int(max_entries, 10))


@plugin.method("voting-ensure-consistency")
def voting_ensure_consistency(plugin: Plugin) -> Dict[str, Any]:
    del plugin
    return _require_service().ensure_consistency()


@plugin.method("voting-prune-jobs")
def voting_prune_jobs(plugin: Plugin, retention_days: int = 30) -> Dict[str, Any]:
    del plugin
    return _require_service().prune_jobs(retention_days=parse_int(retention_days, 30))


@plugin.method("voting-status")
def voting_status(plugin: Plugin) -> Dict[str, Any]:
    del plugin
    return _require_service().status()


if __name__ == "__main__":
    plugin.run()
