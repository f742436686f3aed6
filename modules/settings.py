"""Runtime settings for cl-topic-votes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

DEFAULT_TL_VOTE_LIMITS: Tuple[int, ...] = (2, 5, 10, 15, 20)
MAX_TRUST_LEVEL = 4


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False


def parse_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class VotingSettings:
    enabled: bool = True
    allow_down_vote: bool = False
    show_who_voted: bool = True
    show_votes_on_profile: bool = True
    alert_votes_left: int = 1
    tl_vote_limits: Tuple[int, ...] = field(default=DEFAULT_TL_VOTE_LIMITS)
    job_interval_seconds: int = 30
    job_max_retries: int = 5

    def vote_limit(self, trust_level: int) -> int:
        """Vote limit for a trust level; out-of-range levels are clamped."""
        level = min(max(parse_int(trust_level, 0), 0), len(self.tl_vote_limits) - 1)
        return max(0, int(self.tl_vote_limits[level]))

    @classmethod
    def from_options(cls, options: Dict[str, Any]) -> "VotingSettings":
        """Build settings from plugin options, falling back to defaults."""
        limits = tuple(
            max(0, parse_int(options.get(f"voting-tl{level}-vote-limit"), DEFAULT_TL_VOTE_LIMITS[level]))
            for level in range(MAX_TRUST_LEVEL + 1)
        )
        return cls(
            enabled=parse_bool(options.get("voting-enabled", True)),
            allow_down_vote=parse_bool(options.get("voting-allow-down-vote", False)),
            show_who_voted=parse_bool(options.get("voting-show-who-voted", True)),
            show_votes_on_profile=parse_bool(options.get("voting-show-votes-on-profile", True)),
            alert_votes_left=max(0, parse_int(options.get("voting-alert-votes-left"), 1)),
            tl_vote_limits=limits,
            job_interval_seconds=max(0, parse_int(options.get("voting-job-interval"), 30)),
            job_max_retries=max(1, parse_int(options.get("voting-job-max-retries"), 5)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "allow_down_vote": self.allow_down_vote,
            "show_who_voted": self.show_who_voted,
            "show_votes_on_profile": self.show_votes_on_profile,
            "alert_votes_left": self.alert_votes_left,
            "tl_vote_limits": list(self.tl_vote_limits),
            "job_interval_seconds": self.job_interval_seconds,
            "job_max_retries": self.job_max_retries,
        }
