"""
Pluggable engine policies.

Sync leader tie-break (``WORKFLOW_SYNC_LEADER_TIE_BREAK``):
    random          RandomTieBreak, seeded rng injectable for tests
    lowest_user_id  LowestUserIdTieBreak, deterministic

Rejection strategy on a forked branch (``WORKFLOW_REJECTION_STRATEGY``):
    preserve_progress  route into the downstream sync when one exists and it
                       either has an ``any_rejected`` path or a sibling
                       branch already completed work; hard rollback otherwise
    always_rollback    always cancel the fork family and go back
    prefer_sync        route into the downstream sync whenever one exists

EngineSettings bundles both with the numeric limits and is read from the
Flask config once per call.
"""

import logging
import random
from dataclasses import dataclass

from flask import current_app

from app.services import permission_service

logger = logging.getLogger(__name__)


# ── Sync leader tie-break ────────────────────────────────────────────────


class RandomTieBreak:
    name = "random"

    def __init__(self, rng: random.Random | None = None):
        self._rng = rng or random.Random()

    def choose(self, user_ids: list[int]) -> int:
        return self._rng.choice(sorted(user_ids))


class LowestUserIdTieBreak:
    name = "lowest_user_id"

    def choose(self, user_ids: list[int]) -> int:
        return min(user_ids)


TIE_BREAKS = {
    RandomTieBreak.name: RandomTieBreak,
    LowestUserIdTieBreak.name: LowestUserIdTieBreak,
}


def elect_sync_leader(candidates, tie_break) -> int | None:
    """Highest role level among ``candidates`` wins; equal levels go to ``tie_break``."""
    user_ids = sorted({uid for uid in candidates if uid is not None})
    if not user_ids:
        return None
    levels = {uid: permission_service.role_hierarchy_level(uid) for uid in user_ids}
    top = max(levels.values())
    leaders = [uid for uid in user_ids if levels[uid] == top]
    if len(leaders) == 1:
        return leaders[0]
    return tie_break.choose(leaders)


# ── Rejection strategy ───────────────────────────────────────────────────


@dataclass(frozen=True)
class RejectionContext:
    """What a strategy may look at when a forked branch rejects."""

    has_downstream_sync: bool
    sync_has_rejection_path: bool
    siblings_with_progress: int


class PreserveProgress:
    name = "preserve_progress"

    def route_to_sync(self, ctx: RejectionContext) -> bool:
        return ctx.has_downstream_sync and (ctx.sync_has_rejection_path or ctx.siblings_with_progress > 0)


class AlwaysRollback:
    name = "always_rollback"

    def route_to_sync(self, ctx: RejectionContext) -> bool:
        return False


class PreferSync:
    name = "prefer_sync"

    def route_to_sync(self, ctx: RejectionContext) -> bool:
        return ctx.has_downstream_sync


REJECTION_STRATEGIES = {
    cls.name: cls for cls in (PreserveProgress, AlwaysRollback, PreferSync)
}


# ── Settings ─────────────────────────────────────────────────────────────


@dataclass
class EngineSettings:
    tie_break: object
    rejection_strategy: object
    max_conditional_hops: int = 10
    sync_lock_ttl_seconds: int = 30

    @classmethod
    def from_config(cls, config=None) -> "EngineSettings":
        config = config if config is not None else current_app.config
        tie_name = config.get("WORKFLOW_SYNC_LEADER_TIE_BREAK", RandomTieBreak.name)
        strategy_name = config.get("WORKFLOW_REJECTION_STRATEGY", PreserveProgress.name)
        if tie_name not in TIE_BREAKS:
            raise ValueError(f"Unknown WORKFLOW_SYNC_LEADER_TIE_BREAK: {tie_name!r}")
        if strategy_name not in REJECTION_STRATEGIES:
            raise ValueError(f"Unknown WORKFLOW_REJECTION_STRATEGY: {strategy_name!r}")
        return cls(
            tie_break=TIE_BREAKS[tie_name](),
            rejection_strategy=REJECTION_STRATEGIES[strategy_name](),
            max_conditional_hops=int(config.get("WORKFLOW_MAX_CONDITIONAL_HOPS", 10)),
            sync_lock_ttl_seconds=int(config.get("WORKFLOW_SYNC_LOCK_TTL_SECONDS", 30)),
        )
