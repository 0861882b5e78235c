"""
BranchArena — explicit fork ancestry for one workflow instance.

Every branch an instance has ever had is one record in an arena indexed by
integer position. A record knows its parent index, the node whose fork
created it, its position in that fork and the fork's generation. The
instance owns the generation counter (``WorkflowInstance.branch_generation``)
and each fork mints ``generation + 1``, so steps of a superseded rework
cycle can never be counted toward the current one.

Steps still store the branch as a string label. New labels are derived
from the arena as ``{parent_label}-{fork_index}_{generation}``:

    main
    main-0_1, main-1_1           first fork
    main-0_1-0_2, main-0_1-1_2   nested fork on branch main-0_1

Labels written before the arena existed (``main-0_k3x9a1`` with a base-36
flow token, or the older ``main-0-k3x9a1``) are parsed once and adopted
into the arena when first seen; nothing else ever parses a label.
"""

import logging
import re
from dataclasses import dataclass

from sqlalchemy import select

from app.models import db
from app.models.workflow import MAIN_BRANCH, WorkflowBranch

logger = logging.getLogger(__name__)

_UNDERSCORE_LABEL = re.compile(r"^(?P<parent>.+)-(?P<index>\d+)_(?P<flow>[a-z0-9]+)$")
_HYPHEN_LABEL = re.compile(r"^(?P<parent>.+)-(?P<index>\d+)-(?P<flow>[a-z0-9]{6,})$")
_BARE_LABEL = re.compile(r"^(?P<parent>.+)-(?P<index>\d+)$")


@dataclass
class Branch:
    index: int
    label: str
    parent_index: int | None = None
    fork_node_id: int | None = None
    fork_index: int | None = None
    generation: int | None = None
    persisted: bool = False

    @property
    def is_root(self) -> bool:
        return self.parent_index is None


def parse_legacy_label(label: str) -> tuple[str, int, int | None] | None:
    """Split a pre-arena label into (parent_label, fork_index, generation).

    Returns None for a root label. The flow token is read as base 36; a
    purely numeric token in the old hyphen format is a fork index, not a
    flow token.
    """
    if not label or label == MAIN_BRANCH:
        return None
    match = _UNDERSCORE_LABEL.match(label)
    if match:
        return match["parent"], int(match["index"]), int(match["flow"], 36)
    match = _HYPHEN_LABEL.match(label)
    if match and not match["flow"].isdigit():
        return match["parent"], int(match["index"]), int(match["flow"], 36)
    match = _BARE_LABEL.match(label)
    if match:
        return match["parent"], int(match["index"]), None
    return None


class BranchArena:
    """In-memory arena for one instance; ``persist()`` writes new records."""

    def __init__(self, instance, records: list[Branch]):
        self.instance = instance
        self._records: list[Branch] = sorted(records, key=lambda b: b.index)
        self._by_label = {b.label: b for b in self._records}
        if MAIN_BRANCH not in self._by_label:
            self._add(parent=None, label=MAIN_BRANCH)

    @classmethod
    def from_instance(cls, instance) -> "BranchArena":
        rows = []
        if instance.id is not None:
            rows = db.session.execute(
                select(WorkflowBranch)
                .where(WorkflowBranch.instance_id == instance.id)
                .order_by(WorkflowBranch.arena_index)
            ).scalars().all()
        records = [
            Branch(
                index=r.arena_index,
                label=r.label,
                parent_index=r.parent_index,
                fork_node_id=r.fork_node_id,
                fork_index=r.fork_index,
                generation=r.generation,
                persisted=True,
            )
            for r in rows
        ]
        return cls(instance, records)

    # ── Lookups ───────────────────────────────────────────────────────

    @property
    def root(self) -> Branch:
        return self._by_label[MAIN_BRANCH]

    def __len__(self):
        return len(self._records)

    def __getitem__(self, index: int) -> Branch:
        return self._records[index]

    def by_label(self, label: str | None) -> Branch:
        """Record for ``label``, adopting legacy labels on first sight."""
        label = label or MAIN_BRANCH
        branch = self._by_label.get(label)
        if branch is not None:
            return branch
        parsed = parse_legacy_label(label)
        if parsed is None:
            logger.warning(
                "Unrecognised branch label %r adopted as a root-level branch", label,
                extra={"instance_id": self.instance.id, "branch_id": label},
            )
            return self._add(parent=None, label=label)
        parent_label, fork_index, generation = parsed
        parent = self.by_label(parent_label)
        return self._add(parent=parent, label=label, fork_index=fork_index, generation=generation)

    def parent_of(self, branch: Branch) -> Branch | None:
        if branch.parent_index is None:
            return None
        return self._records[branch.parent_index]

    def ancestors(self, branch: Branch):
        current = self.parent_of(branch)
        while current is not None:
            yield current
            current = self.parent_of(current)

    def siblings(self, branch: Branch) -> list[Branch]:
        """Other branches created by the same fork as ``branch``."""
        if branch.is_root:
            return []
        return [
            b for b in self._records
            if b.index != branch.index
            and b.parent_index == branch.parent_index
            and b.generation == branch.generation
        ]

    def in_family(self, branch: Branch, family: Branch) -> bool:
        """True if ``branch`` is ``family``, a sibling of it, or a descendant of either."""
        if family.is_root:
            return True
        for candidate in (branch, *self.ancestors(branch)):
            if candidate.parent_index == family.parent_index and candidate.generation == family.generation:
                return True
        return False

    def same_generation(self, label_a: str | None, label_b: str | None) -> bool:
        return self.by_label(label_a).generation == self.by_label(label_b).generation

    # ── Mutation ──────────────────────────────────────────────────────

    def fork(self, parent: Branch, fork_node_id: int, count: int) -> list[Branch]:
        """Mint a new generation and one child branch per fork target."""
        generation = (self.instance.branch_generation or 0) + 1
        while any(f"{parent.label}-{i}_{generation}" in self._by_label for i in range(count)):
            generation += 1
        self.instance.branch_generation = generation
        children = [
            self._add(
                parent=parent,
                label=f"{parent.label}-{i}_{generation}",
                fork_node_id=fork_node_id,
                fork_index=i,
                generation=generation,
            )
            for i in range(count)
        ]
        logger.info(
            "Forked %s into %d branches (generation %d)", parent.label, count, generation,
            extra={
                "event_type": "workflow.forked",
                "instance_id": self.instance.id,
                "node_id": fork_node_id,
                "branch_id": parent.label,
            },
        )
        return children

    def _add(self, parent: Branch | None, label: str, fork_node_id=None, fork_index=None, generation=None) -> Branch:
        branch = Branch(
            index=len(self._records),
            label=label,
            parent_index=parent.index if parent is not None else None,
            fork_node_id=fork_node_id,
            fork_index=fork_index,
            generation=generation,
        )
        self._records.append(branch)
        self._by_label[label] = branch
        return branch

    def new_records(self) -> list[Branch]:
        return [b for b in self._records if not b.persisted]

    def persist(self) -> None:
        """Add unsaved records to the session. The root is only written once a child exists."""
        pending = self.new_records()
        if pending == [self.root]:
            return
        for branch in pending:
            db.session.add(WorkflowBranch(
                instance_id=self.instance.id,
                arena_index=branch.index,
                parent_index=branch.parent_index,
                fork_node_id=branch.fork_node_id,
                fork_index=branch.fork_index,
                generation=branch.generation,
                label=branch.label,
            ))
            branch.persisted = True
