"""
Tests — fork/join coordination.

Covers:
    - fork into generation-stamped child branches
    - join releases exactly once, on the fork's parent branch
    - aggregate decision and sync leader election
    - sync lock busy / stale takeover, arrivals under a held lock
    - step upsert absorbing a concurrent insert
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from app.core.exceptions import ValidationError
from app.models import db
from app.models.workflow import ActiveStep, WorkflowBranch, WorkflowSyncLock
from app.services import workflow_execution_service as wes
from app.services.workflow import coordinator
from app.services.workflow.policies import LowestUserIdTieBreak, RandomTieBreak, elect_sync_leader
from app.services.workflow.sync_lock import SyncLock


def _step(instance_id, node_id, status="active"):
    return db.session.execute(
        select(ActiveStep)
        .where(
            ActiveStep.instance_id == instance_id,
            ActiveStep.node_id == node_id,
            ActiveStep.status == status,
        )
        .order_by(ActiveStep.id.desc())
    ).scalars().first()


def _forked(scenario):
    instance = wes.start_instance(
        scenario["template"].id, project_id=scenario["project"].id, started_by=scenario["owner"].id,
    )
    result = wes.advance(instance["id"], acting_user_id=scenario["owner"].id)
    return instance["id"], result


class TestFork:
    def test_fork_creates_child_branches(self, parallel_review):
        s = parallel_review()
        instance_id, result = _forked(s)
        assert sorted(st["branch_id"] for st in result["new_steps"]) == ["main-0_1", "main-1_1"]
        assert result["instance"]["has_parallel_paths"] is True
        assert result["instance"]["branch_generation"] == 1

        branches = db.session.execute(
            select(WorkflowBranch).where(WorkflowBranch.instance_id == instance_id).order_by(WorkflowBranch.arena_index)
        ).scalars().all()
        assert [b.label for b in branches] == ["main", "main-0_1", "main-1_1"]
        assert all(b.fork_node_id == s["ids"]["request"] for b in branches[1:])

    def test_parallel_steps_need_step_id(self, parallel_review):
        s = parallel_review()
        instance_id, _ = _forked(s)
        with pytest.raises(ValidationError, match="step_id is required"):
            wes.advance(instance_id, acting_user_id=s["lawyer"].id, decision="approved")


class TestJoin:
    def test_all_approved_releases_once_on_parent(self, parallel_review):
        s = parallel_review()
        ids = s["ids"]
        instance_id, _ = _forked(s)

        first = wes.advance(
            instance_id, step_id=_step(instance_id, ids["legal"]).id,
            acting_user_id=s["lawyer"].id, decision="approved",
        )
        waiting = first["new_steps"][0]
        assert waiting["status"] == "waiting"
        assert waiting["branch_id"] == "main-0_1"
        assert waiting["assigned_user_id"] == s["lawyer"].id
        assert _step(instance_id, ids["join"]) is None

        second = wes.advance(
            instance_id, step_id=_step(instance_id, ids["finance"]).id,
            acting_user_id=s["accountant"].id, decision="approved",
        )
        released = second["new_steps"][0]
        assert released["branch_id"] == "main"
        assert released["aggregate_decision"] == "all_approved"
        # Legal holds the higher role level.
        assert released["assigned_user_id"] == s["lawyer"].id
        assert _step(instance_id, ids["join"], status="waiting") is None
        assert db.session.execute(
            select(func.count(ActiveStep.id)).where(ActiveStep.instance_id == instance_id, ActiveStep.node_id == ids["join"])
        ).scalar_one() == 2

        pending = wes.pending_steps_for(s["lawyer"].id)
        assert [p["node"]["id"] for p in pending] == [ids["join"]]

        done = wes.advance(instance_id, acting_user_id=s["lawyer"].id)
        assert done["instance"]["status"] == "completed"

    def test_lock_rows_do_not_outlive_a_release(self, parallel_review):
        s = parallel_review()
        ids = s["ids"]
        instance_id, _ = _forked(s)
        for node, user in (("legal", "lawyer"), ("finance", "accountant")):
            wes.advance(
                instance_id, step_id=_step(instance_id, ids[node]).id,
                acting_user_id=s[user].id, decision="approved",
            )
        assert db.session.execute(select(func.count(WorkflowSyncLock.id))).scalar_one() == 0

    def test_busy_lock_records_arrival_as_waiting(self, parallel_review):
        s = parallel_review()
        ids = s["ids"]
        instance_id, _ = _forked(s)
        held = SyncLock(instance_id, ids["join"], owner="branch-elsewhere")
        assert held.acquire()

        # Both branches arrive while another event holds the lock.
        for node, user in (("legal", "lawyer"), ("finance", "accountant")):
            result = wes.advance(
                instance_id, step_id=_step(instance_id, ids[node]).id,
                acting_user_id=s[user].id, decision="approved",
            )
            assert [st["status"] for st in result["new_steps"]] == ["waiting"]
            assert result["instance"]["status"] == "active"
        assert _step(instance_id, ids["join"]) is None
        assert db.session.execute(
            select(func.count(ActiveStep.id)).where(
                ActiveStep.instance_id == instance_id,
                ActiveStep.node_id == ids["join"],
                ActiveStep.status == "waiting",
            )
        ).scalar_one() == 2


class TestSyncLeader:
    def test_highest_level_wins(self, make_role, make_user):
        senior = make_user("senior", roles=[make_role("director", level=4)])
        junior = make_user("junior", roles=[make_role("clerk", level=1)])
        assert elect_sync_leader([junior.id, senior.id, None], LowestUserIdTieBreak()) == senior.id

    def test_tie_break(self, make_role, make_user):
        role = make_role("peer", level=2)
        a = make_user("a", roles=[role])
        b = make_user("b", roles=[role])
        assert elect_sync_leader([b.id, a.id], LowestUserIdTieBreak()) == min(a.id, b.id)

        class LastChoice:
            def choice(self, seq):
                return seq[-1]

        assert elect_sync_leader([a.id, b.id], RandomTieBreak(rng=LastChoice())) == max(a.id, b.id)

    def test_no_candidates(self):
        assert elect_sync_leader([None, None], LowestUserIdTieBreak()) is None


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


class TestSyncLock:
    def _instance_and_node(self, parallel_review):
        s = parallel_review()
        instance = wes.start_instance(
            s["template"].id, project_id=s["project"].id, started_by=s["owner"].id,
        )
        return instance["id"], s["ids"]["join"]

    def test_second_holder_is_refused(self, parallel_review):
        instance_id, node_id = self._instance_and_node(parallel_review)
        clock = FakeClock()
        first = SyncLock(instance_id, node_id, owner="branch-a", clock=clock)
        second = SyncLock(instance_id, node_id, owner="branch-b", clock=clock)
        assert first.acquire()
        assert not second.acquire()
        first.release()
        assert second.acquire()
        assert second.held

    def test_stale_lock_is_taken_over(self, parallel_review):
        instance_id, node_id = self._instance_and_node(parallel_review)
        clock = FakeClock()
        abandoned = SyncLock(instance_id, node_id, owner="branch-a", ttl_seconds=30, clock=clock)
        assert abandoned.acquire()

        clock.now += timedelta(seconds=31)
        successor = SyncLock(instance_id, node_id, owner="branch-b", ttl_seconds=30, clock=clock)
        assert successor.acquire()
        row = db.session.execute(select(WorkflowSyncLock)).scalar_one()
        assert row.locked_by == "branch-b"

        successor.release()
        assert db.session.execute(select(func.count(WorkflowSyncLock.id))).scalar_one() == 0


class TestUpsertStep:
    def test_row_inserted_concurrently_is_reactivated(self, parallel_review, monkeypatch):
        s = parallel_review()
        ids = s["ids"]
        instance_id, _ = _forked(s)
        existing = _step(instance_id, ids["request"], status="completed")

        # The first lookup misses the row, as if another event inserted it meanwhile.
        real_find = coordinator._find_step
        lookups = []

        def stale_then_real(*args):
            lookups.append(args)
            return None if len(lookups) == 1 else real_find(*args)

        monkeypatch.setattr(coordinator, "_find_step", stale_then_real)
        step = coordinator.upsert_step(instance_id, ids["request"], "main", assigned_user_id=s["owner"].id)

        assert step.id == existing.id
        assert step.status == "active"
        assert step.assigned_user_id == s["owner"].id
        assert len(lookups) == 2
        assert db.session.execute(
            select(func.count(ActiveStep.id)).where(
                ActiveStep.instance_id == instance_id, ActiveStep.node_id == ids["request"],
            )
        ).scalar_one() == 1
