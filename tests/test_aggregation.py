# tests/test_aggregation.py
"""
Tests for materialized team counters.

Key principle: after any sequence of joins and status changes, every
member's running counters equal a full recount of its subtree.

Run:
    pytest tests/test_aggregation.py -v
"""
import random

import pytest
from sqlalchemy import update

from models import Member, MemberAggregate
from models.member import SUBSCRIPTION_ACTIVE, SUBSCRIPTION_CANCELED, SUBSCRIPTION_PAST_DUE
from matrix_system.errors import UnknownMember
from matrix_system.services.aggregation_service import AggregationService, retention_bp
from matrix_system.services.period_service import PeriodService
from matrix_system.services.tree_service import TreeService
from matrix_system.utils.chain_walker import ChainWalker


def counters_of(session, member):
    row = session.query(MemberAggregate).filter_by(
        memberID=member.memberID
    ).populate_existing().one()
    return row.teamSize, row.activeTeamCount, row.activeRecruitsCount


# =============================================================================
# TEST CLASS: incremental propagation
# =============================================================================

class TestPropagation:
    """Joins and status flips adjust every ancestor."""

    @pytest.mark.asyncio
    async def test_join_updates_all_ancestors(self, session, add_member):
        root = await add_member()
        child = await add_member(root)
        grandchild = await add_member(child)

        assert counters_of(session, root) == (2, 2, 1)
        assert counters_of(session, child) == (1, 1, 1)
        assert counters_of(session, grandchild) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_inactive_join_counts_team_only(self, session, add_member):
        root = await add_member()
        await add_member(root, status=SUBSCRIPTION_PAST_DUE)

        assert counters_of(session, root) == (1, 0, 0)

    @pytest.mark.asyncio
    async def test_status_flip_both_directions(self, session, add_member):
        root = await add_member()
        child = await add_member(root)
        grandchild = await add_member(child)

        service = TreeService(session)

        await service.recordSubscriptionChange(grandchild.memberID, SUBSCRIPTION_CANCELED)
        assert counters_of(session, root) == (2, 1, 1)
        assert counters_of(session, child) == (1, 0, 0)

        await service.recordSubscriptionChange(grandchild.memberID, SUBSCRIPTION_ACTIVE)
        assert counters_of(session, root) == (2, 2, 1)
        assert counters_of(session, child) == (1, 1, 1)

    @pytest.mark.asyncio
    async def test_inactive_to_inactive_does_not_propagate(self, session, add_member):
        root = await add_member()
        child = await add_member(root, status=SUBSCRIPTION_PAST_DUE)

        await TreeService(session).recordSubscriptionChange(child.memberID, SUBSCRIPTION_CANCELED)

        assert counters_of(session, root) == (1, 0, 0)

    @pytest.mark.asyncio
    async def test_sibling_branches_are_independent(self, session, add_member):
        root = await add_member()
        left = await add_member(root)
        right = await add_member(root)
        await add_member(left)

        assert counters_of(session, left) == (1, 1, 1)
        assert counters_of(session, right) == (0, 0, 0)
        assert counters_of(session, root) == (3, 3, 2)

    @pytest.mark.asyncio
    async def test_random_history_matches_recount(self, session, add_member):
        """
        TEST: 60 random joins and status flips.

        Verify: incremental counters == full subtree recount for every member.
        """
        rng = random.Random(20240103)
        service = TreeService(session)
        statuses = [SUBSCRIPTION_ACTIVE, SUBSCRIPTION_PAST_DUE, SUBSCRIPTION_CANCELED]

        members = [await add_member()]
        for _ in range(60):
            if rng.random() < 0.6:
                parent = rng.choice(members)
                members.append(await add_member(parent, status=rng.choice(statuses)))
            else:
                target = rng.choice(members)
                await service.recordSubscriptionChange(target.memberID, rng.choice(statuses))

        walker = ChainWalker(session)
        for member in members:
            recount = walker.count_downline(member)
            assert counters_of(session, member) == (
                recount["teamSize"],
                recount["activeTeamCount"],
                recount["activeRecruitsCount"],
            ), f"member {member.memberID}"


# =============================================================================
# TEST CLASS: snapshots
# =============================================================================

class TestSnapshot:
    """Period snapshots freeze counters."""

    def test_retention_bp(self):
        assert retention_bp(0, 0) == 0
        assert retention_bp(3, 4) == 7500
        assert retention_bp(1, 3) == 3333
        assert retention_bp(5, 5) == 10000

    @pytest.mark.asyncio
    async def test_leaf_snapshot_has_no_division_by_zero(self, session, add_member):
        leaf = await add_member()
        period = await PeriodService(session).ensureOpenPeriod()

        snapshot = await AggregationService(session).snapshot(leaf.memberID, period.periodID)
        session.commit()

        assert snapshot.teamSize == 0
        assert snapshot.activeTeamCount == 0
        assert snapshot.retentionRateBp == 0

    @pytest.mark.asyncio
    async def test_snapshot_is_taken_once(self, session, add_member):
        root = await add_member()
        await add_member(root)
        period = await PeriodService(session).ensureOpenPeriod()

        service = AggregationService(session)
        first = await service.snapshot(root.memberID, period.periodID)
        session.commit()

        await add_member(root)
        second = await service.snapshot(root.memberID, period.periodID)

        assert second.snapshotID == first.snapshotID
        assert second.teamSize == 1

    @pytest.mark.asyncio
    async def test_snapshot_unknown_member(self, session):
        period = await PeriodService(session).ensureOpenPeriod()

        with pytest.raises(UnknownMember):
            await AggregationService(session).snapshot(123, period.periodID)


# =============================================================================
# TEST CLASS: verify / rebuild
# =============================================================================

class TestRebuild:
    """Drift detection and repair from the tree."""

    @pytest.mark.asyncio
    async def test_verify_detects_drift(self, session, add_member):
        root = await add_member()
        await add_member(root)

        service = AggregationService(session)
        assert await service.verify(root.memberID) is True

        session.execute(
            update(MemberAggregate).where(MemberAggregate.memberID == root.memberID).values(teamSize=42)
        )
        session.commit()

        assert await service.verify(root.memberID) is False

    @pytest.mark.asyncio
    async def test_rebuild_repairs_counters(self, session, add_member):
        root = await add_member()
        child = await add_member(root)
        await add_member(child, status=SUBSCRIPTION_CANCELED)

        session.execute(update(MemberAggregate).values(teamSize=0, activeTeamCount=7, activeRecruitsCount=7))
        session.commit()

        result = await AggregationService(session).rebuild()

        assert result == {"checked": 3, "corrected": 3}
        assert counters_of(session, root) == (2, 1, 1)
        assert counters_of(session, child) == (1, 0, 0)

    @pytest.mark.asyncio
    async def test_rebuild_clean_tree_corrects_nothing(self, session, add_member):
        root = await add_member()
        await add_member(root)

        result = await AggregationService(session).rebuild()

        assert result["corrected"] == 0
        assert session.query(Member).count() == 2
