# tests/test_rank_service.py
"""
Tests for the rank state machine driven through period ticks.

Run:
    pytest tests/test_rank_service.py -v
"""
from datetime import timedelta

import pytest

from config import Config
from models import EarningEntry, Member, Period, RankHistory
from models.earning_entry import EARNING_ELIGIBLE, EARNING_PENDING
from models.period import PERIOD_SETTLED
from models.member import SUBSCRIPTION_CANCELED
from models.rank_history import TRANSITION_DEMOTED, TRANSITION_PROMOTED, TRANSITION_UNCHANGED
from matrix_system.errors import RankConfigurationError
from matrix_system.services.commission_service import CommissionService
from matrix_system.services.period_service import PeriodService
from matrix_system.services.qualification_service import QualificationService
from matrix_system.services.rank_service import RankService
from matrix_system.services.support_service import SupportService
from matrix_system.utils.time_machine import timeMachine


async def close_current_period(session):
    """Jump just past the open period's end and tick."""
    service = PeriodService(session)
    period = await service.ensureOpenPeriod()
    timeMachine.setTime(period.endsAt + timedelta(minutes=1))
    result = await service.tick()
    return period, result


async def log_support(session, member, count):
    service = SupportService(session)
    for _ in range(count):
        await service.recordAction(member.memberID, "check_in")


# =============================================================================
# TEST CLASS: promotion
# =============================================================================

class TestPromotion:
    """One step up per period, never more."""

    @pytest.mark.asyncio
    async def test_promotes_one_step_per_period(self, session, add_member):
        """
        TEST: member qualifies for every rank up to gold from the start.

        Verify: starter → bronze in period 1, bronze → silver in period 2.
        """
        member = await add_member()
        for _ in range(5):
            child = await add_member(member)
            await add_member(child)

        await PeriodService(session).ensureOpenPeriod()
        await log_support(session, member, 3)

        first, result = await close_current_period(session)
        assert result["settled"] == [first.periodID]

        session.refresh(member)
        assert member.rankKey == "bronze"

        await log_support(session, member, 3)
        second, _ = await close_current_period(session)

        session.refresh(member)
        assert member.rankKey == "silver"

        history = await RankService(session).getRankHistory(member.memberID)
        assert [(h.previousRank, h.newRank, h.transition) for h in history] == [
            ("starter", "bronze", TRANSITION_PROMOTED),
            ("bronze", "silver", TRANSITION_PROMOTED),
        ]
        assert [h.periodID for h in history] == [first.periodID, second.periodID]

    @pytest.mark.asyncio
    async def test_next_rank_failure_keeps_rank(self, session, add_member):
        member = await add_member()
        await add_member(member)

        await close_current_period(session)

        session.refresh(member)
        assert member.rankKey == "starter"

        history = await RankService(session).getRankHistory(member.memberID)
        assert history[0].transition == TRANSITION_UNCHANGED

    @pytest.mark.asyncio
    async def test_top_rank_stays(self, session, add_member, set_rank):
        member = await add_member()
        for _ in range(5):
            child = await add_member(member)
            await add_member(child)
        set_rank(member, "gold")

        await PeriodService(session).ensureOpenPeriod()
        await log_support(session, member, 3)
        await close_current_period(session)

        session.refresh(member)
        assert member.rankKey == "gold"


# =============================================================================
# TEST CLASS: demotion
# =============================================================================

class TestDemotion:
    """Failing the current rank steps down one rank."""

    @pytest.mark.asyncio
    async def test_demotes_one_step_per_period(self, session, add_member, set_rank):
        member = set_rank(await add_member(), "silver")

        await close_current_period(session)
        session.refresh(member)
        assert member.rankKey == "bronze"

        await close_current_period(session)
        session.refresh(member)
        assert member.rankKey == "starter"

        await close_current_period(session)
        session.refresh(member)
        assert member.rankKey == "starter"

        history = await RankService(session).getRankHistory(member.memberID)
        assert [h.transition for h in history] == [
            TRANSITION_DEMOTED,
            TRANSITION_DEMOTED,
            TRANSITION_UNCHANGED,
        ]
        assert "min_active_recruits" in history[0].notes

    @pytest.mark.asyncio
    async def test_never_below_floor(self, session, add_member):
        member = await add_member(status=SUBSCRIPTION_CANCELED)

        await close_current_period(session)

        session.refresh(member)
        assert member.rankKey == "starter"

        history = await RankService(session).getRankHistory(member.memberID)
        assert history[0].transition == TRANSITION_UNCHANGED
        assert history[0].notes == "failed at floor rank"

    @pytest.mark.asyncio
    async def test_demotion_checked_before_promotion(self, session, add_member, set_rank):
        """A member failing its current rank is never promoted in the same period."""
        member = set_rank(await add_member(status=SUBSCRIPTION_CANCELED), "bronze")

        await close_current_period(session)

        session.refresh(member)
        assert member.rankKey == "starter"

    @pytest.mark.asyncio
    async def test_grace_periods(self, session, add_member, set_rank):
        Config.set(Config.DEMOTION_GRACE_PERIODS, 2)
        member = set_rank(await add_member(), "silver")

        await close_current_period(session)
        session.refresh(member)
        assert member.rankKey == "silver"

        await close_current_period(session)
        session.refresh(member)
        assert member.rankKey == "bronze"

        history = await RankService(session).getRankHistory(member.memberID)
        assert history[0].notes == "failed within grace"
        assert history[1].transition == TRANSITION_DEMOTED


# =============================================================================
# TEST CLASS: safety
# =============================================================================

class TestTransitionSafety:
    """Replays, stale snapshots and broken rank configuration."""

    @pytest.mark.asyncio
    async def test_apply_transition_is_idempotent(self, session, add_member, set_rank):
        member = set_rank(await add_member(), "silver")
        period = await PeriodService(session).ensureOpenPeriod()
        service = RankService(session)

        first = await service.applyTransition(member.memberID, period)
        session.commit()
        second = await service.applyTransition(member.memberID, period)
        session.commit()

        assert first.historyID == second.historyID
        session.refresh(member)
        assert member.rankKey == "bronze"

    @pytest.mark.asyncio
    async def test_stale_snapshot_leaves_rank(self, session, add_member, set_rank):
        member = await add_member()
        period = await PeriodService(session).ensureOpenPeriod()

        await QualificationService(session).evaluate(member.memberID, period)
        session.commit()

        set_rank(member, "bronze")
        history = await RankService(session).applyTransition(member.memberID, period)
        session.commit()

        assert history.transition == TRANSITION_UNCHANGED
        session.refresh(member)
        assert member.rankKey == "bronze"

    @pytest.mark.asyncio
    async def test_get_rank_unknown_key(self, session, add_member, set_rank):
        member = set_rank(await add_member(), "platinum")

        with pytest.raises(RankConfigurationError):
            await RankService(session).getRank(member)

    @pytest.mark.asyncio
    async def test_unconfigured_rank_halts_member_only(self, session, add_member, set_rank):
        """
        TEST: one member references a rank missing from the ladder.

        Verify: the period settles, the member is halted (rank untouched,
        entries still pending), and everyone else is processed.
        """
        sponsor = await add_member()
        recruit = await add_member(sponsor)

        entry = await CommissionService(session).record(
            sponsor.memberID, recruit.memberID, "residual_commission", 1500
        )
        set_rank(sponsor, "platinum")

        period, result = await close_current_period(session)

        assert result["settled"] == [period.periodID]
        session.refresh(period)
        assert period.checkpoint["halted"] == [sponsor.memberID]

        session.refresh(sponsor)
        assert sponsor.rankKey == "platinum"
        assert session.get(EarningEntry, entry.entryID).status == EARNING_PENDING

        assert session.query(RankHistory).filter_by(memberID=sponsor.memberID).count() == 0
        assert session.query(RankHistory).filter_by(memberID=recruit.memberID).count() == 1
        assert session.query(Member).count() == 2

    @pytest.mark.asyncio
    async def test_repaired_rank_settles_halted_entries(self, session, add_member, set_rank):
        """
        TEST: the rank of a halted member is fixed after the period settled.

        Verify: the still-broken member is retried on each tick, and once the
        rank is repaired the pending entry settles against that rank's cap.
        """
        sponsor = await add_member()
        recruit = await add_member(sponsor)
        entry = await CommissionService(session).record(
            sponsor.memberID, recruit.memberID, "residual_commission", 1500
        )
        set_rank(sponsor, "platinum")

        period, _ = await close_current_period(session)
        service = PeriodService(session)

        still_broken = await service.tick()
        assert still_broken["resettled"] == []
        assert session.get(EarningEntry, entry.entryID).status == EARNING_PENDING

        set_rank(sponsor, "starter")
        repaired = await service.tick()

        assert repaired["resettled"] == [sponsor.memberID]
        session.expire_all()
        assert session.get(EarningEntry, entry.entryID).status == EARNING_ELIGIBLE

        period = session.get(Period, period.periodID)
        assert period.status == PERIOD_SETTLED
        assert period.checkpoint["halted"] == [sponsor.memberID]
        assert period.checkpoint["resettled"] == [sponsor.memberID]

        totals = await CommissionService(session).getTotals(sponsor.memberID)
        assert totals[EARNING_PENDING] == 0
        assert totals[EARNING_ELIGIBLE] == 1500

        assert (await service.tick())["resettled"] == []

    @pytest.mark.asyncio
    async def test_resettle_touches_only_halted_members(self, session, add_member):
        sponsor = await add_member()
        recruit = await add_member(sponsor)
        commissions = CommissionService(session)
        entry = await commissions.record(
            sponsor.memberID, recruit.memberID, "residual_commission", 1500
        )

        result = await commissions.resettleHalted(entry.periodID, [recruit.memberID])

        assert result["resolved"] == []
        assert session.get(EarningEntry, entry.entryID).status == EARNING_PENDING
