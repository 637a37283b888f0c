# tests/test_period_service.py
"""
Tests for the period scheduler: alignment, rollover, checkpointed
evaluation cycles and crash recovery.

Run:
    pytest tests/test_period_service.py -v
"""
from datetime import datetime, timedelta

import pytest

from config import Config
from models import AggregateSnapshot, EarningEntry, Period, QualificationSnapshot, RankHistory
from models.earning_entry import EARNING_ELIGIBLE
from models.period import PERIOD_EVALUATING, PERIOD_OPEN, PERIOD_SETTLED
from matrix_system.services.commission_service import CommissionService
from matrix_system.services.period_service import PeriodService, CYCLE_STEPS
from matrix_system.services.rank_service import RankService
from matrix_system.utils.time_machine import timeMachine


# =============================================================================
# TEST CLASS: period rows
# =============================================================================

class TestPeriodRows:
    """Creation, alignment and rollover."""

    @pytest.mark.asyncio
    async def test_first_period_is_aligned(self, session):
        period = await PeriodService(session).ensureOpenPeriod()

        assert period.startsAt == datetime(2024, 1, 1)
        assert period.endsAt == datetime(2024, 1, 8)
        assert period.status == PERIOD_OPEN

    @pytest.mark.asyncio
    async def test_custom_period_length(self, session):
        Config.set(Config.PERIOD_LENGTH_DAYS, 14)
        timeMachine.setTime(datetime(2024, 1, 20))

        period = await PeriodService(session).ensureOpenPeriod()

        assert period.startsAt == datetime(2024, 1, 15)
        assert period.endsAt == datetime(2024, 1, 29)

    @pytest.mark.asyncio
    async def test_ensure_open_period_reuses_row(self, session):
        service = PeriodService(session)

        first = await service.ensureOpenPeriod()
        second = await service.ensureOpenPeriod()

        assert first.periodID == second.periodID
        assert session.query(Period).count() == 1

    @pytest.mark.asyncio
    async def test_roll_over_missed_periods(self, session):
        service = PeriodService(session)
        await service.ensureOpenPeriod()

        closed = await service.rollPeriods(datetime(2024, 1, 22, 6, 0))

        assert [p.startsAt.day for p in closed] == [1, 8, 15]
        assert all(p.status == PERIOD_EVALUATING for p in closed)

        periods = session.query(Period).order_by(Period.startsAt).all()
        for earlier, later in zip(periods, periods[1:]):
            assert later.startsAt == earlier.endsAt

        current = await service.getOpenPeriod()
        assert current.startsAt == datetime(2024, 1, 22)

    @pytest.mark.asyncio
    async def test_tick_before_end_does_nothing(self, session):
        service = PeriodService(session)
        await service.ensureOpenPeriod()

        result = await service.tick()

        assert result == {"opened": 0, "settled": [], "incomplete": None, "resettled": []}


# =============================================================================
# TEST CLASS: evaluation cycle
# =============================================================================

class TestCycle:
    """Full snapshot → qualify → transition → settle cycle."""

    @pytest.mark.asyncio
    async def test_full_cycle(self, session, add_member):
        sponsor = await add_member()
        recruit = await add_member(sponsor)
        entry = await CommissionService(session).record(
            sponsor.memberID, recruit.memberID, "residual_commission", 3000
        )

        service = PeriodService(session)
        period = await service.getOpenPeriod()
        timeMachine.setTime(period.endsAt + timedelta(hours=1))

        result = await service.tick()

        assert result["opened"] == 1
        assert result["settled"] == [period.periodID]

        session.refresh(period)
        assert period.status == PERIOD_SETTLED
        assert period.settledAt == timeMachine.now
        assert period.checkpoint["steps"] == list(CYCLE_STEPS)

        assert session.query(AggregateSnapshot).filter_by(periodID=period.periodID).count() == 2
        assert session.query(QualificationSnapshot).filter_by(periodID=period.periodID).count() == 2
        assert session.query(RankHistory).filter_by(periodID=period.periodID).count() == 2
        assert session.get(EarningEntry, entry.entryID).status == EARNING_ELIGIBLE

    @pytest.mark.asyncio
    async def test_members_joining_after_period_are_skipped(self, session, add_member):
        service = PeriodService(session)
        period = await service.ensureOpenPeriod()
        await add_member()

        timeMachine.setTime(period.endsAt + timedelta(minutes=5))
        late = await add_member()

        await service.tick()

        assert session.query(QualificationSnapshot).filter_by(memberID=late.memberID).count() == 0

    @pytest.mark.asyncio
    async def test_events_during_evaluation_land_in_next_period(self, session, add_member):
        sponsor = await add_member()
        recruit = await add_member(sponsor)

        service = PeriodService(session)
        first = await service.ensureOpenPeriod()
        timeMachine.setTime(first.endsAt + timedelta(minutes=1))
        await service.rollPeriods()

        entry = await CommissionService(session).record(
            sponsor.memberID, recruit.memberID, "residual_commission", 500
        )

        assert entry.periodID != first.periodID
        assert (await service.getOpenPeriod()).periodID == entry.periodID

    @pytest.mark.asyncio
    async def test_run_cycle_on_settled_period_is_noop(self, session, add_member):
        await add_member()
        service = PeriodService(session)
        period = await service.ensureOpenPeriod()
        timeMachine.setTime(period.endsAt + timedelta(minutes=1))
        await service.tick()

        assert await service.runCycle(period) is True
        assert session.query(RankHistory).count() == 1

    @pytest.mark.asyncio
    async def test_crash_mid_cycle_resumes(self, session, add_member, set_rank, monkeypatch):
        """
        TEST: rank transition fails for one member on the first tick.

        Verify: the step is not checkpointed, the period stays evaluating,
        and the next tick finishes it with exactly one transition per member.
        """
        first = set_rank(await add_member(), "silver")
        second = set_rank(await add_member(), "silver")

        failures = []
        original = RankService.applyTransition

        async def flaky(self, memberId, period):
            if memberId == second.memberID and not failures:
                failures.append(memberId)
                raise RuntimeError("connection reset")
            return await original(self, memberId, period)

        monkeypatch.setattr(RankService, "applyTransition", flaky)

        service = PeriodService(session)
        period = await service.ensureOpenPeriod()
        timeMachine.setTime(period.endsAt + timedelta(minutes=1))

        result = await service.tick()

        assert result["incomplete"] == period.periodID
        assert result["settled"] == []
        session.refresh(period)
        assert period.status == PERIOD_EVALUATING
        assert period.checkpoint["steps"] == ["snapshot", "qualify"]

        result = await service.tick()

        assert result["settled"] == [period.periodID]
        for member in (first, second):
            session.refresh(member)
            assert member.rankKey == "bronze"
            assert session.query(RankHistory).filter_by(memberID=member.memberID).count() == 1

    @pytest.mark.asyncio
    async def test_later_period_waits_for_earlier(self, session, add_member, monkeypatch):
        await add_member()

        async def broken(self, memberId, periodId):
            raise RuntimeError("disk full")

        from matrix_system.services.aggregation_service import AggregationService
        monkeypatch.setattr(AggregationService, "snapshot", broken)

        service = PeriodService(session)
        await service.ensureOpenPeriod()
        timeMachine.setTime(datetime(2024, 1, 16))

        result = await service.tick()

        assert result["opened"] == 2
        assert result["settled"] == []
        statuses = [p.status for p in session.query(Period).order_by(Period.startsAt).all()]
        assert statuses == [PERIOD_EVALUATING, PERIOD_EVALUATING, PERIOD_OPEN]
        assert session.query(AggregateSnapshot).count() == 0
