# matrix_system/services/period_service.py
"""
Period lifecycle: open → evaluating → settled.

tick():
    1. open the next period once the latest one has ended
       (the ended period moves to evaluating)
    2. snapshot aggregates for every member
    3. evaluate qualification
    4. apply rank transitions
    5. settle the ledger
    6. stamp settledAt

Steps 2-5 are checkpointed on the Period row. A step with member failures is
not checkpointed and is retried for the remaining members on the next tick.
Members whose rank is not configured are halted: recorded in the checkpoint,
alerted, and skipped by the remaining steps. Once their rank is repaired, a
later tick settles the entries they left pending in the settled period.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
import logging

from config import Config
from models.earning_entry import EarningEntry, EARNING_PENDING
from models.member import Member
from models.period import Period, PERIOD_OPEN, PERIOD_EVALUATING, PERIOD_SETTLED
from matrix_system.errors import RankConfigurationError
from matrix_system.services.aggregation_service import AggregationService
from matrix_system.services.qualification_service import QualificationService
from matrix_system.services.rank_service import RankService
from matrix_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

# Periods are aligned to this Monday 00:00 UTC
PERIOD_EPOCH = datetime(2024, 1, 1)

STEP_SNAPSHOT = "snapshot"
STEP_QUALIFY = "qualify"
STEP_TRANSITION = "transition"
STEP_SETTLE = "settle"

CYCLE_STEPS = (STEP_SNAPSHOT, STEP_QUALIFY, STEP_TRANSITION, STEP_SETTLE)


class PeriodService:
    """Service driving the weekly evaluation and settlement cycle."""

    def __init__(self, session: Session):
        self.session = session

    # ============================================================
    # PERIOD ROWS
    # ============================================================

    @staticmethod
    def periodLength() -> timedelta:
        return timedelta(days=int(Config.get(Config.PERIOD_LENGTH_DAYS, 7)))

    def periodBounds(self, moment: datetime):
        """Start and end of the aligned period containing moment."""
        length = self.periodLength()
        index = (moment - PERIOD_EPOCH) // length
        startsAt = PERIOD_EPOCH + index * length
        return startsAt, startsAt + length

    async def getOpenPeriod(self) -> Optional[Period]:
        return self.session.query(Period).filter_by(
            status=PERIOD_OPEN
        ).order_by(Period.startsAt.desc()).first()

    async def getLatestPeriod(self) -> Optional[Period]:
        return self.session.query(Period).order_by(Period.startsAt.desc()).first()

    async def getPeriod(self, periodId: int) -> Optional[Period]:
        return self.session.get(Period, periodId)

    async def ensureOpenPeriod(self, now: Optional[datetime] = None) -> Period:
        """
        Return the open period, creating the first or next one if needed.

        Args:
            now: Engine time (defaults to timeMachine.now)

        Returns:
            Open Period
        """
        openPeriod = await self.getOpenPeriod()
        if openPeriod:
            return openPeriod

        now = now or timeMachine.now
        latest = await self.getLatestPeriod()

        if latest is None:
            startsAt, endsAt = self.periodBounds(now)
        else:
            startsAt = latest.endsAt
            endsAt = startsAt + self.periodLength()

        return await self._createPeriod(startsAt, endsAt)

    async def _createPeriod(self, startsAt: datetime, endsAt: datetime) -> Period:
        period = Period(
            startsAt=startsAt,
            endsAt=endsAt,
            status=PERIOD_OPEN,
            checkpoint={"steps": [], "halted": [], "resettled": []}
        )
        self.session.add(period)

        try:
            self.session.commit()
        except IntegrityError:
            # Created concurrently; periods are never re-created
            self.session.rollback()
            period = self.session.query(Period).filter_by(startsAt=startsAt).one()
            logger.info(f"Period starting {startsAt} already exists (periodID={period.periodID})")
            return period

        logger.info(f"Period {period.periodID} opened: {startsAt} - {endsAt}")
        return period

    async def rollPeriods(self, now: Optional[datetime] = None) -> List[Period]:
        """
        Close every ended open period and open its successor.

        Returns:
            Periods moved to evaluating
        """
        now = now or timeMachine.now
        closed = []

        current = await self.ensureOpenPeriod(now)

        while current.endsAt <= now:
            current.status = PERIOD_EVALUATING
            self.session.commit()
            closed.append(current)
            logger.info(f"Period {current.periodID} ended, status → evaluating")

            current = await self.ensureOpenPeriod(now)

        return closed

    # ============================================================
    # CYCLE
    # ============================================================

    async def tick(self, now: Optional[datetime] = None) -> Dict:
        """
        Advance the period state machine.

        Returns:
            Statistics dict
        """
        now = now or timeMachine.now
        results = {"opened": 0, "settled": [], "incomplete": None, "resettled": []}

        closed = await self.rollPeriods(now)
        results["opened"] = len(closed)

        evaluating = self.session.query(Period).filter_by(
            status=PERIOD_EVALUATING
        ).order_by(Period.startsAt).all()

        for period in evaluating:
            completed = await self.runCycle(period, now)
            if not completed:
                # Later periods wait: transitions must apply in period order
                results["incomplete"] = period.periodID
                break
            results["settled"].append(period.periodID)

        results["resettled"] = await self.retryHalted()

        return results

    async def retryHalted(self) -> List[int]:
        """
        Settle entries left pending by members halted in settled periods.

        Members whose rank is still not configured stay pending and are
        retried on the next tick.

        Returns:
            Member IDs whose entries were settled
        """
        # Import here to avoid circular dependency
        from matrix_system.services.commission_service import CommissionService

        periodIds = [
            row[0] for row in self.session.query(EarningEntry.periodID).join(
                Period, Period.periodID == EarningEntry.periodID
            ).filter(
                Period.status == PERIOD_SETTLED,
                EarningEntry.status == EARNING_PENDING
            ).distinct().order_by(EarningEntry.periodID).all()
        ]

        commissions = CommissionService(self.session)
        resolved = []

        for periodId in periodIds:
            checkpoint = self._loadCheckpoint(self.session.get(Period, periodId))
            if not checkpoint["halted"]:
                continue

            result = await commissions.resettleHalted(periodId, checkpoint["halted"])
            if not result["resolved"]:
                continue

            checkpoint["resettled"].extend(result["resolved"])
            self._saveCheckpoint(self.session.get(Period, periodId), checkpoint)
            resolved.extend(result["resolved"])

            logger.warning(
                f"Period {periodId}: halted members {result['resolved']} settled late "
                f"({result['eligibleCents']}¢ eligible, {result['cappedCents']}¢ capped)"
            )

        return resolved

    async def runCycle(self, period: Period, now: Optional[datetime] = None) -> bool:
        """
        Run (or resume) the evaluation cycle of one period.

        Returns:
            True if the period is settled
        """
        if period.status == PERIOD_SETTLED:
            logger.info(f"Period {period.periodID} already settled")
            return True

        now = now or timeMachine.now
        periodId = period.periodID
        checkpoint = self._loadCheckpoint(period)

        for step in CYCLE_STEPS:
            if step in checkpoint["steps"]:
                continue

            logger.info(f"Period {periodId}: running step '{step}'")
            errors = await self._runStep(step, period, checkpoint)

            period = self.session.get(Period, periodId)
            if errors:
                self._saveCheckpoint(period, checkpoint)
                logger.warning(
                    f"Period {periodId}: step '{step}' had {errors} errors, "
                    f"will resume on next tick"
                )
                return False

            checkpoint["steps"].append(step)
            self._saveCheckpoint(period, checkpoint)
            logger.info(f"Period {periodId}: step '{step}' complete")

        period.status = PERIOD_SETTLED
        period.settledAt = now
        self.session.commit()

        if checkpoint["halted"]:
            logger.critical(
                f"Period {periodId} settled with halted members: {checkpoint['halted']}"
            )
        logger.info(f"Period {periodId} settled at {now}")
        return True

    async def _runStep(self, step: str, period: Period, checkpoint: Dict) -> int:
        """Run one step; returns the number of retryable errors."""
        if step == STEP_SETTLE:
            # Import here to avoid circular dependency
            from matrix_system.services.commission_service import CommissionService

            result = await CommissionService(self.session).settle(period.periodID)
            for memberId in result["halted"]:
                if memberId not in checkpoint["halted"]:
                    checkpoint["halted"].append(memberId)
            return result["errors"]

        if step == STEP_SNAPSHOT:
            service = AggregationService(self.session)
            action = lambda memberId: service.snapshot(memberId, period.periodID)
        elif step == STEP_QUALIFY:
            service = QualificationService(self.session)
            action = lambda memberId: service.evaluate(memberId, period)
        else:
            service = RankService(self.session)
            action = lambda memberId: service.applyTransition(memberId, period)

        errors = 0
        for memberId in self._memberIds(period):
            if memberId in checkpoint["halted"]:
                continue
            try:
                await action(memberId)
                self.session.commit()
            except RankConfigurationError as e:
                self.session.rollback()
                checkpoint["halted"].append(memberId)
                logger.critical(
                    f"RANK CONFIG ALERT: member {memberId} halted in period "
                    f"{period.periodID} ({step}): {e}"
                )
            except Exception as e:
                self.session.rollback()
                errors += 1
                logger.error(
                    f"Period {period.periodID} step '{step}' failed for member {memberId}: {e}",
                    exc_info=True
                )

        return errors

    def _memberIds(self, period: Period) -> List[int]:
        return [
            row[0] for row in self.session.query(Member.memberID).filter(
                Member.joinedAt < period.endsAt
            ).order_by(Member.memberID).all()
        ]

    @staticmethod
    def _loadCheckpoint(period: Period) -> Dict:
        checkpoint = dict(period.checkpoint or {})
        checkpoint["steps"] = list(checkpoint.get("steps", []))
        checkpoint["halted"] = list(checkpoint.get("halted", []))
        checkpoint["resettled"] = list(checkpoint.get("resettled", []))
        return checkpoint

    def _saveCheckpoint(self, period: Period, checkpoint: Dict) -> None:
        period.checkpoint = {
            "steps": list(checkpoint["steps"]),
            "halted": list(checkpoint["halted"]),
            "resettled": list(checkpoint["resettled"]),
        }
        flag_modified(period, 'checkpoint')
        self.session.commit()
