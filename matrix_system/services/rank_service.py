# matrix_system/services/rank_service.py
"""
Rank state machine.

Once per period, after qualification snapshots exist:
- fail against current rank (for DEMOTION_GRACE_PERIODS consecutive
  periods) → one step down, never below the floor
- otherwise pass against next rank → one step up
- otherwise unchanged

A rank never moves more than one position per period. Every decision is
written to RankHistory, which also makes replays of the same period no-ops.
"""
from typing import List
from sqlalchemy.orm import Session
import logging

from config import Config
from models.member import Member
from models.period import Period
from models.qualification_snapshot import (
    QualificationSnapshot,
    QUALIFICATION_PASS,
    QUALIFICATION_FAIL,
)
from models.rank_history import (
    RankHistory,
    TRANSITION_PROMOTED,
    TRANSITION_DEMOTED,
    TRANSITION_UNCHANGED,
)
from matrix_system.config.ranks import RankDefinition, get_rank_ladder
from matrix_system.errors import RankConfigurationError, UnknownMember
from matrix_system.services.qualification_service import QualificationService

logger = logging.getLogger(__name__)


class RankService:
    """Service for rank transitions and rank lookups."""

    def __init__(self, session: Session):
        self.session = session

    async def getRank(self, member: Member) -> RankDefinition:
        """
        Member's current rank definition.

        Raises:
            RankConfigurationError: rankKey is not on the ladder
        """
        try:
            return get_rank_ladder().get(member.rankKey)
        except RankConfigurationError:
            logger.critical(
                f"RANK CONFIG ALERT: member {member.memberID} references "
                f"unknown rank '{member.rankKey}'"
            )
            raise

    async def applyTransition(self, memberId: int, period: Period) -> RankHistory:
        """
        Apply this period's rank transition for a member. Caller commits.

        Args:
            memberId: Member ID
            period: Period whose qualification drives the transition

        Returns:
            RankHistory row for (member, period)

        Raises:
            UnknownMember: Member not found
            RankConfigurationError: Member's rank is not on the ladder
        """
        existing = self.session.query(RankHistory).filter_by(
            memberID=memberId,
            periodID=period.periodID
        ).first()
        if existing:
            logger.debug(f"Rank transition already applied: member {memberId}, period {period.periodID}")
            return existing

        member = self.session.query(Member).filter_by(
            memberID=memberId
        ).with_for_update().first()
        if member is None:
            raise UnknownMember(f"Member {memberId} not found")

        ladder = get_rank_ladder()
        currentRank = await self.getRank(member)

        qualification = await QualificationService(self.session).evaluate(memberId, period)

        newRank = currentRank
        transition = TRANSITION_UNCHANGED
        notes = None

        if qualification.rankKey != currentRank.rank_key:
            # Snapshot was taken against another rank; never act on stale input
            notes = (
                f"qualification tested {qualification.rankKey}, "
                f"member is {currentRank.rank_key}"
            )
            logger.warning(f"Member {memberId}: {notes}, rank unchanged")

        elif qualification.status == QUALIFICATION_FAIL:
            previousRank = ladder.previous(currentRank.rank_key)
            if previousRank is None:
                notes = "failed at floor rank"
            elif await self._failStreak(memberId, currentRank.rank_key, period) >= self._gracePeriods():
                newRank = previousRank
                transition = TRANSITION_DEMOTED
                notes = ",".join(qualification.reasons)
            else:
                notes = "failed within grace"

        elif qualification.nextRankStatus == QUALIFICATION_PASS:
            newRank = ladder.next(currentRank.rank_key)
            transition = TRANSITION_PROMOTED

        history = RankHistory(
            memberID=memberId,
            periodID=period.periodID,
            previousRank=currentRank.rank_key,
            newRank=newRank.rank_key,
            transition=transition,
            teamSize=qualification.teamSize,
            activeRecruits=qualification.activeRecruitsCount,
            notes=notes
        )
        self.session.add(history)

        if transition != TRANSITION_UNCHANGED:
            member.rankKey = newRank.rank_key
            logger.info(
                f"Member {memberId} rank {transition}: "
                f"{currentRank.rank_key} → {newRank.rank_key} (period {period.periodID})"
            )

        self.session.flush()
        return history

    async def getRankHistory(self, memberId: int) -> List[RankHistory]:
        return self.session.query(RankHistory).filter_by(
            memberID=memberId
        ).order_by(RankHistory.periodID).all()

    async def _failStreak(self, memberId: int, rankKey: str, period: Period) -> int:
        """
        Count consecutive failed snapshots at rankKey, ending with this period.
        """
        snapshots = self.session.query(QualificationSnapshot).join(
            Period, Period.periodID == QualificationSnapshot.periodID
        ).filter(
            QualificationSnapshot.memberID == memberId,
            Period.startsAt <= period.startsAt
        ).order_by(Period.startsAt.desc()).limit(self._gracePeriods()).all()

        streak = 0
        for snapshot in snapshots:
            if snapshot.rankKey != rankKey or snapshot.status != QUALIFICATION_FAIL:
                break
            streak += 1
        return streak

    @staticmethod
    def _gracePeriods() -> int:
        return max(1, int(Config.get(Config.DEMOTION_GRACE_PERIODS, 1)))
