# matrix_system/services/qualification_service.py
"""
Qualification evaluator.

Each period a member is tested twice against the same frozen inputs:
- current rank thresholds (stay qualified)
- next rank thresholds (eligible for promotion)

Every unmet requirement appends its code to reasons; any reason means fail.
There is no partial credit and no weighting.
"""
from typing import Dict, List, Optional
from sqlalchemy.orm import Session
import logging

from models.member import Member, SUBSCRIPTION_ACTIVE
from models.period import Period
from models.qualification_snapshot import (
    QualificationSnapshot,
    QUALIFICATION_PASS,
    QUALIFICATION_FAIL,
    QUALIFICATION_PENDING,
)
from matrix_system.config.ranks import RankDefinition, get_rank_ladder
from matrix_system.errors import UnknownMember
from matrix_system.services.aggregation_service import AggregationService, retention_bp
from matrix_system.services.support_service import SupportService

logger = logging.getLogger(__name__)

# Reason codes, in evaluation order
REASON_ACTIVE_SUBSCRIPTION = "active_subscription"
REASON_MIN_ACTIVE_RECRUITS = "min_active_recruits"
REASON_MIN_TEAM_SIZE = "min_team_size"
REASON_MIN_RETENTION_RATE = "min_retention_rate"
REASON_MIN_SUPPORT_ACTIONS = "min_support_actions"


def check_requirements(rank: RankDefinition, counts: Dict) -> List[str]:
    """
    Test counts against a rank's thresholds.

    Args:
        rank: Rank being tested for
        counts: Dict with subscriptionStatus, activeRecruitsCount, teamSize,
                retentionRateBp, supportActionsCount

    Returns:
        Ordered list of unmet requirement codes (empty = pass)
    """
    reasons = []

    if counts["subscriptionStatus"] != SUBSCRIPTION_ACTIVE:
        reasons.append(REASON_ACTIVE_SUBSCRIPTION)

    if counts["activeRecruitsCount"] < rank.min_active_recruits:
        reasons.append(REASON_MIN_ACTIVE_RECRUITS)

    if counts["teamSize"] < rank.min_team_size:
        reasons.append(REASON_MIN_TEAM_SIZE)

    if counts["retentionRateBp"] < rank.min_retention_bp:
        reasons.append(REASON_MIN_RETENTION_RATE)

    if counts["supportActionsCount"] < rank.min_support_actions:
        reasons.append(REASON_MIN_SUPPORT_ACTIONS)

    return reasons


def requirement_progress(rank: RankDefinition, counts: Dict) -> Dict[str, Dict]:
    """
    Current value against each numeric threshold of a rank.

    Returns:
        {requirement: {"current", "required", "met"}}; retention in basis points
    """
    thresholds = (
        ("active_recruits", "activeRecruitsCount", rank.min_active_recruits),
        ("team_size", "teamSize", rank.min_team_size),
        ("retention_rate", "retentionRateBp", rank.min_retention_bp),
        ("support_actions", "supportActionsCount", rank.min_support_actions),
    )
    return {
        name: {
            "current": counts[key],
            "required": required,
            "met": counts[key] >= required,
        }
        for name, key, required in thresholds
    }


class QualificationService:
    """Service for per-period qualification snapshots."""

    def __init__(self, session: Session):
        self.session = session
        self.aggregation = AggregationService(session)
        self.support = SupportService(session)

    async def evaluate(self, memberId: int, period: Period) -> QualificationSnapshot:
        """
        Evaluate a member for a period and write the snapshot.
        An existing snapshot for the period is returned unchanged. Caller commits.

        Args:
            memberId: Member ID
            period: Period being evaluated

        Returns:
            QualificationSnapshot

        Raises:
            UnknownMember: Member not found
            RankConfigurationError: Member's rank is not on the ladder
        """
        existing = await self.getSnapshot(memberId, period.periodID)
        if existing:
            return existing

        member = self.session.get(Member, memberId)
        if member is None:
            raise UnknownMember(f"Member {memberId} not found")

        ladder = get_rank_ladder()
        currentRank = ladder.get(member.rankKey)
        nextRank = ladder.next(member.rankKey)

        aggregate = await self.aggregation.snapshot(memberId, period.periodID)
        supportCount = await self.support.countForWindow(memberId, period.startsAt, period.endsAt)

        counts = {
            "subscriptionStatus": member.subscriptionStatus,
            "activeRecruitsCount": aggregate.activeRecruitsCount,
            "teamSize": aggregate.teamSize,
            "retentionRateBp": aggregate.retentionRateBp,
            "supportActionsCount": supportCount,
        }

        reasons = check_requirements(currentRank, counts)

        nextReasons = None
        nextStatus = None
        if nextRank is not None:
            nextReasons = check_requirements(nextRank, counts)
            nextStatus = QUALIFICATION_FAIL if nextReasons else QUALIFICATION_PASS

        snapshot = QualificationSnapshot(
            memberID=memberId,
            periodID=period.periodID,
            rankKey=currentRank.rank_key,
            status=QUALIFICATION_FAIL if reasons else QUALIFICATION_PASS,
            reasons=reasons,
            nextRankKey=nextRank.rank_key if nextRank else None,
            nextRankStatus=nextStatus,
            nextRankReasons=nextReasons,
            activeRecruitsCount=aggregate.activeRecruitsCount,
            teamSize=aggregate.teamSize,
            activeTeamCount=aggregate.activeTeamCount,
            retentionRateBp=aggregate.retentionRateBp,
            supportActionsCount=supportCount,
            subscriptionStatus=member.subscriptionStatus
        )
        self.session.add(snapshot)
        self.session.flush()

        logger.debug(
            f"Member {memberId} period {period.periodID}: "
            f"{currentRank.rank_key}={snapshot.status} {reasons}, "
            f"next {snapshot.nextRankKey}={nextStatus}"
        )
        return snapshot

    async def getSnapshot(self, memberId: int, periodId: int) -> Optional[QualificationSnapshot]:
        return self.session.query(QualificationSnapshot).filter_by(
            memberID=memberId,
            periodID=periodId
        ).first()

    async def getHistory(self, memberId: int, limit: int = 10) -> List[QualificationSnapshot]:
        """Most recent snapshots first."""
        return self.session.query(QualificationSnapshot).filter_by(
            memberID=memberId
        ).order_by(QualificationSnapshot.periodID.desc()).limit(limit).all()

    async def previewStatus(self, memberId: int, period: Optional[Period]) -> Dict:
        """
        Live, unpersisted status for the open period.

        Returns:
            Dict shaped like the dashboard qualification_status, status 'pending'
        """
        member = self.session.get(Member, memberId)
        if member is None:
            raise UnknownMember(f"Member {memberId} not found")

        counters = await self.aggregation.getCounters(memberId)
        supportCount = 0
        if period is not None:
            supportCount = await self.support.countForWindow(
                memberId, period.startsAt, period.endsAt
            )

        counts = {
            "subscriptionStatus": member.subscriptionStatus,
            "activeRecruitsCount": counters.activeRecruitsCount,
            "teamSize": counters.teamSize,
            "retentionRateBp": retention_bp(counters.activeTeamCount, counters.teamSize),
            "supportActionsCount": supportCount,
        }

        rank = get_rank_ladder().get(member.rankKey)

        return {
            "status": QUALIFICATION_PENDING,
            "reasons": check_requirements(rank, counts),
            **counts,
        }
