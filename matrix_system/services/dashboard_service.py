# matrix_system/services/dashboard_service.py
"""
MatrixDashboardData read model and the team / earnings screens.
Field names match what the mobile dashboard consumes.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
import logging

from config import Config
from models.earning_entry import (
    EarningEntry,
    EARNING_PENDING,
    EARNING_ELIGIBLE,
    EARNING_CAPPED,
    EARNING_PAID,
)
from matrix_system.config.ranks import get_rank_ladder
from matrix_system.errors import UnknownMember
from matrix_system.services.aggregation_service import AggregationService
from matrix_system.services.commission_service import CommissionService
from matrix_system.services.period_service import PeriodService
from matrix_system.services.qualification_service import QualificationService, requirement_progress
from matrix_system.services.support_service import SupportService
from matrix_system.services.tree_service import TreeService
from matrix_system.utils.chain_walker import ChainWalker

logger = logging.getLogger(__name__)


def bp_to_rate(bp: int) -> Decimal:
    """Basis points → fraction with 4 decimal places (7500 → Decimal('0.7500'))."""
    return (Decimal(bp) / Decimal(10000)).quantize(Decimal("0.0001"))


def entry_to_dict(entry: EarningEntry) -> Dict[str, Any]:
    return {
        "source_type": entry.sourceType,
        "amount_cents": entry.amountCents,
        "status": entry.status,
        "created_at": entry.createdAt.isoformat() if entry.createdAt else None,
        "metadata": {
            "entry_id": entry.entryID,
            "source_member_id": entry.sourceMemberID,
            "period_id": entry.periodID,
            "level": entry.level,
        },
    }


class DashboardService:
    """Builds the dashboard payloads for one member."""

    def __init__(self, session: Session):
        self.session = session

    async def getDashboard(self, memberId: int) -> Dict[str, Any]:
        """
        Assemble MatrixDashboardData.

        Args:
            memberId: Member ID

        Returns:
            Dashboard dict

        Raises:
            UnknownMember: Member not found
            RankConfigurationError: Member's rank is not configured
        """
        member = await TreeService(self.session).getMember(memberId)

        ladder = get_rank_ladder()
        currentRank = ladder.get(member.rankKey)
        nextRank = ladder.next(member.rankKey)

        commissions = CommissionService(self.session)
        totals = await commissions.getTotals(memberId)

        openPeriod = await PeriodService(self.session).getOpenPeriod()
        thisPeriodCents = 0
        if openPeriod is not None:
            thisPeriodCents = int(self.session.query(
                func.coalesce(func.sum(EarningEntry.amountCents), 0)
            ).filter(
                EarningEntry.beneficiaryID == memberId,
                EarningEntry.periodID == openPeriod.periodID,
                EarningEntry.status != EARNING_CAPPED
            ).scalar())

        counters = await AggregationService(self.session).getCounters(memberId)

        preview = await QualificationService(self.session).previewStatus(memberId, openPeriod)

        nextRankData = None
        if nextRank is not None:
            nextRankData = nextRank.toPublicDict()
            nextRankData["progress"] = self._progress(nextRank, preview)

        limit = Config.get(Config.RECENT_EARNINGS_LIMIT, 20)
        recent = await commissions.getRecentEntries(memberId, limit)

        return {
            "current_rank": currentRank.toPublicDict(),
            "next_rank": nextRankData,
            "total_earnings_cents": totals[EARNING_ELIGIBLE] + totals[EARNING_PAID],
            "pending_earnings_cents": totals[EARNING_PENDING],
            "this_period_earnings_cents": thisPeriodCents,
            "team_size": counters.teamSize,
            "active_team_count": counters.activeTeamCount,
            "qualification_status": self._qualificationStatus(preview),
            "recent_earnings": [entry_to_dict(entry) for entry in recent],
        }

    @staticmethod
    def _qualificationStatus(preview: Dict) -> Dict[str, Any]:
        return {
            "status": preview["status"],
            "active_recruits_count": preview["activeRecruitsCount"],
            "total_team_size": preview["teamSize"],
            "retention_rate": bp_to_rate(preview["retentionRateBp"]),
            "support_actions_count": preview["supportActionsCount"],
            "reasons": preview["reasons"],
        }

    @staticmethod
    def _progress(rank, preview: Dict) -> Dict[str, Dict]:
        progress = requirement_progress(rank, preview)
        retention = progress["retention_rate"]
        retention["current"] = bp_to_rate(retention["current"])
        retention["required"] = bp_to_rate(retention["required"])
        return progress

    async def getQualificationHistory(self, memberId: int, limit: int = 10) -> List[Dict[str, Any]]:
        """Settled qualification results, newest first (dashboard history list)."""
        snapshots = await QualificationService(self.session).getHistory(memberId, limit)
        periods = PeriodService(self.session)
        history = []
        for snapshot in snapshots:
            period = await periods.getPeriod(snapshot.periodID)
            history.append({
                "period_id": snapshot.periodID,
                "period_start": period.startsAt.isoformat() if period else None,
                "period_end": period.endsAt.isoformat() if period else None,
                "status": snapshot.status,
                "rank_key": snapshot.rankKey,
                "reasons": list(snapshot.reasons or []),
            })
        return history

    # ============================================================
    # TEAM
    # ============================================================

    async def getRecruits(
            self,
            memberId: int,
            status: Optional[str] = None,
            level: Optional[int] = None
    ) -> Dict[str, Any]:
        return await TreeService(self.session).getRecruits(memberId, status, level)

    async def getRecruitDetail(self, memberId: int, recruitId: int) -> Dict[str, Any]:
        """
        One downline member with the sponsor's support log and the earnings
        that member generated for the sponsor.

        Raises:
            UnknownMember: Either member missing, or recruitId is not in
                           memberId's downline
        """
        tree = TreeService(self.session)
        member = await tree.getMember(memberId)
        recruit = await tree.getMember(recruitId)

        level = ChainWalker(self.session).generations_between(member, recruit)
        if level is None:
            raise UnknownMember(f"Member {recruitId} is not in the downline of member {memberId}")

        detail = tree.describeRecruit(recruit, level, len(await tree.getChildren(recruitId)))

        actions = await SupportService(self.session).getActions(memberId, recruitId=recruitId)
        detail["support_history"] = [
            {
                "action_id": action.actionID,
                "action_type": action.actionType,
                "notes": action.notes,
                "created_at": action.createdAt.isoformat() if action.createdAt else None,
            }
            for action in actions
        ]

        entries = await CommissionService(self.session).getEntries(memberId, sourceId=recruitId)
        detail["earnings_history"] = [entry_to_dict(entry) for entry in entries]
        detail["earnings_generated_cents"] = sum(
            entry.amountCents for entry in entries
            if entry.status in (EARNING_ELIGIBLE, EARNING_PAID)
        )

        return detail

    # ============================================================
    # EARNINGS
    # ============================================================

    async def getEarnings(
            self,
            memberId: int,
            periodId: Optional[int] = None,
            status: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Earnings ledger screen: filtered entries plus per-status totals
        of the entries shown.

        Raises:
            UnknownMember: Member not found
            MatrixError: Unknown status filter
        """
        await TreeService(self.session).getMember(memberId)

        entries = await CommissionService(self.session).getEntries(
            memberId, periodId=periodId, status=status
        )

        def total(entryStatus: str) -> int:
            return sum(entry.amountCents for entry in entries if entry.status == entryStatus)

        return {
            "earnings": [entry_to_dict(entry) for entry in entries],
            "summary": {
                "total_pending": total(EARNING_PENDING),
                "total_eligible": total(EARNING_ELIGIBLE),
                "total_capped": total(EARNING_CAPPED),
                "total_paid": total(EARNING_PAID),
                "total_all": sum(entry.amountCents for entry in entries),
            },
        }
