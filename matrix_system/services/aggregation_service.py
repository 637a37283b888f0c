# matrix_system/services/aggregation_service.py
"""
Aggregation service - materialized team counters.

Counters are running totals adjusted along the ancestor chain when a member
joins or flips between active and inactive, so one event costs O(depth).
Every adjustment is a single relative UPDATE (col = col + n) over the
ancestor ids: the database serializes writers per row and events on
disjoint branches never touch the same rows.
"""
from collections import defaultdict
from typing import Dict, Optional
from sqlalchemy import update
from sqlalchemy.orm import Session
import logging

from models.member import Member
from models.member_aggregate import MemberAggregate
from models.aggregate_snapshot import AggregateSnapshot
from matrix_system.errors import UnknownMember
from matrix_system.utils.chain_walker import ChainWalker

logger = logging.getLogger(__name__)


def retention_bp(activeTeamCount: int, teamSize: int) -> int:
    """active / team in basis points, 0 for an empty team."""
    if teamSize <= 0:
        return 0
    return activeTeamCount * 10000 // teamSize


class AggregationService:
    """Service for maintaining and snapshotting team counters."""

    def __init__(self, session: Session):
        self.session = session
        self.walker = ChainWalker(session)

    # ============================================================
    # EVENT PATH - incremental propagation
    # ============================================================

    async def applyMemberAdded(self, member: Member) -> None:
        """
        Register a new member: zeroed own counters, +1 team size for every
        ancestor, and +1 active counts if the member joins active.
        Caller commits.

        Args:
            member: Freshly flushed member
        """
        self.session.add(MemberAggregate(memberID=member.memberID))

        ancestorIds = self.walker.get_upline_ids(member)
        if ancestorIds:
            values = {"teamSize": MemberAggregate.teamSize + 1}
            if member.isActive:
                values["activeTeamCount"] = MemberAggregate.activeTeamCount + 1

            self._adjust(ancestorIds, values)

            if member.isActive:
                self._adjust(
                    [member.parentID],
                    {"activeRecruitsCount": MemberAggregate.activeRecruitsCount + 1}
                )

        self.session.flush()

        logger.debug(
            f"Member {member.memberID} added: team size +1 for {len(ancestorIds)} ancestors"
        )

    async def applyStatusChange(self, member: Member, wasActive: bool, isActive: bool) -> None:
        """
        Propagate an active/inactive flip to ancestors and the parent.
        No-op when the active flag did not change (past_due ↔ canceled).
        Caller commits.
        """
        if wasActive == isActive:
            return

        delta = 1 if isActive else -1
        ancestorIds = self.walker.get_upline_ids(member)

        if ancestorIds:
            self._adjust(
                ancestorIds,
                {"activeTeamCount": MemberAggregate.activeTeamCount + delta}
            )
            self._adjust(
                [member.parentID],
                {"activeRecruitsCount": MemberAggregate.activeRecruitsCount + delta}
            )

        self.session.flush()

        logger.debug(
            f"Member {member.memberID} active={isActive}: "
            f"active count {delta:+d} for {len(ancestorIds)} ancestors"
        )

    def _adjust(self, memberIds, values: Dict) -> None:
        self.session.execute(
            update(MemberAggregate)
            .where(MemberAggregate.memberID.in_(memberIds))
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )

    # ============================================================
    # READ / SNAPSHOT
    # ============================================================

    async def getCounters(self, memberId: int) -> MemberAggregate:
        """
        Current counters for a member.

        Raises:
            UnknownMember: If the member has no counter row
        """
        counters = self.session.query(MemberAggregate).filter_by(
            memberID=memberId
        ).populate_existing().first()

        if counters is None:
            raise UnknownMember(f"Member {memberId} not found")
        return counters

    async def snapshot(self, memberId: int, periodId: int) -> AggregateSnapshot:
        """
        Freeze current counters for a period.
        Returns the existing snapshot if one was already taken. Caller commits.

        Args:
            memberId: Member ID
            periodId: Period ID

        Returns:
            AggregateSnapshot for (member, period)
        """
        existing = self.session.query(AggregateSnapshot).filter_by(
            memberID=memberId,
            periodID=periodId
        ).first()

        if existing:
            logger.debug(f"Snapshot already exists for member {memberId}, period {periodId}")
            return existing

        counters = await self.getCounters(memberId)

        snapshot = AggregateSnapshot(
            memberID=memberId,
            periodID=periodId,
            teamSize=counters.teamSize,
            activeTeamCount=counters.activeTeamCount,
            activeRecruitsCount=counters.activeRecruitsCount,
            retentionRateBp=retention_bp(counters.activeTeamCount, counters.teamSize)
        )
        self.session.add(snapshot)
        self.session.flush()

        return snapshot

    async def getSnapshot(self, memberId: int, periodId: int) -> Optional[AggregateSnapshot]:
        return self.session.query(AggregateSnapshot).filter_by(
            memberID=memberId,
            periodID=periodId
        ).first()

    # ============================================================
    # REPAIR
    # ============================================================

    async def verify(self, memberId: int) -> bool:
        """
        Compare a member's running counters with a full subtree recount.

        Returns:
            True if counters match the tree
        """
        member = self.session.get(Member, memberId)
        if member is None:
            raise UnknownMember(f"Member {memberId} not found")

        counters = await self.getCounters(memberId)
        recount = self.walker.count_downline(member)

        matches = (
                counters.teamSize == recount["teamSize"]
                and counters.activeTeamCount == recount["activeTeamCount"]
                and counters.activeRecruitsCount == recount["activeRecruitsCount"]
        )
        if not matches:
            logger.warning(
                f"Counter drift for member {memberId}: "
                f"stored=({counters.teamSize}, {counters.activeTeamCount}, "
                f"{counters.activeRecruitsCount}) recount={recount}"
            )
        return matches

    async def rebuild(self) -> Dict[str, int]:
        """
        Recompute every member's counters from the Tree Store.
        Processes members deepest first so each subtree total is final
        before it is added to its parent.

        Returns:
            Statistics dict with checked / corrected counts
        """
        members = self.session.query(Member).order_by(Member.depth.desc()).all()

        team = defaultdict(int)
        active = defaultdict(int)
        recruits = defaultdict(int)

        for member in members:
            if member.parentID is None:
                continue
            team[member.parentID] += team[member.memberID] + 1
            active[member.parentID] += active[member.memberID] + (1 if member.isActive else 0)
            if member.isActive:
                recruits[member.parentID] += 1

        existing = {
            row.memberID: row for row in self.session.query(MemberAggregate).all()
        }

        results = {"checked": 0, "corrected": 0}

        for member in members:
            results["checked"] += 1
            expected = (team[member.memberID], active[member.memberID], recruits[member.memberID])

            row = existing.get(member.memberID)
            if row is None:
                row = MemberAggregate(memberID=member.memberID)
                self.session.add(row)
                actual = None
            else:
                actual = (row.teamSize, row.activeTeamCount, row.activeRecruitsCount)

            if actual != expected:
                row.teamSize, row.activeTeamCount, row.activeRecruitsCount = expected
                results["corrected"] += 1

        self.session.commit()

        logger.info(
            f"Aggregate rebuild complete: checked={results['checked']}, "
            f"corrected={results['corrected']}"
        )
        return results
