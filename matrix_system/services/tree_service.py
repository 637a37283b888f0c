# matrix_system/services/tree_service.py
"""
Tree store service - members, parent links, depth and subscription status.
The tree is insertion-only: parent and depth never change after creation.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
import logging

from config import Config
from models.member import (
    Member,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_PAST_DUE,
    SUBSCRIPTION_CANCELED,
    SUBSCRIPTION_STATUSES,
)
from matrix_system.config.ranks import get_rank_ladder
from matrix_system.errors import (
    DuplicateEvent,
    InvalidParent,
    InvalidSubscriptionStatus,
    UnknownMember,
)
from matrix_system.services.aggregation_service import AggregationService
from matrix_system.utils.chain_walker import ChainWalker
from matrix_system.utils.idempotency import check_event, claim_event
from matrix_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

# Recruit list filters: subscription states plus the churned / at_risk views
RECRUIT_FILTER_ALL = "all"
RECRUIT_FILTER_CHURNED = "churned"
RECRUIT_FILTER_AT_RISK = "at_risk"

RECRUIT_FILTERS = (
    RECRUIT_FILTER_ALL,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_PAST_DUE,
    RECRUIT_FILTER_CHURNED,
    RECRUIT_FILTER_AT_RISK,
)


class TreeService:
    """Service for recruitment tree structure and member status."""

    def __init__(self, session: Session):
        self.session = session
        self.aggregation = AggregationService(session)

    async def addMember(
            self,
            parentId: Optional[int],
            subscriptionStatus: str = SUBSCRIPTION_ACTIVE,
            joinedAt: Optional[datetime] = None,
            eventKey: Optional[str] = None
    ) -> Member:
        """
        Add a member under parentId (None creates a new tree root).

        Args:
            parentId: Parent member ID or None
            subscriptionStatus: Initial subscription status
            joinedAt: Join time (defaults to engine time)
            eventKey: Idempotency key of the member.created event

        Returns:
            Created member (or the one created by an earlier identical event)

        Raises:
            InvalidParent: Parent missing or max depth exceeded; nothing persisted
            InvalidSubscriptionStatus: Unknown status
        """
        try:
            check_event(self.session, eventKey)
        except DuplicateEvent as e:
            return self.session.get(Member, e.resultRef)

        self._validateStatus(subscriptionStatus)

        depth = 0
        if parentId is not None:
            parent = self.session.get(Member, parentId)
            if parent is None:
                logger.warning(f"addMember rejected: parent {parentId} does not exist")
                raise InvalidParent(f"Parent {parentId} does not exist")

            depth = parent.depth + 1
            maxDepth = Config.get(Config.MAX_TREE_DEPTH, 50)
            if depth > maxDepth:
                logger.warning(
                    f"addMember rejected: depth {depth} under parent {parentId} "
                    f"exceeds max {maxDepth}"
                )
                raise InvalidParent(
                    f"Member under parent {parentId} would have depth {depth} > {maxDepth}"
                )

        try:
            member = Member(
                parentID=parentId,
                depth=depth,
                rankKey=get_rank_ladder().floor().rank_key,
                joinedAt=joinedAt or timeMachine.now,
                subscriptionStatus=subscriptionStatus
            )
            self.session.add(member)
            self.session.flush()

            await self.aggregation.applyMemberAdded(member)
            claim_event(self.session, eventKey, "member.created", member.memberID)

            self.session.commit()
        except DuplicateEvent as e:
            return self.session.get(Member, e.resultRef)
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            f"Member {member.memberID} added under parent {parentId} "
            f"(depth={depth}, status={subscriptionStatus})"
        )
        return member

    async def recordSubscriptionChange(
            self,
            memberId: int,
            newStatus: str,
            eventKey: Optional[str] = None
    ) -> Member:
        """
        Apply a subscription status change. Re-applying the current status is a no-op.

        Raises:
            UnknownMember: Member not found
            InvalidSubscriptionStatus: Unknown status
        """
        try:
            check_event(self.session, eventKey)
        except DuplicateEvent:
            return self.session.get(Member, memberId)

        self._validateStatus(newStatus)

        member = self.session.query(Member).filter_by(
            memberID=memberId
        ).with_for_update().first()

        if member is None:
            raise UnknownMember(f"Member {memberId} not found")

        oldStatus = member.subscriptionStatus

        try:
            if oldStatus != newStatus:
                wasActive = member.isActive
                member.subscriptionStatus = newStatus
                self.session.flush()

                await self.aggregation.applyStatusChange(member, wasActive, member.isActive)

                logger.info(f"Member {memberId} subscription: {oldStatus} → {newStatus}")
            else:
                logger.debug(f"Member {memberId} already {newStatus}, no-op")

            claim_event(self.session, eventKey, "subscription.changed", memberId)
            self.session.commit()
        except DuplicateEvent:
            return self.session.get(Member, memberId)
        except Exception:
            self.session.rollback()
            raise

        return member

    async def getMember(self, memberId: int) -> Member:
        member = self.session.get(Member, memberId)
        if member is None:
            raise UnknownMember(f"Member {memberId} not found")
        return member

    async def getChildren(self, memberId: int) -> List[Member]:
        return self.session.query(Member).filter_by(
            parentID=memberId
        ).order_by(Member.memberID).all()

    async def getUplineChain(self, memberId: int) -> List[Member]:
        member = await self.getMember(memberId)
        return ChainWalker(self.session).get_upline_chain(member)

    async def getRecruits(
            self,
            memberId: int,
            status: Optional[str] = None,
            level: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Downline within the member's eligible depth, with a status summary.

        Past-due recruits are at risk, canceled ones are churned. The summary
        counts the recruits left after filtering.

        Args:
            memberId: Sponsor
            status: One of RECRUIT_FILTERS (None lists everyone)
            level: Only this generation (1 = direct recruits)

        Returns:
            Dict with "recruits" list and "summary" counts

        Raises:
            UnknownMember: Member not found
            InvalidSubscriptionStatus: Unknown status filter
            RankConfigurationError: Member's rank is not configured
        """
        status = status or RECRUIT_FILTER_ALL
        if status not in RECRUIT_FILTERS:
            raise InvalidSubscriptionStatus(
                f"Unknown recruit filter '{status}', expected one of {', '.join(RECRUIT_FILTERS)}"
            )

        member = await self.getMember(memberId)
        eligibleDepth = get_rank_ladder().get(member.rankKey).eligible_depth

        downline = [
            (recruit, recruitLevel)
            for recruit, recruitLevel in ChainWalker(self.session).iter_downline(member, eligibleDepth)
            if (level is None or recruitLevel == level) and self._matchesFilter(recruit, status)
        ]

        recruitCounts = self._countChildren([recruit.memberID for recruit, _ in downline])
        recruits = [
            self.describeRecruit(recruit, recruitLevel, recruitCounts.get(recruit.memberID, 0))
            for recruit, recruitLevel in downline
        ]

        return {
            "recruits": recruits,
            "summary": {
                "total": len(recruits),
                "active": sum(1 for r in recruits if r["subscription_status"] == SUBSCRIPTION_ACTIVE),
                "past_due": sum(1 for r in recruits if r["subscription_status"] == SUBSCRIPTION_PAST_DUE),
                "churned": sum(1 for r in recruits if r["churned"]),
                "at_risk": sum(1 for r in recruits if r["at_risk"]),
            },
        }

    @staticmethod
    def describeRecruit(recruit: Member, level: int, recruitCount: int) -> Dict[str, Any]:
        """Recruit row as shown on the team screens."""
        return {
            "member_id": recruit.memberID,
            "level": level,
            "rank_key": recruit.rankKey,
            "subscription_status": recruit.subscriptionStatus,
            "joined_at": recruit.joinedAt.isoformat() if recruit.joinedAt else None,
            "their_recruits": recruitCount,
            "at_risk": recruit.subscriptionStatus == SUBSCRIPTION_PAST_DUE,
            "churned": recruit.subscriptionStatus == SUBSCRIPTION_CANCELED,
        }

    @staticmethod
    def _matchesFilter(recruit: Member, status: str) -> bool:
        if status == RECRUIT_FILTER_ALL:
            return True
        if status == RECRUIT_FILTER_CHURNED:
            return recruit.subscriptionStatus == SUBSCRIPTION_CANCELED
        if status == RECRUIT_FILTER_AT_RISK:
            return recruit.subscriptionStatus == SUBSCRIPTION_PAST_DUE
        return recruit.subscriptionStatus == status

    def _countChildren(self, memberIds: List[int]) -> Dict[int, int]:
        if not memberIds:
            return {}
        rows = self.session.query(
            Member.parentID, func.count(Member.memberID)
        ).filter(
            Member.parentID.in_(memberIds)
        ).group_by(Member.parentID).all()
        return {parentId: count for parentId, count in rows}

    @staticmethod
    def _validateStatus(status: str) -> None:
        if status not in SUBSCRIPTION_STATUSES:
            raise InvalidSubscriptionStatus(
                f"Unknown subscription status '{status}', "
                f"expected one of {', '.join(SUBSCRIPTION_STATUSES)}"
            )
