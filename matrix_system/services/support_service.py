# matrix_system/services/support_service.py
"""
Support action log - counted per period toward qualification.
"""
from datetime import datetime
from typing import List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
import logging

from models.member import Member
from models.support_action import SupportAction, SUPPORT_ACTION_TYPES
from matrix_system.errors import DuplicateEvent, InvalidSupportAction, UnknownMember
from matrix_system.utils.idempotency import check_event, claim_event

logger = logging.getLogger(__name__)


class SupportService:
    """Service for logging and counting sponsor support actions."""

    def __init__(self, session: Session):
        self.session = session

    async def recordAction(
            self,
            memberId: int,
            actionType: str,
            recruitId: Optional[int] = None,
            notes: Optional[str] = None,
            eventKey: Optional[str] = None
    ) -> Optional[SupportAction]:
        """
        Append a support action.

        Args:
            memberId: Sponsor performing the action
            actionType: One of SUPPORT_ACTION_TYPES
            recruitId: Supported recruit (optional)
            notes: Free text
            eventKey: Idempotency key

        Returns:
            Created SupportAction, or the earlier one for a duplicate event

        Raises:
            InvalidSupportAction: Unknown action type
            UnknownMember: Sponsor or recruit not found
        """
        try:
            check_event(self.session, eventKey)
        except DuplicateEvent as e:
            return self.session.get(SupportAction, e.resultRef) if e.resultRef else None

        if actionType not in SUPPORT_ACTION_TYPES:
            raise InvalidSupportAction(
                f"Invalid action_type '{actionType}', valid: {', '.join(SUPPORT_ACTION_TYPES)}"
            )

        if self.session.get(Member, memberId) is None:
            raise UnknownMember(f"Member {memberId} not found")
        if recruitId is not None and self.session.get(Member, recruitId) is None:
            raise UnknownMember(f"Recruit {recruitId} not found")

        try:
            action = SupportAction(
                memberID=memberId,
                recruitID=recruitId,
                actionType=actionType,
                notes=notes
            )
            self.session.add(action)
            self.session.flush()

            claim_event(self.session, eventKey, "support_action.recorded", action.actionID)
            self.session.commit()
        except DuplicateEvent as e:
            return self.session.get(SupportAction, e.resultRef) if e.resultRef else None
        except Exception:
            self.session.rollback()
            raise

        logger.info(f"Support action '{actionType}' logged for member {memberId}")
        return action

    async def countForWindow(self, memberId: int, startsAt: datetime, endsAt: datetime) -> int:
        """Count actions with startsAt <= createdAt < endsAt."""
        return self.session.query(
            func.count(SupportAction.actionID)
        ).filter(
            SupportAction.memberID == memberId,
            SupportAction.createdAt >= startsAt,
            SupportAction.createdAt < endsAt
        ).scalar() or 0

    async def getActions(
            self,
            memberId: int,
            recruitId: Optional[int] = None,
            limit: int = 50
    ) -> List[SupportAction]:
        """Actions logged by memberId, newest first, optionally for one recruit."""
        query = self.session.query(SupportAction).filter(SupportAction.memberID == memberId)
        if recruitId is not None:
            query = query.filter(SupportAction.recruitID == recruitId)

        return query.order_by(
            SupportAction.createdAt.desc(),
            SupportAction.actionID.desc()
        ).limit(limit).all()
