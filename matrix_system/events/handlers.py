# matrix_system/events/handlers.py
"""
Event handlers for consumed Matrix events.
Each event runs in its own session; errors stay local to the event.
"""
import logging
from typing import Any, Dict, Optional

from core.db import get_db_session_ctx
from matrix_system.errors import MatrixError
from matrix_system.services.commission_service import CommissionService
from matrix_system.services.support_service import SupportService
from matrix_system.services.tree_service import TreeService

logger = logging.getLogger(__name__)


async def handle_member_created(data: Dict[str, Any]) -> Optional[int]:
    """
    Handle member.created {parent_id, status?, event_id?}.

    Returns:
        New member ID, or None if rejected
    """
    try:
        with get_db_session_ctx() as session:
            member = await TreeService(session).addMember(
                data.get("parent_id"),
                subscriptionStatus=data.get("status", "active"),
                eventKey=data.get("event_id")
            )
            return member.memberID if member else None
    except MatrixError as e:
        logger.warning(f"member.created rejected: {e} (data={data})")
        return None


async def handle_subscription_changed(data: Dict[str, Any]) -> bool:
    """Handle subscription.changed {member_id, status, event_id?}."""
    member_id = data.get("member_id")
    status = data.get("status")

    if member_id is None or not status:
        logger.error(f"subscription.changed missing member_id/status: {data}")
        return False

    try:
        with get_db_session_ctx() as session:
            await TreeService(session).recordSubscriptionChange(
                member_id,
                status,
                eventKey=data.get("event_id")
            )
            return True
    except MatrixError as e:
        logger.warning(f"subscription.changed rejected for member {member_id}: {e}")
        return False


async def handle_support_action_recorded(data: Dict[str, Any]) -> Optional[int]:
    """Handle support_action.recorded {member_id, action_type, recruit_id?, notes?, event_id?}."""
    member_id = data.get("member_id")
    action_type = data.get("action_type")

    if member_id is None or not action_type:
        logger.error(f"support_action.recorded missing member_id/action_type: {data}")
        return None

    try:
        with get_db_session_ctx() as session:
            action = await SupportService(session).recordAction(
                member_id,
                action_type,
                recruitId=data.get("recruit_id"),
                notes=data.get("notes"),
                eventKey=data.get("event_id")
            )
            return action.actionID if action else None
    except MatrixError as e:
        logger.warning(f"support_action.recorded rejected for member {member_id}: {e}")
        return None


async def handle_commission_trigger(data: Dict[str, Any]) -> Optional[int]:
    """
    Handle commission.trigger {beneficiary_id, source_id, source_type, amount_cents, event_id?}.

    Returns:
        Entry ID, or None if the commission was rejected
    """
    required = ("beneficiary_id", "source_id", "source_type", "amount_cents")
    missing = [key for key in required if data.get(key) is None]
    if missing:
        logger.error(f"commission.trigger missing {', '.join(missing)}: {data}")
        return None

    try:
        with get_db_session_ctx() as session:
            entry = await CommissionService(session).record(
                data["beneficiary_id"],
                data["source_id"],
                data["source_type"],
                data["amount_cents"],
                eventKey=data.get("event_id")
            )
            return entry.entryID if entry else None
    except MatrixError as e:
        logger.warning(
            f"commission.trigger rejected for beneficiary {data['beneficiary_id']}: {e}"
        )
        return None
