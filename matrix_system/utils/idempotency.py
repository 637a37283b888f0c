# matrix_system/utils/idempotency.py
"""
Event idempotency keys.
A key is claimed inside the caller's transaction, so it is only kept when the
event's own mutation commits. A concurrent delivery that loses the race on the
unique key has its transaction rolled back and gets DuplicateEvent.
"""
from typing import Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import logging

from models.processed_event import ProcessedEvent
from matrix_system.errors import DuplicateEvent

logger = logging.getLogger(__name__)


def check_event(session: Session, eventKey: Optional[str]) -> None:
    """
    Raise DuplicateEvent if eventKey was already processed.

    Args:
        session: Database session
        eventKey: Idempotency key (None disables the check)
    """
    if not eventKey:
        return

    existing = session.query(ProcessedEvent).filter_by(eventKey=eventKey).first()
    if existing:
        logger.info(f"Duplicate event absorbed: {eventKey} ({existing.eventType})")
        raise DuplicateEvent(eventKey, existing.resultRef)


def claim_event(
        session: Session,
        eventKey: Optional[str],
        eventType: str,
        resultRef: Optional[int] = None
) -> None:
    """
    Record eventKey as processed (flushes, does not commit).

    Args:
        session: Database session
        eventKey: Idempotency key (None disables recording)
        eventType: Event name for audit
        resultRef: Id of the row produced by the event

    Raises:
        DuplicateEvent: Another delivery claimed eventKey first; the
                        session has been rolled back
    """
    if not eventKey:
        return

    session.add(ProcessedEvent(
        eventKey=eventKey,
        eventType=eventType,
        resultRef=resultRef
    ))

    try:
        session.flush()
    except IntegrityError:
        session.rollback()
        logger.warning(f"Event {eventKey} claimed concurrently, discarding this delivery")
        check_event(session, eventKey)
        raise
