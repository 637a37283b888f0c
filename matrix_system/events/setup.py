# matrix_system/events/setup.py
"""
Setup Matrix event handlers.
Register all event handlers with the event bus.
"""
import logging

from matrix_system.events.event_bus import eventBus, MatrixEvents
from matrix_system.events.handlers import (
    handle_member_created,
    handle_subscription_changed,
    handle_support_action_recorded,
    handle_commission_trigger,
)

logger = logging.getLogger(__name__)

EVENT_HANDLERS = (
    (MatrixEvents.MEMBER_CREATED, handle_member_created),
    (MatrixEvents.SUBSCRIPTION_CHANGED, handle_subscription_changed),
    (MatrixEvents.SUPPORT_ACTION_RECORDED, handle_support_action_recorded),
    (MatrixEvents.COMMISSION_TRIGGER, handle_commission_trigger),
)


def setup_matrix_event_handlers():
    """
    Register all Matrix event handlers with the event bus.

    This function should be called during engine initialization.
    """
    logger.info("Setting up Matrix event handlers...")

    for event_name, handler in EVENT_HANDLERS:
        eventBus.subscribe(event_name, handler)
        logger.debug(f"Registered handler for {event_name}")

    logger.info("Matrix event handlers registered successfully")


def teardown_matrix_event_handlers():
    """
    Unregister all Matrix event handlers.
    Useful for testing or shutdown.
    """
    logger.info("Tearing down Matrix event handlers...")

    for event_name, handler in EVENT_HANDLERS:
        eventBus.unsubscribe(event_name, handler)

    logger.info("Matrix event handlers unregistered")
