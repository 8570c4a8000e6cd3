# mlm_system/events/setup.py
"""
Setup commission engine event handlers.
Register CRM intake handlers with the event bus.
"""
import logging

from mlm_system.events.event_bus import eventBus, MLMEvents
from mlm_system.events.handlers import (
    handle_sale_recorded,
    handle_points_updated,
    handle_rank_promoted,
)

logger = logging.getLogger(__name__)

_HANDLERS = (
    (MLMEvents.SALE_RECORDED, handle_sale_recorded),
    (MLMEvents.POINTS_UPDATED, handle_points_updated),
    (MLMEvents.RANK_PROMOTED, handle_rank_promoted),
)


def setup_mlm_event_handlers():
    """
    Register all intake handlers with the event bus.

    This function should be called during engine startup.
    """
    logger.info("Setting up MLM event handlers...")

    for event_name, handler in _HANDLERS:
        eventBus.subscribe(event_name, handler)
        logger.debug(f"Registered handler for {event_name}")

    logger.info("MLM event handlers registered successfully")


def teardown_mlm_event_handlers():
    """
    Unregister all intake handlers.
    Useful for testing or shutdown.
    """
    logger.info("Tearing down MLM event handlers...")

    for event_name, handler in _HANDLERS:
        eventBus.unsubscribe(event_name, handler)

    logger.info("MLM event handlers unregistered")
