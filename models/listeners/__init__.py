"""
SQLAlchemy Event Listeners Package.

Registers all event listeners for the application.
Import this module once during app startup to activate listeners.

Listeners:
    - ledger_listeners: Append-only protection for the commission ledger
"""
import logging

logger = logging.getLogger(__name__)

_listeners_registered = False


def register_all_listeners():
    """
    Register all event listeners.

    Safe to call multiple times - listeners are registered only once.

    Call this from application startup, e.g.:
        from models.listeners import register_all_listeners
        register_all_listeners()
    """
    global _listeners_registered

    if _listeners_registered:
        logger.debug("Listeners already registered, skipping")
        return

    from models.listeners.ledger_listeners import (
        register_line_item_protection,
        register_obligation_protection
    )

    register_line_item_protection()
    logger.info("Ledger protection listeners registered (CommissionLineItem)")

    register_obligation_protection()
    logger.info("Ledger protection listeners registered (PaymentObligation)")

    _listeners_registered = True
