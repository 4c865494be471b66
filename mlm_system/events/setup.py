# rankcycle/mlm_system/events/setup.py
"""
Register income engine event handlers with the event bus.
"""
import logging

from mlm_system.events.event_bus import eventBus, MLMEvents
from mlm_system.events.handlers import handle_activation_completed, log_income_credited

logger = logging.getLogger(__name__)

HANDLERS = (
    (MLMEvents.ACTIVATION_COMPLETED, handle_activation_completed),
    (MLMEvents.INCOME_CREDITED, log_income_credited),
)


def setup_mlm_event_handlers():
    """Register all handlers. Call once on startup."""
    logger.info("Setting up MLM event handlers...")

    for event_name, handler in HANDLERS:
        eventBus.subscribe(event_name, handler)
        logger.debug(f"Registered handler for {event_name}")

    logger.info("MLM event handlers registered successfully")


def teardown_mlm_event_handlers():
    """Unregister all handlers."""
    logger.info("Tearing down MLM event handlers...")

    for event_name, handler in HANDLERS:
        eventBus.unsubscribe(event_name, handler)

    logger.info("MLM event handlers unregistered")
