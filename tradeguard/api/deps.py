"""Shared API dependencies."""

import logging

from tradeguard.errors import TradeGuardError
from tradeguard.services.broker import AlpacaBroker, get_broker
from tradeguard.services.narrative import NarrativeClient

logger = logging.getLogger(__name__)


def get_broker_client() -> AlpacaBroker:
    """Broker gateway built from the active credential."""
    return get_broker()


def get_narrative_client() -> NarrativeClient:
    return NarrativeClient()


def get_optional_broker() -> AlpacaBroker | None:
    """Broker gateway, or None when it cannot be built; the caller degrades."""
    try:
        return get_broker()
    except (TradeGuardError, RuntimeError) as e:
        logger.error(f"Broker unavailable: {e}")
        return None
