"""Singleton providers for FastAPI ``Depends()``."""
from __future__ import annotations

from typing import Optional

from fileforge.conversion_engine.events.event_relay import EventRelay
from fileforge.conversion_engine.services.orchestration_service import ConversionOrchestrator
from fileforge.conversion_engine.storage import StorageProvider, get_storage_provider

# Initialised at first use so importing the app never touches storage.
_storage: Optional[StorageProvider] = None
_orchestrator: Optional[ConversionOrchestrator] = None
_event_relay: Optional[EventRelay] = None


def get_storage() -> StorageProvider:
    global _storage
    if _storage is None:
        _storage = get_storage_provider()
    return _storage


def get_orchestrator() -> ConversionOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ConversionOrchestrator(get_storage())
    return _orchestrator


def get_event_relay() -> EventRelay:
    """Relay feeding worker events from the outbox to the orchestrator's bus."""
    global _event_relay
    if _event_relay is None:
        _event_relay = EventRelay(get_orchestrator().event_bus)
    return _event_relay
