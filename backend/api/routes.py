"""REST API routes for the relay."""

import logging

from fastapi import APIRouter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Injected by main.py at startup
_relay_manager = None


def init_routes(relay_manager) -> None:
    """Inject the relay connection manager into the routes module."""
    global _relay_manager
    _relay_manager = relay_manager


@router.get("/status")
async def get_status():
    """Return relay counters."""
    relay = _relay_manager.relay
    return {
        "sessions": relay.session_count(),
        "pins_in_use": len(relay.registry),
        "connections": _relay_manager.connection_count(),
    }


@router.get("/sessions")
async def list_sessions():
    """Return the live pins and whether each one has been paired."""
    return {
        "sessions": [
            {"pin": s.pin, "paired": s.consumer is not None}
            for s in _relay_manager.relay.sessions()
        ]
    }
