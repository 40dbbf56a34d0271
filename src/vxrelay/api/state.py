"""
Shared state accessors for the API server.

Avoids circular imports between api/app.py and api/endpoints/*.
The app module sets these references during startup; endpoint modules
read them via the getters.
"""

from fastapi import HTTPException

_orchestrator = None
_fleet = None


def set_orchestrator(orchestrator):
    global _orchestrator
    _orchestrator = orchestrator


def set_fleet(fleet):
    global _fleet
    _fleet = fleet


def get_orchestrator():
    """Get the tunnel orchestrator, or fail with 503 before startup."""
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return _orchestrator


def get_fleet():
    """Get the fleet manager, or fail with 503 before startup."""
    if _fleet is None:
        raise HTTPException(status_code=503, detail="Fleet manager not initialized")
    return _fleet


def reset():
    """Drop both references (server shutdown)."""
    set_orchestrator(None)
    set_fleet(None)
