"""FastAPI dependencies resolving the shared orchestrator."""

from __future__ import annotations

from fastapi import Request

from dbcloner.orchestrator import ClonerOrchestrator


def get_orchestrator(request: Request) -> ClonerOrchestrator:
    """The orchestrator created for this application by ``create_app``."""
    return request.app.state.orchestrator


__all__ = ["get_orchestrator"]
