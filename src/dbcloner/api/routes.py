"""
HTTP routes of the database cloner.

Every route requires a superuser session (see ``require_superuser``) and
delegates to the shared ClonerOrchestrator. Status responses never contain
credentials.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from dbcloner.api.auth import Session, require_superuser
from dbcloner.api.dependencies import get_orchestrator
from dbcloner.api.schemas import StartCloneRequest, ValidateConnectionRequest
from dbcloner.exceptions import CloneLimitExceededError, InvalidCredentialsError
from dbcloner.models import CloneOptions, CloneStatus, ValidationResult
from dbcloner.orchestrator import ClonerOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_superuser)], tags=["database-cloner"])


@router.post("/start-clone")
async def start_clone(
    body: StartCloneRequest,
    orchestrator: ClonerOrchestrator = Depends(get_orchestrator),
    session: Session = Depends(require_superuser),
) -> dict[str, Any]:
    if body.source is None or body.target is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Both source and target environments are required",
        )
    try:
        options = CloneOptions.from_dict(body.options)
    except (TypeError, ValueError) as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid clone options: {e}",
        ) from e

    try:
        operation_id = await orchestrator.start_clone(body.source, body.target, options)
    except CloneLimitExceededError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message) from e

    logger.info("User %s started clone operation %s", session.user.id, operation_id)
    return {"operationId": operation_id}


@router.get("/clone-status/{operation_id}")
async def clone_status(
    operation_id: str,
    orchestrator: ClonerOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    snapshot = await orchestrator.get_operation_status(operation_id)
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Operation not found")
    return {"status": snapshot.to_dict()}


@router.post("/cancel-clone/{operation_id}")
async def cancel_clone(
    operation_id: str,
    orchestrator: ClonerOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    if not await orchestrator.cancel_operation(operation_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Operation not found or already finished",
        )
    return {"success": True}


@router.post("/validate-connection")
async def validate_connection(
    body: ValidateConnectionRequest,
    orchestrator: ClonerOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    if body.environment is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="An environment is required",
        )
    try:
        result = await orchestrator.validator.validate_connection(
            body.environment,
            require_write=body.require_write,
        )
    except InvalidCredentialsError as e:
        result = ValidationResult(success=False, error=e.message, error_code=e.error_code)
    return {"result": result.to_dict()}


@router.get("/operations")
async def list_operations(
    status_filter: CloneStatus | None = Query(default=None, alias="status"),
    orchestrator: ClonerOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    operations = await orchestrator.list_operations(status_filter)
    return {"operations": [op.to_dict() for op in operations]}


__all__ = ["router"]
