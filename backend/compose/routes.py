"""
Compose API routes

Provides REST endpoints for:
- Managing single-service compose files (CRUD + validation)
- Deploying, undeploying and redeploying them through the compose CLI
- Logs, live status, image pulls and environment variables
- Browsing the bundled game server templates

Authentication is handled by the hosting application in front of these routes.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from database import ComposeFile, GameServer
from .compose_service import (
    ComposeDeploymentService,
    ComposeFileNotFound,
    ComposeOperationInProgress,
    ComposeStateError,
    ComposeValidationFailed,
    DeploymentOutcome,
)
from .template_manager import TemplateManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/compose", tags=["compose"])
template_router = APIRouter(prefix="/api/admin/templates", tags=["templates"])


# ==================== Request/Response Models ====================

class ComposeFileCreate(BaseModel):
    """Create compose file request."""
    name: str = Field(..., min_length=1, description="Display name for the compose file")
    content: str = Field(..., min_length=1, description="Docker Compose YAML with exactly one service")
    template_name: Optional[str] = Field(None, description="Template the content was created from")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Valheim",
                "content": "services:\n  valheim:\n    image: lloesche/valheim-server\n    container_name: valheim\n",
                "template_name": "valheim"
            }
        }
    )


class ComposeFileUpdate(BaseModel):
    """Update compose file request (only while not deployed)."""
    name: Optional[str] = None
    content: Optional[str] = None


class UndeployRequest(BaseModel):
    """Undeploy request."""
    remove_volumes: bool = Field(False, description="Also remove named volumes (compose down -v)")


class RedeployRequest(BaseModel):
    """Redeploy request."""
    content: Optional[str] = Field(
        None,
        description="New compose YAML. The container name must stay the same."
    )


class ValidateContentRequest(BaseModel):
    """Validate unsaved compose content."""
    content: str = Field(..., min_length=1)


class EnvironmentUpdate(BaseModel):
    """Environment variables to merge into the service."""
    environment: Dict[str, Any] = Field(..., description="Variables to set; existing variables are kept")


class ValidationResponse(BaseModel):
    valid: bool
    errors: List[str]
    warnings: List[str]
    container_name: Optional[str] = None


class GameServerSummary(BaseModel):
    id: int
    name: str
    container_name: str
    connection_string: str
    status: str
    is_managed: bool


class ComposeFileResponse(BaseModel):
    """Compose file response."""
    id: int
    name: str
    content: str
    container_name: Optional[str]
    status: str
    deployed_at: Optional[str]
    last_error: Optional[str]
    version: int
    validation_warnings: List[str]
    template_name: Optional[str]
    game_server_id: Optional[int]
    created_at: Optional[str]
    updated_at: Optional[str]


class ComposeFileMutationResponse(BaseModel):
    message: str
    compose_file: ComposeFileResponse
    warnings: List[str] = []


class DeploymentResponse(BaseModel):
    message: str
    compose_file: ComposeFileResponse
    output: str
    container_status: Optional[str] = None
    game_server: Optional[GameServerSummary] = None


class ComposeStatusResponse(BaseModel):
    running: bool
    status: str
    error: Optional[str] = None


class LogsResponse(BaseModel):
    logs: str


class PullResponse(BaseModel):
    message: str
    output: str


class EnvironmentResponse(BaseModel):
    environment: Dict[str, Any]


# ==================== Dependencies ====================

_compose_service: Optional[ComposeDeploymentService] = None
_template_manager: Optional[TemplateManager] = None


def set_compose_service(service: ComposeDeploymentService):
    """Set compose deployment service instance (called from main.py)."""
    global _compose_service
    _compose_service = service


def set_template_manager(manager: TemplateManager):
    """Set template manager instance (called from main.py)."""
    global _template_manager
    _template_manager = manager


def get_compose_service() -> ComposeDeploymentService:
    """Get compose deployment service (dependency)."""
    if _compose_service is None:
        raise RuntimeError("ComposeDeploymentService not initialized")
    return _compose_service


def get_template_manager() -> TemplateManager:
    """Get template manager (dependency)."""
    if _template_manager is None:
        raise RuntimeError("TemplateManager not initialized")
    return _template_manager


# ==================== Helpers ====================

def _isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat() + 'Z'


def _compose_file_to_response(compose_file: ComposeFile) -> ComposeFileResponse:
    """Convert compose file model to response."""
    return ComposeFileResponse(
        id=compose_file.id,
        name=compose_file.name,
        content=compose_file.content,
        container_name=compose_file.container_name,
        status=compose_file.status,
        deployed_at=_isoformat(compose_file.deployed_at),
        last_error=compose_file.last_error,
        version=compose_file.version or 1,
        validation_warnings=list(compose_file.validation_warnings or []),
        template_name=compose_file.template_name,
        game_server_id=compose_file.game_server_id,
        created_at=_isoformat(compose_file.created_at),
        updated_at=_isoformat(compose_file.updated_at),
    )


def _game_server_to_summary(game_server: Optional[GameServer]) -> Optional[GameServerSummary]:
    if game_server is None:
        return None
    return GameServerSummary(
        id=game_server.id,
        name=game_server.name,
        container_name=game_server.container_name,
        connection_string=game_server.connection_string,
        status=game_server.status,
        is_managed=bool(game_server.is_managed),
    )


def _validation_failed(e: ComposeValidationFailed) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={
            'message': str(e),
            'errors': list(e.result.errors),
            'warnings': list(e.result.warnings),
        }
    )


def _state_error(e: ComposeStateError) -> HTTPException:
    status_code = 409 if isinstance(e, ComposeOperationInProgress) else 400
    return HTTPException(status_code=status_code, detail=str(e))


def _execution_failed(message: str, error: Optional[str], output: str) -> HTTPException:
    return HTTPException(
        status_code=500,
        detail={'message': message, 'error': error, 'output': output}
    )


def _outcome_to_response(message: str, outcome: DeploymentOutcome) -> DeploymentResponse:
    return DeploymentResponse(
        message=message,
        compose_file=_compose_file_to_response(outcome.compose_file),
        output=outcome.output,
        container_status=outcome.container_status,
        game_server=_game_server_to_summary(outcome.game_server),
    )


# ==================== Compose File Endpoints ====================

@router.get("", response_model=List[ComposeFileResponse])
async def list_compose_files(service: ComposeDeploymentService = Depends(get_compose_service)):
    """List compose files, most recently updated first."""
    try:
        return [_compose_file_to_response(c) for c in service.list_compose_files()]
    except Exception as e:
        logger.error(f"Failed to list compose files: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/validate-content", response_model=ValidationResponse)
async def validate_content(
    request: ValidateContentRequest,
    service: ComposeDeploymentService = Depends(get_compose_service)
):
    """
    Validate compose content without saving it.

    Skips the compose CLI dry run for fast feedback while editing.
    """
    try:
        result = await service.validate_content(request.content)
        return ValidationResponse(**result.to_dict())
    except Exception as e:
        logger.error(f"Failed to validate compose content: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{compose_file_id}", response_model=ComposeFileResponse)
async def get_compose_file(
    compose_file_id: int,
    service: ComposeDeploymentService = Depends(get_compose_service)
):
    """Get compose file by ID."""
    try:
        return _compose_file_to_response(service.get_compose_file(compose_file_id))
    except ComposeFileNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to get compose file: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("", response_model=ComposeFileMutationResponse, status_code=201)
async def create_compose_file(
    request: ComposeFileCreate,
    service: ComposeDeploymentService = Depends(get_compose_service)
):
    """Validate and save a new compose file."""
    try:
        compose_file = await service.create(request.name, request.content, request.template_name)
        return ComposeFileMutationResponse(
            message="Compose file created successfully",
            compose_file=_compose_file_to_response(compose_file),
            warnings=list(compose_file.validation_warnings or []),
        )
    except ComposeValidationFailed as e:
        raise _validation_failed(e)
    except ComposeStateError as e:
        raise _state_error(e)
    except Exception as e:
        logger.error(f"Failed to create compose file: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.put("/{compose_file_id}", response_model=ComposeFileMutationResponse)
async def update_compose_file(
    compose_file_id: int,
    request: ComposeFileUpdate,
    service: ComposeDeploymentService = Depends(get_compose_service)
):
    """Update a compose file. Deployed files must be undeployed or redeployed instead."""
    try:
        compose_file = await service.update(compose_file_id, name=request.name, content=request.content)
        return ComposeFileMutationResponse(
            message="Compose file updated successfully",
            compose_file=_compose_file_to_response(compose_file),
            warnings=list(compose_file.validation_warnings or []),
        )
    except ComposeFileNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ComposeValidationFailed as e:
        raise _validation_failed(e)
    except ComposeStateError as e:
        raise _state_error(e)
    except Exception as e:
        logger.error(f"Failed to update compose file: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/{compose_file_id}")
async def delete_compose_file(
    compose_file_id: int,
    service: ComposeDeploymentService = Depends(get_compose_service)
):
    """Delete a compose file that is not deployed. Its game server is kept."""
    try:
        await service.delete(compose_file_id)
        return {"message": "Compose file deleted successfully"}
    except ComposeFileNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ComposeStateError as e:
        raise _state_error(e)
    except Exception as e:
        logger.error(f"Failed to delete compose file: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{compose_file_id}/validate", response_model=ValidationResponse)
async def validate_compose_file(
    compose_file_id: int,
    service: ComposeDeploymentService = Depends(get_compose_service)
):
    """Re-validate a stored compose file, including the compose CLI dry run."""
    try:
        result = await service.validate_stored(compose_file_id)
        return ValidationResponse(**result.to_dict())
    except ComposeFileNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to validate compose file: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


# ==================== Deployment Endpoints ====================

@router.post("/{compose_file_id}/deploy", response_model=DeploymentResponse)
async def deploy_compose_file(
    compose_file_id: int,
    service: ComposeDeploymentService = Depends(get_compose_service)
):
    """Deploy a compose file (compose up -d)."""
    try:
        outcome = await service.deploy(compose_file_id)
        if not outcome.success:
            raise _execution_failed("Deployment failed", outcome.error, outcome.output)
        return _outcome_to_response("Deployment successful", outcome)
    except HTTPException:
        raise
    except ComposeFileNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ComposeStateError as e:
        raise _state_error(e)
    except Exception as e:
        logger.error(f"Failed to deploy compose file: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{compose_file_id}/undeploy", response_model=DeploymentResponse)
async def undeploy_compose_file(
    compose_file_id: int,
    request: Optional[UndeployRequest] = None,
    service: ComposeDeploymentService = Depends(get_compose_service)
):
    """Undeploy a compose file (compose down)."""
    remove_volumes = request.remove_volumes if request else False
    try:
        outcome = await service.undeploy(compose_file_id, remove_volumes=remove_volumes)
        if not outcome.success:
            raise _execution_failed("Undeploy failed", outcome.error, outcome.output)
        return _outcome_to_response("Undeploy successful", outcome)
    except HTTPException:
        raise
    except ComposeFileNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ComposeStateError as e:
        raise _state_error(e)
    except Exception as e:
        logger.error(f"Failed to undeploy compose file: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{compose_file_id}/redeploy", response_model=DeploymentResponse)
async def redeploy_compose_file(
    compose_file_id: int,
    request: Optional[RedeployRequest] = None,
    service: ComposeDeploymentService = Depends(get_compose_service)
):
    """Redeploy a compose file, optionally with updated content."""
    content = request.content if request else None
    try:
        outcome = await service.redeploy(compose_file_id, content=content)
        if not outcome.success:
            raise _execution_failed("Redeploy failed", outcome.error, outcome.output)
        return _outcome_to_response("Redeploy successful", outcome)
    except HTTPException:
        raise
    except ComposeFileNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ComposeValidationFailed as e:
        raise _validation_failed(e)
    except ComposeStateError as e:
        raise _state_error(e)
    except Exception as e:
        logger.error(f"Failed to redeploy compose file: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{compose_file_id}/pull", response_model=PullResponse)
async def pull_images(
    compose_file_id: int,
    service: ComposeDeploymentService = Depends(get_compose_service)
):
    """Pull the latest images for a compose file."""
    try:
        result = await service.pull_images(compose_file_id)
        if not result.success:
            raise _execution_failed("Failed to pull images", result.error, result.output)
        return PullResponse(message="Images pulled successfully", output=result.output)
    except HTTPException:
        raise
    except ComposeFileNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ComposeStateError as e:
        raise _state_error(e)
    except Exception as e:
        logger.error(f"Failed to pull images: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{compose_file_id}/logs", response_model=LogsResponse)
async def get_logs(
    compose_file_id: int,
    lines: int = Query(default=100, ge=1, le=10000, description="Number of recent log lines"),
    service: ComposeDeploymentService = Depends(get_compose_service)
):
    """Get recent logs of a deployed compose project."""
    try:
        result = await service.get_logs(compose_file_id, lines)
        if not result.success:
            raise HTTPException(
                status_code=500,
                detail={'message': "Failed to get logs", 'error': result.error}
            )
        return LogsResponse(logs=result.output)
    except HTTPException:
        raise
    except ComposeFileNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ComposeStateError as e:
        raise _state_error(e)
    except Exception as e:
        logger.error(f"Failed to get compose logs: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{compose_file_id}/status", response_model=ComposeStatusResponse)
async def get_status(
    compose_file_id: int,
    service: ComposeDeploymentService = Depends(get_compose_service)
):
    """Get live status of a compose project from the compose CLI."""
    try:
        status = await service.get_status(compose_file_id)
        return ComposeStatusResponse(running=status.running, status=status.status, error=status.error)
    except ComposeFileNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to get compose status: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


# ==================== Environment Endpoints ====================

@router.get("/{compose_file_id}/environment", response_model=EnvironmentResponse)
async def get_environment(
    compose_file_id: int,
    service: ComposeDeploymentService = Depends(get_compose_service)
):
    """Get environment variables of the compose file's service."""
    try:
        return EnvironmentResponse(environment=service.get_environment(compose_file_id))
    except ComposeFileNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ComposeValidationFailed as e:
        raise _validation_failed(e)
    except Exception as e:
        logger.error(f"Failed to get environment: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.put("/{compose_file_id}/environment", response_model=ComposeFileMutationResponse)
async def update_environment(
    compose_file_id: int,
    request: EnvironmentUpdate,
    service: ComposeDeploymentService = Depends(get_compose_service)
):
    """Merge environment variables into the service and save the compose file."""
    try:
        compose_file = await service.update_environment(compose_file_id, request.environment)
        return ComposeFileMutationResponse(
            message="Environment variables updated successfully",
            compose_file=_compose_file_to_response(compose_file),
            warnings=list(compose_file.validation_warnings or []),
        )
    except ComposeFileNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ComposeValidationFailed as e:
        raise _validation_failed(e)
    except ComposeStateError as e:
        raise _state_error(e)
    except Exception as e:
        logger.error(f"Failed to update environment: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


# ==================== Template Endpoints ====================

@template_router.get("")
async def list_templates(manager: TemplateManager = Depends(get_template_manager)):
    """List available compose templates."""
    try:
        return await manager.list_templates()
    except Exception as e:
        logger.error(f"Failed to list templates: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@template_router.get("/{name}")
async def get_template(name: str, manager: TemplateManager = Depends(get_template_manager)):
    """Get a template's content and metadata."""
    try:
        template = await manager.get_template(name)

        if not template:
            raise HTTPException(status_code=404, detail="Template not found")

        return template

    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to get template: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
