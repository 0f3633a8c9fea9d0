"""
Compose module for the game server manager

Validates and deploys single-service Docker Compose files as managed game
servers.

Components:
    - compose_parser: Safe YAML parsing and environment variable helpers
    - security_validator: Host security policy for service configurations
    - compose_validator: Validation pipeline (structure, security, names, dry run)
    - compose_storage: Per-deployment artifact directories on disk
    - compose_client: Compose CLI invocation with timeouts
    - container_status: Container status lookup via the Docker API
    - compose_service: Deploy/undeploy/redeploy orchestration
    - template_manager: Bundled game server templates
    - routes: API endpoints for compose files and templates
"""

from .compose_validator import ComposeValidator, ValidationResult
from .security_validator import (
    SecurityValidator,
    SecurityViolation,
    SecurityLevel,
)
from .compose_storage import ComposeFileStorage
from .compose_client import ComposeClient, ComposeResult, ComposeStatus
from .container_status import DockerStatusProvider
from .compose_service import (
    ComposeDeploymentService,
    ComposeFileNotFound,
    ComposeStateError,
    ComposeOperationInProgress,
    ComposeValidationFailed,
    DeploymentOutcome,
)
from .template_manager import TemplateManager
from . import routes

__all__ = [
    "ComposeValidator",
    "ValidationResult",
    "SecurityValidator",
    "SecurityViolation",
    "SecurityLevel",
    "ComposeFileStorage",
    "ComposeClient",
    "ComposeResult",
    "ComposeStatus",
    "DockerStatusProvider",
    "ComposeDeploymentService",
    "ComposeFileNotFound",
    "ComposeStateError",
    "ComposeOperationInProgress",
    "ComposeValidationFailed",
    "DeploymentOutcome",
    "TemplateManager",
    "routes",
]
