"""
Docker Compose file validator.

Runs the validation pipeline for managed compose files:

    1. Parse YAML (terminal on failure)
    2. Structure: exactly one service with image/build and container_name
       (terminal on failure)
    3. Security policy (errors + warnings)
    4. Container name format and uniqueness
    5. Optional dry run through the compose CLI, only when steps 1-4 found
       no errors

Cheap, pure checks run first; the external tool is never invoked on a
document already known to be invalid.
"""

import asyncio
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import aiofiles

from .compose_client import ComposeClient
from .compose_parser import as_mapping, get_first_service, get_services, parse_compose_yaml
from .security_validator import SecurityValidator

logger = logging.getLogger(__name__)

# Starts with alphanumeric, then alphanumeric, underscore, period or hyphen
CONTAINER_NAME_PATTERN = re.compile(r'[a-zA-Z0-9][a-zA-Z0-9_.-]*')
MAX_CONTAINER_NAME_LENGTH = 63

DRY_RUN_FILE_NAME = 'docker-compose.yml'


@dataclass
class StructureResult:
    ok: bool
    errors: List[str] = field(default_factory=list)


@dataclass
class ContainerNameResult:
    ok: bool
    errors: List[str] = field(default_factory=list)
    container_name: Optional[str] = None


@dataclass
class DryRunResult:
    ok: bool
    error: Optional[str] = None


@dataclass
class ValidationResult:
    """
    Outcome of the full validation pipeline.

    valid is True iff errors is empty. container_name is set whenever the
    single service declares one, even if validation failed later on.
    """
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    container_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'valid': self.valid,
            'errors': list(self.errors),
            'warnings': list(self.warnings),
            'container_name': self.container_name,
        }


def check_structure(document: Dict[str, Any]) -> StructureResult:
    """
    Enforce the single-service compose shape.

    Args:
        document: Parsed compose document

    Returns:
        StructureResult; both per-service errors may be reported together
    """
    services = get_services(document)
    if services is None:
        return StructureResult(False, ['Compose file must have a "services" section'])

    if len(services) == 0:
        return StructureResult(False, ['Compose file must define at least one service'])

    if len(services) > 1:
        return StructureResult(False, [
            'Only single-service compose files are supported. '
            'Please create separate compose files for each service.'
        ])

    errors = []
    service_name = next(iter(services))
    service = as_mapping(services[service_name])

    if not service.get('image') and not service.get('build'):
        errors.append(f'Service "{service_name}" must have either "image" or "build" defined')

    if not service.get('container_name'):
        errors.append(f'Service "{service_name}" must have a "container_name" defined for GSM management')

    return StructureResult(ok=not errors, errors=errors)


def check_container_name(document: Dict[str, Any], existing_names: Iterable[str] = ()) -> ContainerNameResult:
    """
    Validate container name format and uniqueness.

    Args:
        document: Parsed compose document
        existing_names: Names used by other game servers and compose files
                        (case-sensitive exact match)

    Returns:
        ContainerNameResult with the extracted name (None if absent)
    """
    _, service = get_first_service(document)
    raw_name = service.get('container_name')
    if raw_name is None or raw_name == '':
        return ContainerNameResult(ok=True, errors=[], container_name=None)

    container_name = str(raw_name)
    errors = []

    if not CONTAINER_NAME_PATTERN.fullmatch(container_name):
        errors.append(
            f'Container name "{container_name}" is invalid. '
            'Use only alphanumeric characters, hyphens, underscores, and periods.'
        )

    if container_name in set(existing_names):
        errors.append(f'Container name "{container_name}" is already in use')

    if len(container_name) > MAX_CONTAINER_NAME_LENGTH:
        errors.append(
            f'Container name "{container_name}" is too long (max {MAX_CONTAINER_NAME_LENGTH} characters)'
        )

    return ContainerNameResult(ok=not errors, errors=errors, container_name=container_name)


class ComposeValidator:
    """
    Validation pipeline for single-service compose files.

    The dry run goes through the injected ComposeClient; everything else is
    pure and side-effect free.
    """

    def __init__(
        self,
        client: Optional[ComposeClient] = None,
        security_validator: Optional[SecurityValidator] = None,
    ):
        self.client = client or ComposeClient()
        self.security_validator = security_validator or SecurityValidator()

    async def dry_run_validate(self, content: str) -> DryRunResult:
        """
        Validate content with the compose CLI's config check.

        The content is written to a private temporary directory which is
        always removed afterwards.
        """
        tmp_dir = None
        try:
            tmp_dir = await asyncio.to_thread(tempfile.mkdtemp, prefix='gsm-compose-')
            tmp_file = os.path.join(tmp_dir, DRY_RUN_FILE_NAME)

            async with aiofiles.open(tmp_file, 'w', encoding='utf-8') as f:
                await f.write(content)

            result = await self.client.config(tmp_file, cwd=tmp_dir)
        except OSError as e:
            logger.error(f"Could not prepare compose dry run: {e}")
            return DryRunResult(False, f"Docker Compose validation failed: {e}")
        finally:
            if tmp_dir:
                await asyncio.to_thread(shutil.rmtree, tmp_dir, ignore_errors=True)

        if not result.success:
            return DryRunResult(False, f"Docker Compose validation failed: {result.error}")

        return DryRunResult(True)

    async def validate_compose_file(
        self,
        content: str,
        existing_names: Iterable[str] = (),
        skip_external_check: bool = False,
    ) -> ValidationResult:
        """
        Run the full validation pipeline.

        Args:
            content: Raw compose YAML
            existing_names: Container names already in use elsewhere
            skip_external_check: Skip the compose CLI dry run (fast interactive checks)

        Returns:
            ValidationResult
        """
        parsed = parse_compose_yaml(content)
        if parsed.error:
            return ValidationResult(valid=False, errors=[parsed.error], warnings=[], container_name=None)

        document = parsed.document

        structure = check_structure(document)
        if not structure.ok:
            return ValidationResult(valid=False, errors=list(structure.errors), warnings=[], container_name=None)

        errors: List[str] = []
        warnings: List[str] = []

        security = self.security_validator.check_security(document)
        errors.extend(security.errors)
        warnings.extend(security.warnings)

        name_result = check_container_name(document, existing_names)
        errors.extend(name_result.errors)

        if not skip_external_check and not errors:
            dry_run = await self.dry_run_validate(content)
            if not dry_run.ok:
                errors.append(dry_run.error)

        return ValidationResult(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            container_name=name_result.container_name
        )
