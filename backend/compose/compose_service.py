"""
Compose deployment service.

Coordinates the lifecycle of managed compose files:

    validate -> persist record
    write artifact -> compose up -> settle -> container status -> upsert game server
    compose down -> mark stopped

Every external step is awaited in order within one call. Failures of the
compose CLI are returned as results (never raised) and recorded in the
record's last_error; precondition violations raise typed exceptions before
any filesystem or process work begins.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import ComposeFile, DatabaseManager, GameServer, utcnow
from .compose_client import ComposeClient, ComposeResult, ComposeStatus
from .compose_parser import (
    extract_environment_variables,
    get_container_name,
    parse_compose_yaml,
    update_environment_variables,
)
from .compose_storage import ComposeFileStorage
from .compose_validator import ComposeValidator, ValidationResult
from .container_status import DockerStatusProvider

logger = logging.getLogger(__name__)

# A record left in 'deploying' longer than this was abandoned by a crashed process
DEPLOY_STUCK_TIMEOUT_MINUTES = 10

DEFAULT_SETTLE_SECONDS = 2.0

DEFAULT_CONNECTION_STRING = 'Configure connection string'

# Game server fields an optional metadata lookup may fill in
METADATA_FIELDS = ('name', 'steam_app_id', 'logo', 'website_url', 'description')

MetadataLookup = Callable[[str], Awaitable[Dict[str, Any]]]


class ComposeServiceError(Exception):
    """Base class for compose lifecycle errors"""
    pass


class ComposeFileNotFound(ComposeServiceError):
    """Raised when a compose file record does not exist"""
    pass


class ComposeStateError(ComposeServiceError):
    """Raised when an operation is not allowed in the record's current state"""
    pass


class ComposeOperationInProgress(ComposeStateError):
    """Raised when another operation on the same record has not finished"""
    pass


class ComposeValidationFailed(ComposeServiceError):
    """Raised when compose content fails validation"""

    def __init__(self, result: ValidationResult, message: str = 'Compose file validation failed'):
        super().__init__(message)
        self.result = result


@dataclass
class DeploymentOutcome:
    """Result of deploy, redeploy and undeploy."""
    success: bool
    output: str
    error: Optional[str]
    compose_file: ComposeFile
    container_status: Optional[str] = None
    game_server: Optional[GameServer] = None


class ComposeDeploymentService:
    """
    Lifecycle operations for compose file records.

    Mutating operations on one record are serialized by an in-process lock;
    a second request for a record that is busy is rejected immediately
    instead of queueing behind the first.
    """

    def __init__(
        self,
        db: DatabaseManager,
        validator: Optional[ComposeValidator] = None,
        storage: Optional[ComposeFileStorage] = None,
        client: Optional[ComposeClient] = None,
        status_provider: Optional[DockerStatusProvider] = None,
        settle_delay: float = DEFAULT_SETTLE_SECONDS,
        metadata_lookup: Optional[MetadataLookup] = None,
    ):
        self.db = db
        self.client = client or ComposeClient()
        self.validator = validator or ComposeValidator(client=self.client)
        self.storage = storage or ComposeFileStorage()
        self.status_provider = status_provider or DockerStatusProvider()
        self.settle_delay = settle_delay
        self.metadata_lookup = metadata_lookup
        self._locks: Dict[int, asyncio.Lock] = {}

    # ==================== Helpers ====================

    @asynccontextmanager
    async def _operation_lock(self, compose_file_id: int):
        lock = self._locks.setdefault(compose_file_id, asyncio.Lock())
        if lock.locked():
            raise ComposeOperationInProgress(
                "Another operation is already in progress for this compose file"
            )
        try:
            async with lock:
                yield
        finally:
            # Busy callers are rejected, never queued, so a released lock has no waiters
            if not lock.locked() and self._locks.get(compose_file_id) is lock:
                del self._locks[compose_file_id]

    @staticmethod
    def _load(session: Session, compose_file_id: int) -> ComposeFile:
        compose_file = session.get(ComposeFile, compose_file_id)
        if compose_file is None:
            raise ComposeFileNotFound("Compose file not found")
        return compose_file

    def _update_record(self, compose_file_id: int, **fields) -> ComposeFile:
        with self.db.get_session() as session:
            compose_file = self._load(session, compose_file_id)
            for key, value in fields.items():
                setattr(compose_file, key, value)
            session.commit()
            return compose_file

    def _reserved_names(self, exclude_id: Optional[int] = None):
        with self.db.get_session() as session:
            exclude = self._load(session, exclude_id) if exclude_id is not None else None
            return self.db.get_reserved_container_names(session, exclude=exclude)

    @staticmethod
    def _is_stuck(compose_file: ComposeFile) -> bool:
        if not compose_file.updated_at:
            return True
        updated_at = compose_file.updated_at
        if updated_at.tzinfo is None:
            # SQLite drops tzinfo
            updated_at = updated_at.replace(tzinfo=timezone.utc)
        return updated_at < utcnow() - timedelta(minutes=DEPLOY_STUCK_TIMEOUT_MINUTES)

    @staticmethod
    def _ensure_editable(compose_file: ComposeFile) -> None:
        if compose_file.status == 'deployed':
            raise ComposeStateError(
                "Cannot update deployed compose file. Undeploy first or use the redeploy endpoint."
            )
        if compose_file.status == 'deploying':
            raise ComposeStateError("Deployment already in progress")

    async def _write_and_up(self, compose_file_id: int, content: str, project_name: str) -> ComposeResult:
        """Write the artifact, then run compose up against it."""
        try:
            compose_path = await self.storage.write(compose_file_id, content)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to write compose file {compose_file_id}: {e}")
            return ComposeResult(success=False, output='', error=f"Failed to write compose file: {e}")

        return await self.client.up(str(compose_path.parent), str(compose_path), project_name)

    async def _lookup_metadata(self, name: str) -> Dict[str, Any]:
        """Optional game metadata enrichment; failures never affect the deploy."""
        if self.metadata_lookup is None:
            return {}
        try:
            metadata = await self.metadata_lookup(name)
        except Exception as e:
            logger.warning(f"Metadata lookup failed for '{name}': {e}")
            return {}
        return {key: value for key, value in (metadata or {}).items() if key in METADATA_FIELDS and value}

    def _upsert_game_server(
        self,
        session: Session,
        compose_file: ComposeFile,
        container_status: str,
        metadata: Dict[str, Any],
    ) -> GameServer:
        """Create the managed game server for a container name, or refresh it."""
        game_server = session.query(GameServer).filter_by(
            container_name=compose_file.container_name
        ).first()

        if game_server is None:
            game_server = GameServer(
                name=metadata.get('name') or compose_file.name,
                container_name=compose_file.container_name,
                connection_string=DEFAULT_CONNECTION_STRING,
                status=container_status,
                is_managed=True,
                compose_file_id=compose_file.id,
                steam_app_id=metadata.get('steam_app_id', ''),
                logo=metadata.get('logo', ''),
                website_url=metadata.get('website_url', ''),
                description=metadata.get('description', ''),
            )
            session.add(game_server)
            logger.info(f"Created managed game server for container {compose_file.container_name}")
        else:
            game_server.status = container_status
            game_server.is_managed = True
            game_server.compose_file_id = compose_file.id
            for key, value in metadata.items():
                setattr(game_server, key, value)

        session.flush()
        return game_server

    async def _finish_deploy(
        self,
        compose_file_id: int,
        container_name: str,
        record_fields: Dict[str, Any],
        metadata: Dict[str, Any],
    ):
        """Settle, check the container and persist the deployed state."""
        await asyncio.sleep(self.settle_delay)
        container_status = await self.status_provider.get_container_status(container_name)

        with self.db.get_session() as session:
            compose_file = self._load(session, compose_file_id)
            for key, value in record_fields.items():
                setattr(compose_file, key, value)

            game_server = self._upsert_game_server(session, compose_file, container_status, metadata)

            compose_file.status = 'deployed'
            compose_file.deployed_at = utcnow()
            compose_file.last_error = None
            compose_file.game_server_id = game_server.id
            session.commit()

        return compose_file, game_server, container_status

    # ==================== Queries ====================

    def list_compose_files(self) -> List[ComposeFile]:
        with self.db.get_session() as session:
            return session.query(ComposeFile).order_by(ComposeFile.updated_at.desc()).all()

    def get_compose_file(self, compose_file_id: int) -> ComposeFile:
        with self.db.get_session() as session:
            return self._load(session, compose_file_id)

    def get_game_server(self, game_server_id: Optional[int]) -> Optional[GameServer]:
        if game_server_id is None:
            return None
        with self.db.get_session() as session:
            return session.get(GameServer, game_server_id)

    async def validate_content(self, content: str) -> ValidationResult:
        """Validate unsaved content against every known container name (no dry run)."""
        names = self._reserved_names()
        return await self.validator.validate_compose_file(content, names, skip_external_check=True)

    async def validate_stored(self, compose_file_id: int) -> ValidationResult:
        """Re-run the full pipeline against a stored record."""
        compose_file = self.get_compose_file(compose_file_id)
        names = self._reserved_names(exclude_id=compose_file_id)
        return await self.validator.validate_compose_file(compose_file.content, names)

    async def get_logs(self, compose_file_id: int, lines: int = 100) -> ComposeResult:
        compose_file = self.get_compose_file(compose_file_id)
        if not compose_file.container_name:
            raise ComposeStateError("Compose file has no container name")
        return await self.client.logs(compose_file.container_name, lines)

    async def get_status(self, compose_file_id: int) -> ComposeStatus:
        compose_file = self.get_compose_file(compose_file_id)
        if not compose_file.container_name:
            return ComposeStatus(running=False, status='not deployed', error=None)
        return await self.client.status(compose_file.container_name)

    def get_environment(self, compose_file_id: int) -> Dict[str, Any]:
        compose_file = self.get_compose_file(compose_file_id)
        env_vars, error = extract_environment_variables(compose_file.content)
        if error:
            raise ComposeValidationFailed(ValidationResult(valid=False, errors=[error]))
        return env_vars

    # ==================== Record lifecycle ====================

    async def create(self, name: str, content: str, template_name: Optional[str] = None) -> ComposeFile:
        """
        Validate and store a new compose file.

        Raises:
            ComposeValidationFailed: If the content is invalid
            ComposeStateError: If the container name was claimed concurrently
        """
        names = self._reserved_names()
        validation = await self.validator.validate_compose_file(content, names)
        if not validation.valid:
            raise ComposeValidationFailed(validation)

        with self.db.get_session() as session:
            compose_file = ComposeFile(
                name=name,
                content=content,
                template_name=template_name or None,
                container_name=validation.container_name,
                validation_warnings=list(validation.warnings),
                status='draft',
                version=1,
            )
            session.add(compose_file)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise ComposeStateError("Container name already exists")

            logger.info(f"Created compose file '{name}' (container {validation.container_name})")
            return compose_file

    async def _update(self, compose_file_id: int, name: Optional[str], content: Optional[str]) -> ComposeFile:
        compose_file = self.get_compose_file(compose_file_id)
        self._ensure_editable(compose_file)

        fields: Dict[str, Any] = {}
        if content and content != compose_file.content:
            names = self._reserved_names(exclude_id=compose_file_id)
            validation = await self.validator.validate_compose_file(content, names)
            if not validation.valid:
                raise ComposeValidationFailed(validation)

            fields.update(
                content=content,
                container_name=validation.container_name,
                validation_warnings=list(validation.warnings),
                version=(compose_file.version or 1) + 1,
            )

        if name:
            fields['name'] = name

        try:
            return self._update_record(compose_file_id, **fields)
        except IntegrityError:
            raise ComposeStateError("Container name already exists")

    async def update(
        self,
        compose_file_id: int,
        name: Optional[str] = None,
        content: Optional[str] = None,
    ) -> ComposeFile:
        """
        Update name and/or content of a record that is not deployed.

        Changed content is re-validated against all names except the
        record's own.
        """
        async with self._operation_lock(compose_file_id):
            return await self._update(compose_file_id, name, content)

    async def update_environment(self, compose_file_id: int, env_vars: Dict[str, Any]) -> ComposeFile:
        """Merge environment variables into the service and save like an update."""
        async with self._operation_lock(compose_file_id):
            compose_file = self.get_compose_file(compose_file_id)
            self._ensure_editable(compose_file)

            content, error = update_environment_variables(compose_file.content, env_vars)
            if error:
                raise ComposeValidationFailed(ValidationResult(valid=False, errors=[error]))

            return await self._update(compose_file_id, None, content)

    async def delete(self, compose_file_id: int) -> None:
        """
        Delete a record that is not deployed.

        The game server created by a previous deploy is kept and only
        unlinked from the record.
        """
        async with self._operation_lock(compose_file_id):
            compose_file = self.get_compose_file(compose_file_id)
            if compose_file.status in ('deployed', 'deploying'):
                raise ComposeStateError("Cannot delete deployed compose file. Undeploy first.")

            try:
                await self.storage.remove(compose_file_id)
            except OSError as e:
                logger.warning(f"Could not remove compose files for {compose_file_id}: {e}")

            with self.db.get_session() as session:
                session.query(GameServer).filter_by(compose_file_id=compose_file_id).update(
                    {'compose_file_id': None, 'is_managed': False},
                    synchronize_session=False
                )
                session.query(ComposeFile).filter_by(id=compose_file_id).delete(synchronize_session=False)
                session.commit()

        logger.info(f"Deleted compose file {compose_file_id}")

    # ==================== Deployment ====================

    async def deploy(self, compose_file_id: int) -> DeploymentOutcome:
        """
        Deploy a stored compose file (compose up -d).

        A failed deploy keeps the artifact on disk and records the tool's
        error; deployed_at is only set on success.
        """
        async with self._operation_lock(compose_file_id):
            with self.db.get_session() as session:
                compose_file = self._load(session, compose_file_id)

                if compose_file.status == 'deployed':
                    raise ComposeStateError("Compose file is already deployed")

                if compose_file.status == 'deploying':
                    if not self._is_stuck(compose_file):
                        raise ComposeStateError("Deployment already in progress")
                    logger.warning(
                        f"Retrying stuck deployment of compose file {compose_file_id} "
                        f"(deploying since {compose_file.updated_at})"
                    )

                if not compose_file.container_name:
                    raise ComposeStateError("Compose file has no container name defined")

                compose_file.status = 'deploying'
                compose_file.last_error = None
                session.commit()

                name = compose_file.name
                content = compose_file.content
                container_name = compose_file.container_name

            try:
                result = await self._write_and_up(compose_file_id, content, container_name)

                if not result.success:
                    compose_file = self._update_record(compose_file_id, status='error', last_error=result.error)
                    return DeploymentOutcome(False, result.output, result.error, compose_file)

                metadata = await self._lookup_metadata(name)
                compose_file, game_server, container_status = await self._finish_deploy(
                    compose_file_id, container_name, {}, metadata
                )
            except Exception as e:
                logger.error(f"Deployment of compose file {compose_file_id} failed: {e}", exc_info=True)
                self._update_record(compose_file_id, status='error', last_error=str(e))
                raise

            logger.info(f"Deployed compose file {compose_file_id} as '{container_name}' ({container_status})")
            return DeploymentOutcome(True, result.output, None, compose_file, container_status, game_server)

    async def undeploy(self, compose_file_id: int, remove_volumes: bool = False) -> DeploymentOutcome:
        """
        Tear down a deployment (compose down).

        A failed teardown leaves the stored state untouched.
        """
        async with self._operation_lock(compose_file_id):
            compose_file = self.get_compose_file(compose_file_id)

            if compose_file.status not in ('deployed', 'error'):
                raise ComposeStateError("Compose file is not deployed")

            if not compose_file.container_name:
                raise ComposeStateError("Compose file has no container name defined")

            compose_path = self.storage.get_compose_path(compose_file_id)
            result = await self.client.down(
                str(compose_path.parent),
                str(compose_path),
                compose_file.container_name,
                remove_volumes=remove_volumes
            )

            if not result.success:
                return DeploymentOutcome(False, result.output, result.error, compose_file)

            with self.db.get_session() as session:
                compose_file = self._load(session, compose_file_id)
                compose_file.status = 'stopped'
                compose_file.last_error = None

                game_server = None
                if compose_file.game_server_id is not None:
                    game_server = session.get(GameServer, compose_file.game_server_id)
                if game_server is not None:
                    game_server.status = 'stopped'

                session.commit()

            logger.info(f"Undeployed compose file {compose_file_id} ('{compose_file.container_name}')")
            return DeploymentOutcome(True, result.output, None, compose_file, 'stopped', game_server)

    async def redeploy(self, compose_file_id: int, content: Optional[str] = None) -> DeploymentOutcome:
        """
        Re-apply a deployment, optionally with new content.

        The container name is the project identity and must not change;
        new content naming a different container is rejected before any
        artifact is written.
        """
        async with self._operation_lock(compose_file_id):
            compose_file = self.get_compose_file(compose_file_id)

            if compose_file.status == 'deploying' and not self._is_stuck(compose_file):
                raise ComposeStateError("Deployment already in progress")

            if not compose_file.container_name:
                raise ComposeStateError("Compose file has no container name defined")

            container_name = compose_file.container_name
            record_fields: Dict[str, Any] = {}

            if content:
                parsed = parse_compose_yaml(content)
                if parsed.error is None:
                    new_name = get_container_name(parsed.document)
                    if new_name is not None and new_name != container_name:
                        raise ComposeStateError(
                            "Cannot change container name during redeploy. Undeploy first."
                        )

                names = self._reserved_names(exclude_id=compose_file_id)
                validation = await self.validator.validate_compose_file(content, names)
                if not validation.valid:
                    raise ComposeValidationFailed(validation)

                if validation.container_name != container_name:
                    raise ComposeStateError("Cannot change container name during redeploy. Undeploy first.")

                record_fields['validation_warnings'] = list(validation.warnings)
                if content != compose_file.content:
                    record_fields['content'] = content
                    record_fields['version'] = (compose_file.version or 1) + 1

            deploy_content = record_fields.get('content', compose_file.content)
            result = await self._write_and_up(compose_file_id, deploy_content, container_name)

            if not result.success:
                # Status is kept: the previous deployment may still be running
                compose_file = self._update_record(compose_file_id, last_error=result.error, **record_fields)
                return DeploymentOutcome(False, result.output, result.error, compose_file)

            compose_file, game_server, container_status = await self._finish_deploy(
                compose_file_id, container_name, record_fields, {}
            )

            logger.info(f"Redeployed compose file {compose_file_id} as '{container_name}' ({container_status})")
            return DeploymentOutcome(True, result.output, None, compose_file, container_status, game_server)

    async def pull_images(self, compose_file_id: int) -> ComposeResult:
        """Write the artifact and pull the latest images for it."""
        async with self._operation_lock(compose_file_id):
            compose_file = self.get_compose_file(compose_file_id)
            if not compose_file.container_name:
                raise ComposeStateError("Compose file has no container name")

            try:
                compose_path = await self.storage.write(compose_file_id, compose_file.content)
            except (OSError, ValueError) as e:
                logger.error(f"Failed to write compose file {compose_file_id}: {e}")
                return ComposeResult(success=False, output='', error=f"Failed to write compose file: {e}")

            return await self.client.pull(str(compose_path.parent), str(compose_path), compose_file.container_name)

    def recover_interrupted_deployments(self) -> int:
        """
        Mark records left in 'deploying' by a previous process as failed.

        Called once at startup, before any request is served.
        """
        with self.db.get_session() as session:
            interrupted = session.query(ComposeFile).filter_by(status='deploying').all()
            for compose_file in interrupted:
                compose_file.status = 'error'
                compose_file.last_error = 'Deployment interrupted by application restart'
                logger.warning(f"Compose file {compose_file.id} was left deploying; marked as error")
            session.commit()
            return len(interrupted)
