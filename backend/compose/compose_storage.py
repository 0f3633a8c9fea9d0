"""
Filesystem storage for deployment artifacts.

Each compose file record gets its own directory under the base directory,
holding exactly one docker-compose.yml. The artifact is written right before
the compose CLI runs and kept until explicitly removed, so a failed deploy
can be retried without re-supplying content.

Simple file I/O - no database interaction.

All public I/O methods are async to avoid blocking the event loop on slow
storage (NFS, etc.).
"""
import asyncio
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Optional, Union

import aiofiles

from config.paths import COMPOSE_FILES_DIR

logger = logging.getLogger(__name__)

COMPOSE_FILE_NAME = 'docker-compose.yml'

# Deployment IDs become directory names
VALID_ID_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_-]*$')


class ComposeFileStorage:
    """Per-deployment artifact directories under a shared base directory."""

    def __init__(self, base_dir: Optional[Union[str, Path]] = None):
        self.base_dir = Path(base_dir) if base_dir else Path(COMPOSE_FILES_DIR)

    def validate_deployment_id(self, deployment_id: str) -> None:
        """
        Validate a deployment ID is filesystem-safe.

        Raises:
            ValueError: If the ID is empty, too long or contains path characters
        """
        if not deployment_id or len(deployment_id) > 100:
            raise ValueError("Deployment ID must be 1-100 characters")
        if not VALID_ID_PATTERN.match(deployment_id):
            raise ValueError(
                "Deployment ID must be alphanumeric, hyphens, underscores, "
                "and start with a letter or number"
            )

    def validate_path_safety(self, path: Path) -> None:
        """
        Ensure path is within the base directory and not a symlink escape.

        Raises:
            ValueError: If path escapes the base directory or is a symlink
        """
        # Reject symlinks to prevent TOCTOU race conditions
        if path.is_symlink():
            raise ValueError("Symlinks not allowed in compose files directory")

        resolved = path.resolve()
        base_resolved = self.base_dir.resolve()
        if not str(resolved).startswith(str(base_resolved) + os.sep) and resolved != base_resolved:
            raise ValueError("Path escapes compose files directory")

    def get_deployment_dir(self, deployment_id: Union[int, str]) -> Path:
        """
        Get the artifact directory for a deployment.

        Raises:
            ValueError: If the ID is invalid or the path would escape the base directory
        """
        deployment_id = str(deployment_id)
        self.validate_deployment_id(deployment_id)
        path = self.base_dir / deployment_id
        self.validate_path_safety(path)
        return path

    def get_compose_path(self, deployment_id: Union[int, str]) -> Path:
        """Get the compose file path for a deployment (may not exist)."""
        return self.get_deployment_dir(deployment_id) / COMPOSE_FILE_NAME

    async def exists(self, deployment_id: Union[int, str]) -> bool:
        """Check whether the artifact file exists."""
        path = self.get_compose_path(deployment_id)
        return await asyncio.to_thread(path.is_file)

    async def _atomic_write_file(self, target_path: Path, content: str) -> None:
        """Write content atomically using temp file + rename pattern."""
        fd, temp_path = tempfile.mkstemp(dir=target_path.parent, suffix='.tmp')
        try:
            async with aiofiles.open(fd, 'w', encoding='utf-8', closefd=True) as f:
                await f.write(content)
            await asyncio.to_thread(Path(temp_path).replace, target_path)
        except Exception:
            await asyncio.to_thread(Path(temp_path).unlink, True)  # missing_ok=True
            raise

    async def write(self, deployment_id: Union[int, str], content: str) -> Path:
        """
        Write (or overwrite) the compose file for a deployment.

        Creates the base directory and the deployment directory if needed,
        so artifacts removed outside the application are recreated.

        Returns:
            Path to the written compose file
        """
        deployment_dir = self.get_deployment_dir(deployment_id)
        await asyncio.to_thread(deployment_dir.mkdir, 0o700, True, True)

        compose_path = deployment_dir / COMPOSE_FILE_NAME
        await self._atomic_write_file(compose_path, content)

        logger.debug(f"Wrote compose file for deployment {deployment_id} to {compose_path}")
        return compose_path

    async def remove(self, deployment_id: Union[int, str]) -> None:
        """
        Delete the compose file and its directory.

        An artifact that is already gone counts as removed.
        """
        deployment_dir = self.get_deployment_dir(deployment_id)
        compose_path = deployment_dir / COMPOSE_FILE_NAME

        def _remove():
            compose_path.unlink(missing_ok=True)
            try:
                deployment_dir.rmdir()
            except FileNotFoundError:
                pass
            except OSError as e:
                # Leftovers written by the containers themselves
                logger.warning(f"Could not remove directory {deployment_dir}: {e}")
                return
            logger.info(f"Removed compose files for deployment {deployment_id}")

        await asyncio.to_thread(_remove)
