"""
Container runtime status lookup.

Reports the state of a single container by exact name through the Docker
Engine API. Used after a deploy to reconcile the managed game server record
with what is actually running.
"""

import asyncio
import logging
from typing import Optional

import docker
from docker import DockerClient
from docker.errors import DockerException

logger = logging.getLogger(__name__)


class DockerStatusProvider:
    """
    Container status lookup via the docker SDK.

    The client is created lazily on first use so the application can start
    (and tests can run) without a reachable Docker daemon.
    """

    def __init__(self, client: Optional[DockerClient] = None):
        self._client = client

    def _get_client(self) -> DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def _lookup(self, container_name: str) -> str:
        client = self._get_client()
        containers = client.containers.list(all=True, filters={'name': container_name})

        # The name filter is a substring match; require the exact name
        for container in containers:
            if container.name == container_name:
                return 'running' if container.status == 'running' else 'stopped'

        logger.warning(f"Container {container_name} not found after deployment")
        return 'error'

    async def get_container_status(self, container_name: str) -> str:
        """
        Get the status of a container.

        Returns:
            'running', 'stopped', or 'error' (missing container or daemon unreachable)
        """
        try:
            return await asyncio.to_thread(self._lookup, container_name)
        except (DockerException, OSError) as e:
            logger.error(f"Error getting status for container {container_name}: {e}")
            return 'error'
