"""
Unit tests for container status lookup via the docker SDK.
"""

from unittest.mock import MagicMock, patch

import pytest
from docker.errors import DockerException

from compose.container_status import DockerStatusProvider


def make_container(name, status):
    container = MagicMock()
    container.name = name
    container.status = status
    return container


class TestDockerStatusProvider:
    """Test status mapping to running/stopped/error"""

    @pytest.mark.asyncio
    async def test_running(self, mock_docker_client):
        mock_docker_client.containers.list.return_value = [make_container('valheim', 'running')]
        provider = DockerStatusProvider(client=mock_docker_client)

        assert await provider.get_container_status('valheim') == 'running'
        mock_docker_client.containers.list.assert_called_once_with(all=True, filters={'name': 'valheim'})

    @pytest.mark.asyncio
    async def test_exited_is_stopped(self, mock_docker_client):
        mock_docker_client.containers.list.return_value = [make_container('valheim', 'exited')]
        provider = DockerStatusProvider(client=mock_docker_client)

        assert await provider.get_container_status('valheim') == 'stopped'

    @pytest.mark.asyncio
    async def test_requires_exact_name(self, mock_docker_client):
        """The name filter also matches longer names"""
        mock_docker_client.containers.list.return_value = [make_container('valheim-backup', 'running')]
        provider = DockerStatusProvider(client=mock_docker_client)

        assert await provider.get_container_status('valheim') == 'error'

    @pytest.mark.asyncio
    async def test_missing_container(self, mock_docker_client):
        mock_docker_client.containers.list.return_value = []
        provider = DockerStatusProvider(client=mock_docker_client)

        assert await provider.get_container_status('valheim') == 'error'

    @pytest.mark.asyncio
    async def test_daemon_unreachable(self):
        with patch('compose.container_status.docker.from_env', side_effect=DockerException("no daemon")):
            provider = DockerStatusProvider()

            assert await provider.get_container_status('valheim') == 'error'
