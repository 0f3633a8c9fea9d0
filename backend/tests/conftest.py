"""
Shared pytest fixtures for game server manager tests.

Fixtures provided:
- db_manager: DatabaseManager backed by a temporary SQLite file
- storage: ComposeFileStorage rooted in a temporary directory
- mock_compose_client: ComposeClient with every CLI call mocked to succeed
- mock_status_provider: Container status lookup reporting 'running'
- mock_docker_client: Mock Docker SDK client
- compose_service: ComposeDeploymentService wired to the fixtures above
- valid_compose: Minimal valid single-service compose file
"""

import os
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from database import DatabaseManager
from compose.compose_client import ComposeClient, ComposeResult, ComposeStatus
from compose.compose_service import ComposeDeploymentService
from compose.compose_storage import ComposeFileStorage
from compose.compose_validator import ComposeValidator
from compose.container_status import DockerStatusProvider


VALID_COMPOSE = """services:
  game:
    image: nginx
    container_name: my-game-server
"""


@pytest.fixture
def valid_compose():
    return VALID_COMPOSE


@pytest.fixture(scope="function")
def db_manager(tmp_path):
    """
    Create a DatabaseManager on a temporary SQLite database.

    Each test gets a fresh file so tests don't affect each other.
    """
    db = DatabaseManager(f"sqlite:///{tmp_path / 'test.db'}")
    yield db
    db.engine.dispose()


@pytest.fixture
def storage(tmp_path):
    return ComposeFileStorage(tmp_path / "compose-files")


@pytest.fixture
def mock_compose_client():
    """
    Mock compose CLI client for testing without Docker.

    Every command succeeds by default; tests override return values as needed.
    """
    client = MagicMock(spec=ComposeClient)
    client.config = AsyncMock(return_value=ComposeResult(success=True, output='', error=None))
    client.up = AsyncMock(return_value=ComposeResult(success=True, output='Container started', error=None))
    client.down = AsyncMock(return_value=ComposeResult(success=True, output='Container removed', error=None))
    client.pull = AsyncMock(return_value=ComposeResult(success=True, output='Pulled', error=None))
    client.logs = AsyncMock(return_value=ComposeResult(success=True, output='line 1\nline 2\n', error=None))
    client.status = AsyncMock(return_value=ComposeStatus(running=True, status='my-game-server: running'))
    return client


@pytest.fixture
def mock_docker_client():
    """
    Mock Docker SDK client for testing without real Docker daemon.
    """
    client = MagicMock()
    client.containers.list = MagicMock(return_value=[])
    return client


@pytest.fixture
def mock_status_provider():
    provider = MagicMock(spec=DockerStatusProvider)
    provider.get_container_status = AsyncMock(return_value='running')
    return provider


@pytest.fixture
def compose_service(db_manager, storage, mock_compose_client, mock_status_provider):
    return ComposeDeploymentService(
        db=db_manager,
        validator=ComposeValidator(client=mock_compose_client),
        storage=storage,
        client=mock_compose_client,
        status_provider=mock_status_provider,
        settle_delay=0,
    )
