"""
Unit tests for the compose validation pipeline.

Tests cover:
- Structure checks (single service, image/build, container_name)
- Container name format, length and uniqueness
- Pipeline ordering and short-circuiting
- Dry run through the compose CLI, including temp directory cleanup
"""

import os
from unittest.mock import AsyncMock, MagicMock

import pytest

from compose.compose_client import ComposeClient, ComposeResult
from compose.compose_validator import (
    ComposeValidator,
    check_container_name,
    check_structure,
)


@pytest.fixture
def client():
    client = MagicMock(spec=ComposeClient)
    client.config = AsyncMock(return_value=ComposeResult(success=True, output='', error=None))
    return client


@pytest.fixture
def validator(client):
    return ComposeValidator(client=client)


class TestCheckStructure:
    """Test the single-service shape contract"""

    def test_missing_services(self):
        result = check_structure({'version': '3.8'})

        assert not result.ok
        assert result.errors == ['Compose file must have a "services" section']

    def test_empty_services(self):
        result = check_structure({'services': {}})

        assert result.errors == ['Compose file must define at least one service']

    def test_multiple_services(self):
        """Well-formed services are still rejected when there are two"""
        document = {'services': {
            'a': {'image': 'nginx', 'container_name': 'a'},
            'b': {'image': 'redis', 'container_name': 'b'},
        }}

        result = check_structure(document)

        assert not result.ok
        assert len(result.errors) == 1
        assert 'Only single-service compose files are supported' in result.errors[0]

    def test_missing_image_and_container_name(self):
        """Both per-service errors are reported together"""
        result = check_structure({'services': {'web': {'ports': ['80:80']}}})

        assert result.errors == [
            'Service "web" must have either "image" or "build" defined',
            'Service "web" must have a "container_name" defined for GSM management',
        ]

    def test_build_instead_of_image(self):
        result = check_structure({'services': {'web': {'build': '.', 'container_name': 'web'}}})

        assert result.ok

    def test_null_service_body(self):
        result = check_structure({'services': {'web': None}})

        assert len(result.errors) == 2


class TestCheckContainerName:
    """Test container name format and uniqueness"""

    @staticmethod
    def doc(name):
        return {'services': {'web': {'image': 'nginx', 'container_name': name}}}

    @pytest.mark.parametrize("name", ['web', 'my-game-server', 'a.b_c-1', '7daystodie'])
    def test_valid_names(self, name):
        result = check_container_name(self.doc(name), [])

        assert result.ok
        assert result.container_name == name

    @pytest.mark.parametrize("name", ['-web', '_web', 'web server', 'web/1', 'wéb'])
    def test_invalid_names(self, name):
        result = check_container_name(self.doc(name), [])

        assert not result.ok
        assert 'is invalid' in result.errors[0]
        assert result.container_name == name

    def test_already_in_use(self):
        result = check_container_name(self.doc('valheim'), ['terraria', 'valheim'])

        assert not result.ok
        assert result.errors == ['Container name "valheim" is already in use']

    def test_uniqueness_is_case_sensitive(self):
        assert check_container_name(self.doc('Valheim'), ['valheim']).ok

    def test_too_long(self):
        name = 'a' * 64

        result = check_container_name(self.doc(name), [])

        assert result.errors == [f'Container name "{name}" is too long (max 63 characters)']

    def test_max_length_allowed(self):
        assert check_container_name(self.doc('a' * 63), []).ok

    def test_absent_name(self):
        result = check_container_name({'services': {'web': {'image': 'nginx'}}}, [])

        assert result.ok
        assert result.container_name is None


class TestValidateComposeFile:
    """Test the full pipeline"""

    @pytest.mark.asyncio
    async def test_valid_minimal_file(self, validator, valid_compose):
        result = await validator.validate_compose_file(valid_compose, [], skip_external_check=True)

        assert result.to_dict() == {
            'valid': True,
            'errors': [],
            'warnings': [],
            'container_name': 'my-game-server',
        }

    @pytest.mark.asyncio
    async def test_parse_error_is_terminal(self, validator, client):
        result = await validator.validate_compose_file("services: [", [])

        assert not result.valid
        assert len(result.errors) == 1
        assert result.warnings == []
        assert result.container_name is None
        client.config.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_mapping_reports_missing_services(self, validator, client):
        result = await validator.validate_compose_file("{}", [], skip_external_check=True)

        assert not result.valid
        assert result.errors == ['Compose file must have a "services" section']
        client.config.assert_not_called()

    @pytest.mark.asyncio
    async def test_structure_error_skips_later_stages(self, validator, client):
        content = """services:
  a:
    image: nginx
    container_name: taken
    privileged: true
  b:
    image: nginx
"""
        result = await validator.validate_compose_file(content, ['taken'])

        assert not result.valid
        assert len(result.errors) == 1
        assert 'single-service' in result.errors[0]
        assert result.container_name is None
        client.config.assert_not_called()

    @pytest.mark.asyncio
    async def test_security_and_name_errors_accumulate(self, validator, client):
        content = """services:
  game:
    image: nginx
    container_name: taken
    privileged: true
    cap_add: [SYS_ADMIN]
"""
        result = await validator.validate_compose_file(content, ['taken'])

        assert not result.valid
        assert result.errors == [
            'Service "game": privileged mode is not allowed',
            'Container name "taken" is already in use',
        ]
        assert len(result.warnings) == 1
        assert result.container_name == 'taken'
        client.config.assert_not_called()

    @pytest.mark.asyncio
    async def test_warning_only_is_valid(self, validator):
        content = """services:
  game:
    image: nginx
    container_name: game
    cap_add: [SYS_ADMIN]
"""
        result = await validator.validate_compose_file(content, [], skip_external_check=True)

        assert result.valid
        assert result.errors == []
        assert result.warnings

    @pytest.mark.asyncio
    async def test_dry_run_failure_appended(self, validator, client, valid_compose):
        client.config.return_value = ComposeResult(success=False, output='', error='service "game" has invalid port')

        result = await validator.validate_compose_file(valid_compose, [])

        assert not result.valid
        assert result.errors == ['Docker Compose validation failed: service "game" has invalid port']
        assert result.container_name == 'my-game-server'

    @pytest.mark.asyncio
    async def test_dry_run_skipped(self, validator, client, valid_compose):
        await validator.validate_compose_file(valid_compose, [], skip_external_check=True)

        client.config.assert_not_called()

    @pytest.mark.asyncio
    async def test_idempotent(self, validator, valid_compose):
        first = await validator.validate_compose_file(valid_compose, ['other'], skip_external_check=True)
        second = await validator.validate_compose_file(valid_compose, ['other'], skip_external_check=True)

        assert first == second


class TestDryRunValidate:
    """Test the compose CLI config check"""

    @pytest.mark.asyncio
    async def test_temp_dir_removed_on_success(self, validator, client, valid_compose):
        seen = {}

        async def fake_config(file_path, cwd=None):
            with open(file_path, encoding='utf-8') as f:
                seen['content'] = f.read()
            seen['dir'] = cwd
            return ComposeResult(success=True, output='', error=None)

        client.config.side_effect = fake_config

        result = await validator.dry_run_validate(valid_compose)

        assert result.ok
        assert seen['content'] == valid_compose
        assert not os.path.exists(seen['dir'])

    @pytest.mark.asyncio
    async def test_temp_dir_removed_on_failure(self, validator, client, valid_compose):
        seen = {}

        async def fake_config(file_path, cwd=None):
            seen['dir'] = cwd
            return ComposeResult(success=False, output='', error='bad')

        client.config.side_effect = fake_config

        result = await validator.dry_run_validate(valid_compose)

        assert not result.ok
        assert result.error == 'Docker Compose validation failed: bad'
        assert not os.path.exists(seen['dir'])

    @pytest.mark.asyncio
    async def test_temp_dir_removed_on_exception(self, validator, client, valid_compose):
        seen = {}

        async def fake_config(file_path, cwd=None):
            seen['dir'] = cwd
            raise RuntimeError("boom")

        client.config.side_effect = fake_config

        with pytest.raises(RuntimeError):
            await validator.dry_run_validate(valid_compose)

        assert not os.path.exists(seen['dir'])
