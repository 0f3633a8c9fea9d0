"""
Unit tests for the compose template manager.

Also checks that every bundled template passes validation.
"""

import os

import pytest

from compose.compose_validator import ComposeValidator
from compose.template_manager import TEMPLATE_METADATA, TemplateManager
from config.paths import BACKEND_DIR

BUNDLED_TEMPLATES_DIR = os.path.join(BACKEND_DIR, 'templates')


@pytest.fixture
def templates_dir(tmp_path):
    (tmp_path / 'valheim.yml').write_text("services:\n  valheim:\n    image: lloesche/valheim-server\n")
    (tmp_path / 'custom.yaml').write_text("services:\n  custom:\n    image: busybox\n")
    (tmp_path / 'README.md').write_text("not a template")
    return tmp_path


class TestTemplateManager:
    """Test template listing and lookup"""

    @pytest.mark.asyncio
    async def test_list_templates(self, templates_dir):
        templates = await TemplateManager(str(templates_dir)).list_templates()

        assert [t['id'] for t in templates] == ['custom', 'valheim']
        valheim = templates[1]
        assert valheim['filename'] == 'valheim.yml'
        assert valheim['name'] == 'Valheim'
        assert valheim['image'] == 'lloesche/valheim-server'
        assert templates[0]['description'] == 'Custom template'

    @pytest.mark.asyncio
    async def test_list_missing_dir(self, tmp_path):
        assert await TemplateManager(str(tmp_path / 'nope')).list_templates() == []

    @pytest.mark.asyncio
    async def test_get_template_yaml_extension(self, templates_dir):
        template = await TemplateManager(str(templates_dir)).get_template('custom')

        assert template['filename'] == 'custom.yaml'
        assert 'busybox' in template['content']

    @pytest.mark.asyncio
    async def test_get_missing_template(self, templates_dir):
        assert await TemplateManager(str(templates_dir)).get_template('terraria') is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ['../etc/passwd', 'a/b', 'a\\b', '..', ''])
    async def test_rejects_traversal(self, templates_dir, name):
        with pytest.raises(ValueError, match="Invalid template name"):
            await TemplateManager(str(templates_dir)).get_template(name)


class TestBundledTemplates:
    """Bundled templates must be deployable as-is"""

    @pytest.mark.asyncio
    async def test_all_known_templates_bundled(self):
        templates = await TemplateManager(BUNDLED_TEMPLATES_DIR).list_templates()

        assert {t['id'] for t in templates} == set(TEMPLATE_METADATA)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("template_id", sorted(TEMPLATE_METADATA))
    async def test_template_is_valid(self, template_id):
        template = await TemplateManager(BUNDLED_TEMPLATES_DIR).get_template(template_id)
        validator = ComposeValidator()

        result = await validator.validate_compose_file(template['content'], [], skip_external_check=True)

        assert result.valid, result.errors
        assert result.container_name
