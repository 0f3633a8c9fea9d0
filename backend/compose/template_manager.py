"""
Compose template manager

Serves the bundled single-service compose templates for popular game
servers. Templates are plain files in the templates directory
(<name>.yml or <name>.yaml); well-known templates carry extra metadata
(image, ports, memory requirements, documentation link).

Usage:
    manager = TemplateManager('/app/backend/templates')

    templates = await manager.list_templates()
    template = await manager.get_template('valheim')  # None if missing
"""

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

import aiofiles

from config.paths import TEMPLATES_DIR

logger = logging.getLogger(__name__)

TEMPLATE_EXTENSIONS = ('.yml', '.yaml')

TEMPLATE_METADATA: Dict[str, Dict[str, Any]] = {
    'minecraft-java': {
        'name': 'Minecraft Java Edition',
        'description': 'Vanilla or modded Minecraft server using itzg/minecraft-server',
        'image': 'itzg/minecraft-server',
        'ports': ['25565'],
        'min_memory': '2GB',
        'documentation': 'https://docker-minecraft-server.readthedocs.io/',
    },
    'minecraft-bedrock': {
        'name': 'Minecraft Bedrock Edition',
        'description': 'Bedrock Edition server for cross-platform play',
        'image': 'itzg/minecraft-bedrock-server',
        'ports': ['19132/udp'],
        'min_memory': '1GB',
        'documentation': 'https://github.com/itzg/docker-minecraft-bedrock-server',
    },
    'valheim': {
        'name': 'Valheim',
        'description': 'Viking survival game dedicated server',
        'image': 'lloesche/valheim-server',
        'ports': ['2456-2458/udp'],
        'min_memory': '4GB',
        'documentation': 'https://github.com/lloesche/valheim-server-docker',
    },
    'terraria': {
        'name': 'Terraria',
        'description': '2D sandbox adventure game server',
        'image': 'ryshe/terraria',
        'ports': ['7777'],
        'min_memory': '1GB',
        'documentation': 'https://github.com/ryansheehan/terraria',
    },
    'satisfactory': {
        'name': 'Satisfactory',
        'description': 'Factory building game dedicated server',
        'image': 'wolveix/satisfactory-server',
        'ports': ['7777/udp', '7777/tcp'],
        'min_memory': '8GB',
        'documentation': 'https://github.com/wolveix/satisfactory-server',
    },
    'palworld': {
        'name': 'Palworld',
        'description': 'Creature collection survival game server',
        'image': 'thijsvanloef/palworld-server-docker',
        'ports': ['8211/udp', '27015/udp'],
        'min_memory': '16GB',
        'documentation': 'https://github.com/thijsvanloef/palworld-server-docker',
    },
    '7daystodie': {
        'name': '7 Days to Die',
        'description': 'Zombie survival game dedicated server',
        'image': 'vinanrra/7dtd-server',
        'ports': ['26900/tcp', '26900-26902/udp', '8081/tcp'],
        'min_memory': '8GB',
        'documentation': 'https://github.com/vinanrra/Docker-7DaysToDie',
    },
    'factorio': {
        'name': 'Factorio',
        'description': 'Factory building game dedicated server',
        'image': 'factoriotools/factorio',
        'ports': ['34197/udp', '27015/tcp'],
        'min_memory': '2GB',
        'documentation': 'https://github.com/factoriotools/factorio-docker',
    },
}


def get_template_metadata(template_id: str) -> Dict[str, Any]:
    """Built-in metadata for a template, or a generic entry for custom ones."""
    return dict(TEMPLATE_METADATA.get(template_id, {
        'name': template_id,
        'description': 'Custom template',
    }))


class TemplateManager:
    """Read-only access to compose templates on disk."""

    def __init__(self, templates_dir: Optional[str] = None):
        self.templates_dir = templates_dir or TEMPLATES_DIR

    @staticmethod
    def validate_template_name(name: str) -> None:
        """
        Reject names that could escape the templates directory.

        Raises:
            ValueError: If the name is empty or contains path components
        """
        if not name or '..' in name or '/' in name or '\\' in name:
            raise ValueError("Invalid template name")

    async def list_templates(self) -> List[Dict[str, Any]]:
        """
        List available templates, sorted by id.

        A missing templates directory yields an empty list.
        """
        try:
            files = await asyncio.to_thread(os.listdir, self.templates_dir)
        except FileNotFoundError:
            logger.warning(f"Templates directory {self.templates_dir} does not exist")
            return []

        templates = []
        for filename in sorted(files):
            template_id, ext = os.path.splitext(filename)
            if ext not in TEMPLATE_EXTENSIONS:
                continue
            templates.append({
                'id': template_id,
                'filename': filename,
                **get_template_metadata(template_id),
            })
        return templates

    async def get_template(self, name: str) -> Optional[Dict[str, Any]]:
        """
        Get a template's content and metadata.

        Returns:
            Template dict, or None if no <name>.yml / <name>.yaml exists

        Raises:
            ValueError: If the name is invalid
        """
        self.validate_template_name(name)

        for ext in TEMPLATE_EXTENSIONS:
            filename = f"{name}{ext}"
            path = os.path.join(self.templates_dir, filename)
            try:
                async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                    content = await f.read()
            except FileNotFoundError:
                continue

            return {
                'id': name,
                'filename': filename,
                'content': content,
                **get_template_metadata(name),
            }

        return None
