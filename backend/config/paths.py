"""
Centralized path configuration for the game server manager
Ensures all modules use consistent, volume-mounted paths
"""

import os

BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# Base paths - these MUST use absolute paths to the volume mount
# The /app/data directory is mounted as a volume in Docker
DATA_DIR = os.getenv('GSM_DATA_DIR', '/app/data')

# Database path - MUST be in the volume mount for persistence
DATABASE_PATH = os.path.join(DATA_DIR, 'gsm.db')
DATABASE_URL = f'sqlite:///{DATABASE_PATH}'

# One subdirectory per compose file, each holding a single docker-compose.yml
COMPOSE_FILES_DIR = os.getenv('COMPOSE_FILES_DIR', '/app/compose-files')

# Bundled single-service compose templates
TEMPLATES_DIR = os.getenv('GSM_TEMPLATES_DIR', os.path.join(BACKEND_DIR, 'templates'))


def ensure_data_dirs():
    """Create data directories if they don't exist"""
    for directory in [DATA_DIR, COMPOSE_FILES_DIR]:
        os.makedirs(directory, exist_ok=True)
        try:
            os.chmod(directory, 0o700)
        except OSError:
            pass  # May not have permission in some environments


# For development/testing outside Docker
if not os.path.exists('/app'):
    # Running locally, use relative paths
    DATA_DIR = os.getenv('GSM_DATA_DIR', './data')
    DATABASE_PATH = os.path.join(DATA_DIR, 'gsm.db')
    DATABASE_URL = f'sqlite:///{DATABASE_PATH}'
    COMPOSE_FILES_DIR = os.getenv('COMPOSE_FILES_DIR', os.path.join(DATA_DIR, 'compose-files'))
