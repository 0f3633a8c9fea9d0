"""
Configuration Management for the game server manager
Centralizes all environment-based configuration and settings
"""

import os
import shlex
import logging
from logging.handlers import RotatingFileHandler
from typing import List, Optional


class HealthCheckFilter(logging.Filter):
    """Filter out health check and routine polling requests to reduce log noise"""
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()

        # For uvicorn access logs, the message format is:
        # 'IP:PORT - "METHOD /path HTTP/1.1" STATUS'
        if '200 OK' in message or '200' in str(getattr(record, 'args', '')):
            if '/health' in message:
                return False
            # Status polling from the compose list view
            if '/api/admin/compose' in message and '/status' in message:
                return False
        return True


def setup_logging(level: str = 'INFO'):
    """Configure application logging with rotation"""
    from .paths import DATA_DIR

    # Create logs directory with secure permissions
    log_dir = os.path.join(DATA_DIR, 'logs')
    os.makedirs(log_dir, mode=0o700, exist_ok=True)

    root_logger = logging.getLogger()

    # Close and clear any existing handlers to ensure our logging
    # configuration is used and prevent file descriptor leaks
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)

    # Console handler for stdout
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler with rotation for application logs
    # Max 10MB per file, keep 14 backups
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'gsm.log'),
        maxBytes=10*1024*1024,  # 10MB
        backupCount=14,
        encoding='utf-8'
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(console_formatter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.addFilter(HealthCheckFilter())


def get_compose_command() -> List[str]:
    """
    Get the compose CLI prefix from environment.

    Defaults to the Docker CLI plugin ("docker compose"). Set
    GSM_COMPOSE_COMMAND="docker-compose" for the standalone binary or
    "podman compose" for Podman hosts.
    """
    command = os.getenv('GSM_COMPOSE_COMMAND', 'docker compose')
    return shlex.split(command)


def get_cors_origins() -> Optional[str]:
    """
    Get CORS origins from environment.

    Returns:
        - Comma-separated string of specific origins if GSM_CORS_ORIGINS is set
        - None to allow all origins (the hosting application handles auth)
    """
    custom_origins = os.getenv('GSM_CORS_ORIGINS')
    if custom_origins:
        return custom_origins
    return None


class AppConfig:
    """Main application configuration"""

    # Server settings
    HOST = os.getenv('GSM_HOST', '0.0.0.0')
    PORT = int(os.getenv('GSM_PORT', 5000))
    CORS_ORIGINS = get_cors_origins()

    from .paths import (
        DATABASE_URL as DEFAULT_DATABASE_URL,
        COMPOSE_FILES_DIR as DEFAULT_COMPOSE_FILES_DIR,
        TEMPLATES_DIR as DEFAULT_TEMPLATES_DIR,
    )

    # Database settings
    DATABASE_URL = os.getenv('GSM_DATABASE_URL', DEFAULT_DATABASE_URL)

    # Logging
    LOG_LEVEL = os.getenv('GSM_LOG_LEVEL', 'INFO')

    # Compose deployment
    COMPOSE_FILES_DIR = DEFAULT_COMPOSE_FILES_DIR
    TEMPLATES_DIR = DEFAULT_TEMPLATES_DIR
    COMPOSE_COMMAND = get_compose_command()
    DEPLOY_SETTLE_SECONDS = float(os.getenv('GSM_DEPLOY_SETTLE_SECONDS', 2))

    @classmethod
    def validate(cls):
        """Validate configuration"""
        if cls.PORT < 1 or cls.PORT > 65535:
            raise ValueError(f"Invalid port: {cls.PORT}")

        if cls.DEPLOY_SETTLE_SECONDS < 0:
            raise ValueError(f"Deploy settle delay cannot be negative: {cls.DEPLOY_SETTLE_SECONDS}")

        if not cls.COMPOSE_COMMAND:
            raise ValueError("GSM_COMPOSE_COMMAND must not be empty")

        return True
