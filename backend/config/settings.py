"""
Configuration Management for DockPilot
Centralizes all environment-based configuration and settings
"""

import os
import logging
import platform
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from typing import List, Optional

from .paths import DATABASE_URL as DEFAULT_DATABASE_URL, SUPERVISOR_STATE_PATH

APP_VERSION = '0.4.0'
ENV_PREFIX = 'DOCKPILOT_'

DEFAULT_SUPERVISOR_HTTP_ADDR = '0.0.0.0:50884'
DEFAULT_BASE_PATH = '/supervisor'
DEFAULT_TARGET_IMAGE_REPO = 'ghcr.io/dockpilot/dockpilot'
DEFAULT_HEALTH_PORT = 50883

_MACHINE_ARCH = {
    'x86_64': 'amd64',
    'amd64': 'amd64',
    'aarch64': 'arm64',
    'arm64': 'arm64',
}


class HealthCheckFilter(logging.Filter):
    """Filter out health check and routine polling requests to reduce log noise"""
    def filter(self, record: logging.LogRecord) -> bool:
        # uvicorn access log format: 'IP:PORT - "METHOD /path HTTP/1.1" STATUS'
        message = record.getMessage()

        if '200 OK' in message or '200' in str(getattr(record, 'args', '')):
            if '/health' in message:
                return False
            # UI polls the self-upgrade status while an operation runs
            if '"GET ' in message and '/self-upgrade ' in message:
                return False
        return True


def setup_logging(level: str = 'INFO', log_file: str = 'dockpilot.log'):
    """Configure application logging with rotation"""
    from .paths import LOG_DIR

    os.makedirs(LOG_DIR, mode=0o700, exist_ok=True)

    root_logger = logging.getLogger()

    # Replace handlers installed by libraries imported before us
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_handler.setFormatter(formatter)

    # Max 10MB per file, keep 14 backups
    file_handler = RotatingFileHandler(
        os.path.join(LOG_DIR, log_file),
        maxBytes=10*1024*1024,
        backupCount=14,
        encoding='utf-8'
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.addFilter(HealthCheckFilter())


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_list(name: str) -> List[str]:
    value = _env(name, '')
    return [item.strip() for item in value.split(',') if item.strip()]


def detect_host_platform(override: Optional[str] = None) -> str:
    """
    Platform string used for manifest selection.

    Examples:
        >>> detect_host_platform('linux/arm/v7')
        'linux/arm/v7'
        >>> detect_host_platform()  # on an x86_64 host
        'linux/amd64'
    """
    if override and override.strip():
        return override.strip()
    machine = platform.machine().lower()
    return f"linux/{_MACHINE_ARCH.get(machine, machine)}"


def normalize_base_path(value: str) -> str:
    """
    Validate the URL prefix the supervisor API is mounted under.

    Raises:
        ValueError: path does not start with "/" or is just "/"
    """
    path = value.strip()
    if not path.startswith('/'):
        raise ValueError(f"Base path must start with '/': {value!r}")
    path = path.rstrip('/')
    if not path:
        raise ValueError("Base path must not be '/'")
    return path


@dataclass
class AppSettings:
    """Settings for check and update cycles"""

    database_url: str = DEFAULT_DATABASE_URL
    log_level: str = 'INFO'
    docker_bin: str = 'docker'
    compose_bin: str = 'docker'
    docker_host: Optional[str] = None
    docker_config_path: Optional[str] = None
    host_platform: str = field(default_factory=detect_host_platform)

    @classmethod
    def from_env(cls) -> 'AppSettings':
        return cls(
            database_url=_env('DATABASE_URL', DEFAULT_DATABASE_URL),
            log_level=_env('LOG_LEVEL', 'INFO'),
            docker_bin=_env('DOCKER_BIN', 'docker'),
            compose_bin=_env('COMPOSE_BIN', 'docker'),
            docker_host=_env('DOCKER_HOST'),
            docker_config_path=_env('DOCKER_CONFIG'),
            host_platform=detect_host_platform(_env('HOST_PLATFORM')),
        )

    def command_env(self) -> dict:
        """Extra environment for docker/compose invocations"""
        if self.docker_host:
            return {'DOCKER_HOST': self.docker_host}
        return {}


@dataclass
class SupervisorSettings:
    """Settings for the self-upgrade supervisor process"""

    http_addr: str = DEFAULT_SUPERVISOR_HTTP_ADDR
    base_path: str = DEFAULT_BASE_PATH
    target_image_repo: str = DEFAULT_TARGET_IMAGE_REPO
    target_container_id: Optional[str] = None
    target_compose_project: Optional[str] = None
    target_compose_service: Optional[str] = None
    target_compose_files: List[str] = field(default_factory=list)
    docker_bin: str = 'docker'
    compose_bin: str = 'docker-compose'
    docker_host: Optional[str] = None
    state_path: str = SUPERVISOR_STATE_PATH
    app_name: str = 'dockpilot'
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'SupervisorSettings':
        return cls(
            http_addr=_env('SUPERVISOR_HTTP_ADDR', DEFAULT_SUPERVISOR_HTTP_ADDR),
            base_path=normalize_base_path(_env('SUPERVISOR_BASE_PATH', DEFAULT_BASE_PATH)),
            target_image_repo=_env('SUPERVISOR_TARGET_IMAGE_REPO', DEFAULT_TARGET_IMAGE_REPO),
            target_container_id=_env('SUPERVISOR_TARGET_CONTAINER_ID'),
            target_compose_project=_env('SUPERVISOR_TARGET_COMPOSE_PROJECT'),
            target_compose_service=_env('SUPERVISOR_TARGET_COMPOSE_SERVICE'),
            target_compose_files=_env_list('SUPERVISOR_TARGET_COMPOSE_FILES'),
            docker_bin=_env('DOCKER_BIN', 'docker'),
            compose_bin=_env('SUPERVISOR_COMPOSE_BIN', 'docker-compose'),
            docker_host=_env('DOCKER_HOST'),
            state_path=_env('SUPERVISOR_STATE_PATH', SUPERVISOR_STATE_PATH),
            log_level=_env('LOG_LEVEL', 'INFO'),
        )

    def command_env(self) -> dict:
        if self.docker_host:
            return {'DOCKER_HOST': self.docker_host}
        return {}

    def split_http_addr(self):
        """Return (host, port) for uvicorn"""
        host, _, port = self.http_addr.rpartition(':')
        if not host or not port.isdigit():
            raise ValueError(f"Invalid supervisor HTTP address: {self.http_addr!r}")
        return host, int(port)
