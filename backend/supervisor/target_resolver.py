"""
Self-upgrade target resolution.

Finds the container running this application and everything needed to
re-create it through compose. Resolved fresh for every attempt because the
container is replaced by each upgrade.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from config.settings import DEFAULT_HEALTH_PORT, ENV_PREFIX, SupervisorSettings
from utils.command_runner import CommandError, CommandRunner, CommandTimeoutError, run_checked
from utils.docker_cli import ContainerDetails, DockerCli, parse_container_inspect, parse_ps_lines

logger = logging.getLogger(__name__)

LABEL_PROJECT = "com.docker.compose.project"
LABEL_SERVICE = "com.docker.compose.service"
LABEL_CONFIG_FILES = "com.docker.compose.project.config_files"
SUPERVISOR_SERVICE = "supervisor"
HTTP_ADDR_ENV = f"{ENV_PREFIX}HTTP_ADDR"

PS_TIMEOUT_SECONDS = 30
INSPECT_TIMEOUT_SECONDS = 10


class TargetResolutionError(Exception):
    """Target container cannot be determined without operator configuration"""
    pass


@dataclass
class TargetRuntime:
    container_id: str
    container_address: str
    health_port: int
    compose_project: str
    compose_service: str
    compose_files: List[str] = field(default_factory=list)
    current_image_ref: str = ""
    current_image_id: str = ""

    @property
    def base_url(self) -> str:
        return f"http://{self.container_address}:{self.health_port}"


def image_ref_matches_repo(image_ref: str, repo: str) -> bool:
    """
    Examples:
        >>> image_ref_matches_repo("ghcr.io/a/b:1.2", "ghcr.io/a/b")
        True
        >>> image_ref_matches_repo("ghcr.io/a/bc:1.2", "ghcr.io/a/b")
        False
    """
    return image_ref == repo or image_ref.startswith(f"{repo}:") or image_ref.startswith(f"{repo}@")


def parse_http_port(addr: Optional[str], default: int = DEFAULT_HEALTH_PORT) -> int:
    """Port from a host:port listen address, default when missing or invalid"""
    if not addr:
        return default
    _, _, port = addr.strip().rpartition(':')
    if port.isdigit() and 0 < int(port) < 65536:
        return int(port)
    return default


def _all_readable(paths: List[str]) -> bool:
    return bool(paths) and all(os.path.isfile(p) and os.access(p, os.R_OK) for p in paths)


class TargetResolver:
    def __init__(self, runner: CommandRunner, settings: SupervisorSettings):
        self.runner = runner
        self.settings = settings
        self.docker = DockerCli(binary=settings.docker_bin, env=settings.command_env())

    async def _inspect(self, container_id: str) -> ContainerDetails:
        try:
            output = await run_checked(self.runner, self.docker.inspect_json(container_id), INSPECT_TIMEOUT_SECONDS)
            return parse_container_inspect(output.stdout)
        except (CommandError, CommandTimeoutError, ValueError) as e:
            raise TargetResolutionError(f"Cannot inspect container {container_id}: {e}") from e

    async def _discover(self) -> ContainerDetails:
        repo = self.settings.target_image_repo
        try:
            output = await run_checked(self.runner, self.docker.ps_json(), PS_TIMEOUT_SECONDS)
        except (CommandError, CommandTimeoutError) as e:
            raise TargetResolutionError(f"Cannot list containers: {e}") from e

        matches = [c for c in parse_ps_lines(output.stdout) if image_ref_matches_repo(c.image, repo)]
        if not matches:
            raise TargetResolutionError(f"No running container uses image {repo}")

        details = [await self._inspect(c.id) for c in matches]
        if len(details) == 1:
            return details[0]

        configured_service = self.settings.target_compose_service
        desired = configured_service or self.settings.app_name

        by_service = [d for d in details if d.labels.get(LABEL_SERVICE) == desired]
        if len(by_service) == 1:
            return by_service[0]

        if not configured_service:
            non_supervisor = [d for d in details if d.labels.get(LABEL_SERVICE) != SUPERVISOR_SERVICE]
            if len(non_supervisor) == 1:
                return non_supervisor[0]

        project = self.settings.target_compose_project
        if project:
            in_project = [d for d in details if d.labels.get(LABEL_PROJECT) == project]
            if len(in_project) == 1:
                return in_project[0]

        raise TargetResolutionError(
            f"{len(details)} containers use image {repo}; set "
            f"{ENV_PREFIX}SUPERVISOR_TARGET_CONTAINER_ID or the target compose service/project"
        )

    def _compose_files(self, details: ContainerDetails) -> List[str]:
        label = details.labels.get(LABEL_CONFIG_FILES, "")
        from_label = [p.strip() for p in label.split(",") if p.strip()]
        if _all_readable(from_label):
            return from_label

        configured = list(self.settings.target_compose_files)
        if _all_readable(configured):
            if from_label:
                logger.info("Compose files from container labels are not readable here, using configured files")
            return configured

        raise TargetResolutionError(
            "No readable compose files: container labels and "
            f"{ENV_PREFIX}SUPERVISOR_TARGET_COMPOSE_FILES are missing or unreadable"
        )

    @staticmethod
    def _address(details: ContainerDetails, project: str) -> str:
        preferred = details.networks.get(f"{project}_default")
        if preferred:
            return preferred
        for name in sorted(details.networks):
            if details.networks[name]:
                return details.networks[name]
        raise TargetResolutionError(f"Container {details.id[:12]} has no network address")

    async def resolve(self) -> TargetRuntime:
        """
        Raises:
            TargetResolutionError: container, project, service, compose files
            or address cannot be determined
        """
        if self.settings.target_container_id:
            details = await self._inspect(self.settings.target_container_id)
        else:
            details = await self._discover()

        project = details.labels.get(LABEL_PROJECT) or self.settings.target_compose_project
        if not project:
            raise TargetResolutionError("Target container has no compose project label and none is configured")

        service = self.settings.target_compose_service or details.labels.get(LABEL_SERVICE)
        if not service:
            raise TargetResolutionError("Target container has no compose service label and none is configured")

        return TargetRuntime(
            container_id=details.id or self.settings.target_container_id or "",
            container_address=self._address(details, project),
            health_port=parse_http_port(details.env.get(HTTP_ADDR_ENV)),
            compose_project=project,
            compose_service=service,
            compose_files=self._compose_files(details),
            current_image_ref=details.config_image,
            current_image_id=details.image_id,
        )
