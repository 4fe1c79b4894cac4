"""
Docker CLI command builders and output parsers.

Builders return CommandSpec values; nothing here executes anything.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from utils.command_runner import CommandSpec

logger = logging.getLogger(__name__)

HEALTH_STATUS_FORMAT = "{{.State.Health.Status}}"
HAS_HEALTHCHECK_FORMAT = "{{if .State.Health}}1{{else}}0{{end}}"
IMAGE_ID_FORMAT = "{{.Image}}"
JSON_FORMAT = "{{json .}}"


@dataclass
class DockerCli:
    """docker binary plus the environment every invocation runs with"""

    binary: str = "docker"
    env: Dict[str, str] = field(default_factory=dict)

    def _spec(self, *args: str) -> CommandSpec:
        return CommandSpec(program=self.binary, args=list(args), env=dict(self.env))

    def health_status(self, container_id: str) -> CommandSpec:
        return self._spec("inspect", "--format", HEALTH_STATUS_FORMAT, container_id)

    def has_healthcheck(self, container_id: str) -> CommandSpec:
        return self._spec("inspect", "--format", HAS_HEALTHCHECK_FORMAT, container_id)

    def image_id(self, container_id: str) -> CommandSpec:
        return self._spec("inspect", "--format", IMAGE_ID_FORMAT, container_id)

    def tag(self, image_id: str, image_ref: str) -> CommandSpec:
        return self._spec("image", "tag", image_id, image_ref)

    def pull(self, image_ref: str) -> CommandSpec:
        return self._spec("pull", image_ref)

    def ps_json(self) -> CommandSpec:
        return self._spec("ps", "--format", JSON_FORMAT)

    def inspect_json(self, container_id: str) -> CommandSpec:
        return self._spec("inspect", container_id, "--format", JSON_FORMAT)

    def image_inspect_json(self, image_id: str) -> CommandSpec:
        return self._spec("image", "inspect", image_id, "--format", JSON_FORMAT)


@dataclass
class RunningContainer:
    """One line of `docker ps --format {{json .}}`"""
    id: str
    image: str


@dataclass
class ContainerDetails:
    """The subset of `docker inspect` the supervisor needs"""
    id: str
    image_id: str
    config_image: str
    labels: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    networks: Dict[str, str] = field(default_factory=dict)  # network name -> IP


def parse_ps_lines(stdout: str) -> List[RunningContainer]:
    """Parse newline-delimited JSON from `docker ps`"""
    containers = []
    for line in stdout.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            row = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(f"Skipping unparseable docker ps line: {line[:120]}")
            continue
        container_id = row.get("ID") or row.get("Id") or ""
        if container_id:
            containers.append(RunningContainer(id=container_id, image=row.get("Image") or ""))
    return containers


def _load_inspect_object(stdout: str) -> dict:
    data = json.loads(stdout)
    # Without --format docker prints a one-element array
    if isinstance(data, list):
        if not data:
            raise ValueError("docker inspect returned an empty array")
        data = data[0]
    if not isinstance(data, dict):
        raise ValueError("docker inspect did not return an object")
    return data


def parse_container_inspect(stdout: str) -> ContainerDetails:
    """
    Parse `docker inspect <id> --format {{json .}}`.

    Raises:
        ValueError: output is not a JSON object
    """
    data = _load_inspect_object(stdout)
    config = data.get("Config") or {}

    env = {}
    for item in config.get("Env") or []:
        key, sep, value = item.partition("=")
        if sep:
            env[key] = value

    networks = {}
    network_settings = data.get("NetworkSettings") or {}
    for name, net in (network_settings.get("Networks") or {}).items():
        net = net or {}
        # Older engines used IpAddress
        ip = net.get("IPAddress") or net.get("IpAddress") or ""
        networks[name] = ip

    return ContainerDetails(
        id=data.get("Id") or data.get("ID") or "",
        image_id=data.get("Image") or "",
        config_image=config.get("Image") or "",
        labels=dict(config.get("Labels") or {}),
        env=env,
        networks=networks,
    )


def parse_repo_digests(stdout: str) -> List[str]:
    """RepoDigests from `docker image inspect <id> --format {{json .}}`"""
    data = _load_inspect_object(stdout)
    return [d for d in (data.get("RepoDigests") or []) if isinstance(d, str)]


def digest_for_repo(repo_digests: List[str], repo: str) -> Optional[str]:
    """
    Pick the digest recorded for a repository.

    Examples:
        >>> digest_for_repo(["ghcr.io/a/b@sha256:abc"], "ghcr.io/a/b")
        'sha256:abc'
    """
    prefix = f"{repo}@"
    for entry in repo_digests:
        if entry.startswith(prefix):
            return entry[len(prefix):]
    return None
