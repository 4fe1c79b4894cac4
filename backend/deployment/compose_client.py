"""
Compose CLI command builder.

Works with both the `docker compose` plugin and the standalone
`docker-compose` binary. Every command carries the project's compose files,
optional env file and project name, followed by the action.

Also writes the single-service image override fragments that pin a service
to a specific image without touching the user's compose files.
"""

import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import yaml

from utils.command_runner import CommandSpec

logger = logging.getLogger(__name__)

DEFAULT_PROJECT_NAME = "dockpilot"


def is_docker_cli(binary: str) -> bool:
    """
    True when the binary is the docker CLI (compose is a subcommand).

    Examples:
        >>> is_docker_cli("/usr/bin/docker")
        True
        >>> is_docker_cli("docker-compose")
        False
    """
    name = os.path.basename(binary.replace("\\", "/")).lower()
    return name in ("docker", "docker.exe")


def sanitize_project_name(name: str, default: str = DEFAULT_PROJECT_NAME) -> str:
    """
    Reduce a name to what compose accepts as a project name.

    Lowercase letters, digits, '-' and '_' are kept; whitespace becomes '-';
    everything else is dropped. Falls back to the default if nothing is left.

    Examples:
        >>> sanitize_project_name("My Stack!")
        'my-stack'
    """
    cleaned = []
    for ch in name.strip().lower():
        if ch.isascii() and (ch.isalnum() or ch in "-_"):
            cleaned.append(ch)
        elif ch.isspace():
            cleaned.append("-")
    result = "".join(cleaned)
    return result or default


class ComposeOverrideError(Exception):
    """Override fragment could not be written."""
    pass


@dataclass
class ComposeProject:
    """Everything needed to address one compose project from the CLI"""

    binary: str = "docker"
    files: List[str] = field(default_factory=list)
    project_name: Optional[str] = None
    env_file: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)

    def _base_args(self, extra_files: Optional[List[str]] = None) -> List[str]:
        args = []
        if is_docker_cli(self.binary):
            args.append("compose")
        if self.project_name:
            args.extend(["--project-name", self.project_name])
        for path in list(self.files) + list(extra_files or []):
            args.extend(["-f", path])
        if self.env_file:
            args.extend(["--env-file", self.env_file])
        return args

    def _spec(self, action: List[str], extra_files: Optional[List[str]] = None) -> CommandSpec:
        return CommandSpec(
            program=self.binary,
            args=self._base_args(extra_files) + action,
            env=dict(self.env),
        )

    def pull(self, service: str, extra_files: Optional[List[str]] = None) -> CommandSpec:
        return self._spec(["pull", service], extra_files)

    def up(self, service: str, extra_files: Optional[List[str]] = None) -> CommandSpec:
        return self._spec(["up", "-d", service], extra_files)

    def up_no_pull(self, service: str) -> CommandSpec:
        """Re-create from whatever image is tagged locally"""
        return self._spec(["up", "-d", "--pull", "never", service])

    def ps_quiet(self, service: str) -> CommandSpec:
        return self._spec(["ps", "-q", service])

    def up_force_pull(self, service: str, extra_files: Optional[List[str]] = None) -> CommandSpec:
        """Re-create one service only, always pulling, leaving dependencies alone"""
        return self._spec(["up", "-d", "--no-deps", "--pull", "always", service], extra_files)


def render_image_override(service: str, image_ref: str) -> str:
    """
    Compose fragment pinning one service to an image.

    Examples:
        >>> print(render_image_override("web", "nginx:1.27"), end="")
        services:
          web:
            image: nginx:1.27
    """
    return yaml.safe_dump(
        {"services": {service: {"image": image_ref}}},
        default_flow_style=False,
        sort_keys=False,
    )


def write_image_override(path: str, service: str, image_ref: str) -> str:
    """Write the override fragment to a fixed path (temp file + rename)"""
    directory = os.path.dirname(os.path.abspath(path))
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".override-", suffix=".yml", dir=directory)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(render_image_override(service, image_ref))
        os.replace(tmp_path, path)
    except OSError as e:
        raise ComposeOverrideError(f"Failed to write compose override {path}: {e}") from e
    logger.debug(f"Wrote compose override {path}: {service} -> {image_ref}")
    return path


def write_temp_image_override(service: str, image_ref: str) -> str:
    """Write the override fragment to a fresh temp file; caller removes it"""
    try:
        fd, path = tempfile.mkstemp(prefix="dockpilot-override-", suffix=".yml")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(render_image_override(service, image_ref))
    except OSError as e:
        raise ComposeOverrideError(f"Failed to write compose override: {e}") from e
    return path


_SERVICE_NAME = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")


def is_valid_service_name(name: str) -> bool:
    return bool(name and _SERVICE_NAME.match(name))
