"""
Deployment module for DockPilot

Compose CLI command building and image override fragments.
"""

from .compose_client import ComposeProject, is_docker_cli, sanitize_project_name

__all__ = [
    "ComposeProject",
    "is_docker_cli",
    "sanitize_project_name",
]
