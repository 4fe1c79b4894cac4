"""
Registry Credentials Utility

Credential lookup for Docker registries from a Docker CLI config.json
(the same file `docker login` writes). Used by the registry adapter when a
token endpoint asks for authentication.
"""

import base64
import binascii
import json
import logging
import os
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

DOCKER_HUB_ALIASES = {"index.docker.io", "registry-1.docker.io", "docker.io", "registry.hub.docker.com"}


def default_docker_config_path() -> str:
    config_dir = os.getenv("DOCKER_CONFIG") or os.path.join(os.path.expanduser("~"), ".docker")
    return os.path.join(config_dir, "config.json")


def normalize_registry_key(key: str) -> str:
    """
    Normalize an `auths` key to a bare registry host.

    Examples:
        https://index.docker.io/v1/ → docker.io
        ghcr.io → ghcr.io
        https://registry.example.com:5000/v2 → registry.example.com:5000
    """
    host = key.strip().lower()
    for scheme in ("https://", "http://"):
        if host.startswith(scheme):
            host = host[len(scheme):]
    host = host.rstrip("/")
    for suffix in ("/v1", "/v2"):
        if host.endswith(suffix):
            host = host[: -len(suffix)]
    host = host.rstrip("/")
    if host in DOCKER_HUB_ALIASES:
        return "docker.io"
    return host


def _decode_auth(value: str) -> Optional[Tuple[str, str]]:
    try:
        decoded = base64.b64decode(value).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return username, password


class DockerConfigCredentials:
    """
    Basic credentials per registry host, loaded once from config.json.

    Entries with `auth` (base64 "user:pass") or `identitytoken` are used;
    credential helpers (credsStore) are not consulted.
    """

    def __init__(self, auths: Optional[Dict[str, Tuple[str, str]]] = None):
        self._auths = dict(auths or {})

    @classmethod
    def load(cls, path: Optional[str] = None) -> "DockerConfigCredentials":
        path = path or default_docker_config_path()
        if not os.path.exists(path):
            logger.debug(f"No docker config at {path}, registry requests are anonymous")
            return cls()

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable docker config {path}: {e}")
            return cls()

        return cls.from_config(data)

    @classmethod
    def from_config(cls, data: dict) -> "DockerConfigCredentials":
        auths = {}
        for key, entry in (data.get("auths") or {}).items():
            if not isinstance(entry, dict):
                continue
            registry = normalize_registry_key(key)
            if entry.get("identitytoken"):
                auths[registry] = ("oauth2", entry["identitytoken"])
                continue
            if entry.get("auth"):
                pair = _decode_auth(entry["auth"])
                if pair:
                    auths[registry] = pair
                else:
                    logger.warning(f"Skipping malformed auth entry for {registry}")
        return cls(auths)

    def get(self, registry: str) -> Optional[Tuple[str, str]]:
        """(username, password) for a registry host, or None"""
        return self._auths.get(normalize_registry_key(registry))

    def __len__(self) -> int:
        return len(self._auths)
