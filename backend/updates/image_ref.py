"""
Image reference parsing.

Splits a raw image string into registry, repository and reference (tag or
digest), normalized the way registries expect it:

    nginx                       → (docker.io, library/nginx, latest)
    nginx:1.25                  → (docker.io, library/nginx, 1.25)
    ghcr.io/user/app:v1.0       → (ghcr.io, user/app, v1.0)
    myregistry.com:5000/app     → (myregistry.com:5000, app, latest)
    app@sha256:abc              → (docker.io, library/app, sha256:abc)
"""

from dataclasses import dataclass
from typing import Optional

DEFAULT_REGISTRY = "docker.io"
DOCKER_HUB_API_HOST = "registry-1.docker.io"
DEFAULT_TAG = "latest"


class ImageReferenceError(ValueError):
    """Raw image string cannot be parsed"""
    pass


def _looks_like_registry(segment: str) -> bool:
    return "." in segment or ":" in segment or segment == "localhost"


@dataclass(frozen=True)
class ImageReference:
    registry: str
    repository: str
    reference: str
    digest: Optional[str] = None

    @classmethod
    def parse(cls, raw: str) -> "ImageReference":
        """
        Parse an image string.

        A reference given as both tag and digest (repo:tag@sha256:...) keeps
        the tag as reference and records the digest separately.

        Raises:
            ImageReferenceError: empty input or an invalid reference
        """
        image = (raw or "").strip()
        if not image:
            raise ImageReferenceError("Image reference is empty")

        digest = None
        if "@" in image:
            image, digest = image.split("@", 1)
            if not digest:
                raise ImageReferenceError(f"Empty digest in image reference: {raw}")

        registry = DEFAULT_REGISTRY
        if "/" in image:
            first, rest = image.split("/", 1)
            if _looks_like_registry(first):
                registry = first.lower()
                image = rest

        tag = None
        # A colon after the last slash separates the tag
        colon = image.rfind(":")
        if colon > image.rfind("/"):
            image, tag = image[:colon], image[colon + 1:]
            if not tag:
                raise ImageReferenceError(f"Empty tag in image reference: {raw}")

        repository = image
        if not repository:
            raise ImageReferenceError(f"Missing repository in image reference: {raw}")

        if registry in ("docker.io", "index.docker.io") and "/" not in repository:
            repository = f"library/{repository}"
        if registry == "index.docker.io":
            registry = DEFAULT_REGISTRY

        reference = tag or digest or DEFAULT_TAG
        if "/" in reference:
            raise ImageReferenceError(f"Invalid reference '{reference}' in {raw}")

        return cls(registry=registry, repository=repository, reference=reference, digest=digest)

    @property
    def api_host(self) -> str:
        """Host serving the /v2 API for this registry"""
        if self.registry == DEFAULT_REGISTRY:
            return DOCKER_HUB_API_HOST
        return self.registry

    @property
    def is_digest(self) -> bool:
        return self.reference.startswith("sha256:")

    @property
    def name(self) -> str:
        """registry/repository, fully qualified"""
        return f"{self.registry}/{self.repository}"

    def with_reference(self, reference: str) -> str:
        if reference.startswith("sha256:"):
            return f"{self.name}@{reference}"
        return f"{self.name}:{reference}"

    def __str__(self) -> str:
        return self.with_reference(self.reference)


def strip_reference(raw: str) -> str:
    """
    Drop tag and digest from a raw image string, keeping its original form.

    Examples:
        >>> strip_reference("nginx:1.25")
        'nginx'
        >>> strip_reference("registry:5000/app:v1@sha256:abc")
        'registry:5000/app'
    """
    image = raw.strip().split("@", 1)[0]
    colon = image.rfind(":")
    if colon > image.rfind("/"):
        image = image[:colon]
    return image


def tag_reference(raw: str) -> Optional[str]:
    """
    The tag form of a raw image string, or None when only a digest pins it.

    docker image tag rejects digest references as the target name.

    Examples:
        >>> tag_reference("nginx:1.25@sha256:abc")
        'nginx:1.25'
        >>> tag_reference("nginx@sha256:abc") is None
        True
    """
    image, _, digest = raw.strip().partition("@")
    if digest and strip_reference(image) == image:
        return None
    return image


def apply_reference(raw: str, tag: Optional[str] = None, digest: Optional[str] = None) -> str:
    """
    Point a raw image string at a new tag or digest (digest wins).

    Examples:
        >>> apply_reference("nginx:1.25", tag="1.27")
        'nginx:1.27'
        >>> apply_reference("nginx:1.25", digest="sha256:abc")
        'nginx@sha256:abc'
    """
    base = strip_reference(raw)
    if digest:
        return f"{base}@{digest}"
    if tag:
        return f"{base}:{tag}"
    return raw.strip()


def normalize_digest(digest: Optional[str]) -> Optional[str]:
    """'abc' → 'sha256:abc'; empty → None"""
    if digest is None:
        return None
    digest = digest.strip()
    if not digest:
        return None
    if ":" not in digest:
        digest = f"sha256:{digest}"
    return digest
