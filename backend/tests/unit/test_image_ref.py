"""
Unit tests for image reference parsing.

Tests verify:
- Registry detection from the first path segment
- library/ prefix on Docker Hub
- Default tag and digest-only references
- strip_reference / apply_reference on raw compose image strings
"""

import pytest

from updates.image_ref import (
    ImageReference,
    ImageReferenceError,
    apply_reference,
    normalize_digest,
    strip_reference,
    tag_reference,
)


@pytest.mark.unit
class TestImageReferenceParse:
    """Splitting raw image strings into registry / repository / reference"""

    @pytest.mark.parametrize("raw,registry,repository,reference", [
        ("nginx", "docker.io", "library/nginx", "latest"),
        ("nginx:1.25", "docker.io", "library/nginx", "1.25"),
        ("linuxserver/sonarr:4.0.1", "docker.io", "linuxserver/sonarr", "4.0.1"),
        ("ghcr.io/user/app:v1.0", "ghcr.io", "user/app", "v1.0"),
        ("myregistry.com:5000/app", "myregistry.com:5000", "app", "latest"),
        ("localhost/app:dev", "localhost", "app", "dev"),
        ("index.docker.io/redis:7", "docker.io", "library/redis", "7"),
    ])
    def test_components(self, raw, registry, repository, reference):
        image = ImageReference.parse(raw)
        assert image.registry == registry
        assert image.repository == repository
        assert image.reference == reference

    def test_digest_only_reference_uses_digest(self):
        image = ImageReference.parse("app@sha256:abc123")
        assert image.reference == "sha256:abc123"
        assert image.digest == "sha256:abc123"
        assert image.is_digest

    def test_tag_and_digest_keeps_tag_as_reference(self):
        image = ImageReference.parse("ghcr.io/a/b:1.2@sha256:def")
        assert image.reference == "1.2"
        assert image.digest == "sha256:def"
        assert not image.is_digest

    def test_first_segment_without_dot_is_not_a_registry(self):
        image = ImageReference.parse("team/app:2")
        assert image.registry == "docker.io"
        assert image.repository == "team/app"

    def test_docker_hub_api_host(self):
        assert ImageReference.parse("nginx").api_host == "registry-1.docker.io"
        assert ImageReference.parse("ghcr.io/a/b").api_host == "ghcr.io"

    def test_reference_never_empty(self):
        for raw in ("", "   ", "nginx:", "nginx@"):
            with pytest.raises(ImageReferenceError):
                ImageReference.parse(raw)

    def test_with_reference_formats_tag_and_digest(self):
        image = ImageReference.parse("nginx:1.25")
        assert image.with_reference("1.27") == "docker.io/library/nginx:1.27"
        assert image.with_reference("sha256:abc") == "docker.io/library/nginx@sha256:abc"
        assert str(image) == "docker.io/library/nginx:1.25"


@pytest.mark.unit
class TestRawReferenceRewriting:
    """Compose image strings keep their original form when retargeted"""

    def test_strip_keeps_registry_port(self):
        assert strip_reference("registry:5000/app:v1") == "registry:5000/app"
        assert strip_reference("registry:5000/app") == "registry:5000/app"

    def test_apply_digest_wins_over_tag(self):
        assert apply_reference("nginx:1.25", tag="1.27", digest="sha256:abc") == "nginx@sha256:abc"

    def test_apply_tag(self):
        assert apply_reference("ghcr.io/a/b@sha256:old", tag="2.0") == "ghcr.io/a/b:2.0"

    def test_apply_nothing_keeps_raw(self):
        assert apply_reference(" nginx:1.25 ") == "nginx:1.25"

    def test_tag_reference_drops_digest(self):
        assert tag_reference("nginx:1.25@sha256:abc") == "nginx:1.25"
        assert tag_reference("registry:5000/app:v1@sha256:abc") == "registry:5000/app:v1"
        assert tag_reference(" nginx:1.25 ") == "nginx:1.25"

    @pytest.mark.parametrize("raw", ["nginx@sha256:abc", "registry:5000/app@sha256:abc"])
    def test_tag_reference_digest_only(self, raw):
        assert tag_reference(raw) is None

    def test_normalize_digest(self):
        assert normalize_digest("abc") == "sha256:abc"
        assert normalize_digest(" sha256:abc ") == "sha256:abc"
        assert normalize_digest("") is None
        assert normalize_digest(None) is None
