"""
Unit tests for the registry adapter.

HTTP is replaced at RegistryAdapter._send; nothing leaves the process.

Tests verify:
- Manifest list platform selection (exact, unique base, ambiguous)
- Architecture verdicts
- Bearer challenge / token flow and token caching
- Link header pagination of tag lists
"""

import json
from unittest.mock import AsyncMock

import pytest

from updates.image_ref import ImageReference
from updates.registry_adapter import (
    RegistryAdapter,
    RegistryError,
    RegistryResponse,
    TokenCache,
    compute_arch_match,
    parse_link_next,
    parse_manifest,
    parse_www_authenticate,
)
from updates.types import ArchMatch
from utils.registry_credentials import DockerConfigCredentials


def _response(status=200, body=None, headers=None):
    raw = json.dumps(body).encode() if body is not None else b""
    return RegistryResponse(status=status, headers={k.lower(): v for k, v in (headers or {}).items()}, body=raw)


def _index(*platforms):
    """Manifest list with one entry per (platform, digest) pair"""
    manifests = []
    for platform, digest in platforms:
        parts = platform.split("/")
        entry = {"digest": digest, "platform": {"os": parts[0], "architecture": parts[1]}}
        if len(parts) > 2:
            entry["platform"]["variant"] = parts[2]
        manifests.append(entry)
    return {"schemaVersion": 2, "manifests": manifests}


@pytest.mark.unit
class TestParseManifest:
    def test_exact_platform_match(self):
        manifest = _index(("linux/amd64", "sha256:a"), ("linux/arm64", "sha256:b"))
        info = parse_manifest(manifest, "sha256:index", "linux/arm64")
        assert info.digest == "sha256:b"
        assert info.architectures == ["linux/amd64", "linux/arm64"]

    def test_exact_variant_wins_over_base(self):
        manifest = _index(("linux/arm/v6", "sha256:v6"), ("linux/arm/v7", "sha256:v7"))
        assert parse_manifest(manifest, None, "linux/arm/v7").digest == "sha256:v7"

    def test_unique_base_platform_is_fallback(self):
        manifest = _index(("linux/amd64", "sha256:a"), ("linux/arm64/v8", "sha256:b"))
        assert parse_manifest(manifest, None, "linux/arm64").digest == "sha256:b"

    def test_two_arm_variants_are_ambiguous(self):
        """
        Scenario:
        - Host reports linux/arm without a variant
        - Index offers linux/arm/v6 and linux/arm/v7
        - No digest is selected and the index digest is not used
        """
        manifest = _index(("linux/arm/v6", "sha256:v6"), ("linux/arm/v7", "sha256:v7"), ("linux/amd64", "sha256:a"))
        info = parse_manifest(manifest, "sha256:index", "linux/arm")
        assert info.digest is None
        assert info.architectures == ["linux/amd64", "linux/arm/v6", "linux/arm/v7"]

    def test_missing_platform_gives_no_digest(self):
        manifest = _index(("linux/amd64", "sha256:a"))
        info = parse_manifest(manifest, "sha256:index", "linux/s390x")
        assert info.digest is None
        assert info.architectures == ["linux/amd64"]

    def test_architectures_deduplicated(self):
        manifest = _index(("linux/amd64", "sha256:a"), ("linux/amd64", "sha256:a2"))
        assert parse_manifest(manifest, None, "linux/amd64").architectures == ["linux/amd64"]

    def test_single_platform_manifest_uses_header_digest(self):
        manifest = {"schemaVersion": 2, "os": "linux", "architecture": "amd64", "layers": []}
        info = parse_manifest(manifest, "sha256:single", "linux/amd64")
        assert info.digest == "sha256:single"
        assert info.architectures == ["linux/amd64"]


@pytest.mark.unit
class TestComputeArchMatch:
    def test_exact(self):
        assert compute_arch_match("linux/amd64", ["linux/amd64"]) == ArchMatch.MATCH

    def test_variant_dropped(self):
        assert compute_arch_match("linux/arm64/v8", ["linux/arm64"]) == ArchMatch.MATCH

    def test_mismatch(self):
        assert compute_arch_match("linux/arm64", ["linux/amd64"]) == ArchMatch.MISMATCH

    def test_unknown_when_empty(self):
        assert compute_arch_match("linux/amd64", []) == ArchMatch.UNKNOWN


@pytest.mark.unit
class TestHeaderParsing:
    def test_www_authenticate(self):
        challenge = parse_www_authenticate(
            'Bearer realm="https://auth.docker.io/token",service="registry.docker.io"'
        )
        assert challenge == {"realm": "https://auth.docker.io/token", "service": "registry.docker.io"}

    def test_www_authenticate_basic_rejected(self):
        assert parse_www_authenticate('Basic realm="x"') is None

    def test_www_authenticate_requires_realm(self):
        assert parse_www_authenticate('Bearer service="x"') is None

    def test_link_next_relative(self):
        url = parse_link_next('</v2/a/tags/list?n=2&last=b>; rel="next"', "https://ghcr.io/v2/a/tags/list")
        assert url == "https://ghcr.io/v2/a/tags/list?n=2&last=b"

    def test_link_without_next(self):
        assert parse_link_next('</v2/a/tags/list>; rel="prev"', "https://ghcr.io/") is None


@pytest.mark.unit
class TestRegistryAdapter:
    @pytest.mark.asyncio
    async def test_bearer_challenge_then_cached_token(self):
        """
        Scenario:
        - First request answers 401 with a Bearer challenge
        - Token endpoint returns access_token
        - Request is retried with the token; a second lookup reuses it
        """
        adapter = RegistryAdapter()
        challenge = {"WWW-Authenticate": 'Bearer realm="https://ghcr.io/token",service="ghcr.io"'}
        calls = []

        async def send(url, headers, params=None):
            calls.append((url, dict(headers), params))
            if url == "https://ghcr.io/token":
                return _response(200, {"access_token": "tok", "expires_in": 300})
            if headers.get("Authorization") == "Bearer tok":
                return _response(200, {"tags": ["1.0"]})
            return _response(401, headers=challenge)

        adapter._send = send
        image = ImageReference.parse("ghcr.io/acme/app:1.0")

        assert await adapter.list_tags(image) == ["1.0"]
        token_calls = [c for c in calls if c[0] == "https://ghcr.io/token"]
        assert token_calls[0][2] == {"scope": "repository:acme/app:pull", "service": "ghcr.io"}
        assert len(adapter.tokens) == 1

        await adapter.list_tags(image)
        assert len([c for c in calls if c[0] == "https://ghcr.io/token"]) == 1

    @pytest.mark.asyncio
    async def test_token_request_uses_docker_config_credentials(self):
        creds = DockerConfigCredentials({"ghcr.io": ("bot", "secret")})
        adapter = RegistryAdapter(credentials=creds)
        seen = {}

        async def send(url, headers, params=None):
            if url == "https://ghcr.io/token":
                seen["auth"] = headers.get("Authorization")
                return _response(200, {"token": "tok"})
            if headers.get("Authorization") == "Bearer tok":
                return _response(200, {"tags": []})
            return _response(401, headers={"WWW-Authenticate": 'Bearer realm="https://ghcr.io/token"'})

        adapter._send = send
        await adapter.list_tags(ImageReference.parse("ghcr.io/acme/app"))
        assert seen["auth"] == "Basic Ym90OnNlY3JldA=="

    @pytest.mark.asyncio
    async def test_tag_pagination(self):
        adapter = RegistryAdapter()
        pages = {
            "https://registry-1.docker.io/v2/library/nginx/tags/list": _response(
                200, {"tags": ["1.24", "1.25"]},
                {"Link": '</v2/library/nginx/tags/list?last=1.25&n=2>; rel="next"'},
            ),
            "https://registry-1.docker.io/v2/library/nginx/tags/list?last=1.25&n=2": _response(
                200, {"tags": ["1.26"]},
            ),
        }
        adapter._send = AsyncMock(side_effect=lambda url, headers, params=None: pages[url])

        assert await adapter.list_tags(ImageReference.parse("nginx")) == ["1.24", "1.25", "1.26"]

    @pytest.mark.asyncio
    async def test_manifest_request_sends_accept_and_caches(self):
        adapter = RegistryAdapter()
        adapter._send = AsyncMock(return_value=_response(
            200, _index(("linux/amd64", "sha256:a")), {"Docker-Content-Digest": "sha256:index"},
        ))
        image = ImageReference.parse("nginx:1.25")

        info = await adapter.get_manifest(image, "1.27", "linux/amd64")
        again = await adapter.get_manifest(image, "1.27", "linux/amd64")

        assert info.digest == "sha256:a"
        assert again == info
        assert adapter._send.await_count == 1
        url, headers = adapter._send.await_args.args[:2]
        assert url == "https://registry-1.docker.io/v2/library/nginx/manifests/1.27"
        assert "application/vnd.oci.image.index.v1+json" in headers["Accept"]

    @pytest.mark.asyncio
    async def test_not_found_raises(self):
        adapter = RegistryAdapter()
        adapter._send = AsyncMock(return_value=_response(404))
        with pytest.raises(RegistryError) as exc_info:
            await adapter.get_manifest(ImageReference.parse("nginx"), "nope", "linux/amd64")
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_unauthorized_without_challenge_raises(self):
        adapter = RegistryAdapter()
        adapter._send = AsyncMock(return_value=_response(401))
        with pytest.raises(RegistryError):
            await adapter.list_tags(ImageReference.parse("nginx"))


@pytest.mark.unit
class TestTokenCache:
    def test_expired_token_dropped(self):
        cache = TokenCache()
        key = ("realm", "svc", "scope")
        cache.set(key, "tok", ttl_seconds=0)
        assert cache.get(key) is None
        assert len(cache) == 0

    def test_valid_token_returned(self):
        cache = TokenCache()
        key = ("realm", "svc", "scope")
        cache.set(key, "tok")
        assert cache.get(key) == "tok"
