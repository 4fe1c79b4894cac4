"""
Registry Adapter for update checks

Lists tags and resolves manifests through the Registry v2 API. Supports
Docker Hub, GHCR and any other OCI-compliant registry that uses Bearer token
auth discovered from WWW-Authenticate challenges.

All network traffic goes through RegistryAdapter._send so tests can replace
one coroutine instead of a whole HTTP client.
"""

import aiohttp
import asyncio
import base64
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin

from updates.image_ref import ImageReference
from updates.types import ArchMatch, ManifestInfo
from utils.registry_credentials import DockerConfigCredentials

logger = logging.getLogger(__name__)

MANIFEST_ACCEPT = (
    "application/vnd.oci.image.index.v1+json,"
    "application/vnd.docker.distribution.manifest.list.v2+json,"
    "application/vnd.oci.image.manifest.v1+json,"
    "application/vnd.docker.distribution.manifest.v2+json"
)

DEFAULT_TOKEN_TTL_SECONDS = 240
MAX_TAG_PAGES = 50


class RegistryError(Exception):
    """Registry request failed"""

    def __init__(self, message: str, status: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.url = url


@dataclass
class RegistryResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)  # lowercase keys
    body: bytes = b""

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


class RegistryCache:
    """Simple in-memory cache with TTL for registry responses"""

    MAX_CACHE_SIZE = 1000

    def __init__(self, ttl_seconds: int = 120):
        self._cache: Dict[str, Tuple[Any, datetime]] = {}
        self._ttl = timedelta(seconds=ttl_seconds)

    def get(self, key: str) -> Optional[Any]:
        if key in self._cache:
            value, timestamp = self._cache[key]
            if datetime.now(timezone.utc) - timestamp < self._ttl:
                return value
            del self._cache[key]
        return None

    def set(self, key: str, value: Any):
        if len(self._cache) >= self.MAX_CACHE_SIZE:
            self._cleanup_expired()
            if len(self._cache) >= self.MAX_CACHE_SIZE:
                # Drop the oldest 10%
                oldest = sorted(self._cache.items(), key=lambda x: x[1][1])
                for k, _ in oldest[:self.MAX_CACHE_SIZE // 10]:
                    del self._cache[k]
                logger.warning("Registry cache exceeded limit, removed oldest entries")
        self._cache[key] = (value, datetime.now(timezone.utc))

    def _cleanup_expired(self):
        now = datetime.now(timezone.utc)
        expired = [k for k, (_, ts) in self._cache.items() if now - ts >= self._ttl]
        for key in expired:
            del self._cache[key]

    def clear(self):
        self._cache.clear()


class TokenCache:
    """
    Bearer tokens keyed by (realm, service, scope).

    Owned by one RegistryAdapter; never shared through module state.
    """

    def __init__(self):
        self._tokens: Dict[Tuple[str, str, str], Tuple[str, datetime]] = {}

    def get(self, key: Tuple[str, str, str]) -> Optional[str]:
        entry = self._tokens.get(key)
        if not entry:
            return None
        token, expires_at = entry
        if expires_at <= datetime.now(timezone.utc):
            del self._tokens[key]
            return None
        return token

    def set(self, key: Tuple[str, str, str], token: str, ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS):
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=max(ttl_seconds, 0))
        self._tokens[key] = (token, expires_at)

    def clear(self):
        self._tokens.clear()

    def __len__(self) -> int:
        return len(self._tokens)


def parse_www_authenticate(header: Optional[str]) -> Optional[Dict[str, str]]:
    """
    Parse a Bearer WWW-Authenticate challenge.

    Example:
        Input: 'Bearer realm="https://ghcr.io/token",service="ghcr.io",scope="repository:user/app:pull"'
        Output: {"realm": "https://ghcr.io/token", "service": "ghcr.io",
                 "scope": "repository:user/app:pull"}

    Returns None for other schemes or a challenge without realm.
    """
    if not header:
        return None

    scheme, _, params_str = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        logger.warning(f"Unexpected WWW-Authenticate scheme: {header[:20]}")
        return None

    params = {}
    for key, quoted, bare in re.findall(r'(\w+)=(?:"([^"]*)"|([^,\s]+))', params_str):
        params[key.lower()] = quoted if quoted else bare

    if not params.get("realm"):
        logger.warning("WWW-Authenticate missing 'realm' parameter")
        return None
    return params


def parse_link_next(header: Optional[str], base_url: str) -> Optional[str]:
    """
    Next page URL from a Link header, resolved against the request URL.

    Example:
        '</v2/app/tags/list?n=100&last=v9>; rel="next"' → https://host/v2/app/tags/list?n=100&last=v9
    """
    if not header:
        return None
    for part in header.split(","):
        match = re.match(r'\s*<([^>]+)>\s*;(.*)', part)
        if match and re.search(r'rel="?next"?', match.group(2)):
            return urljoin(base_url, match.group(1))
    return None


def _platform_of(entry: dict) -> Optional[str]:
    platform = entry.get("platform") or {}
    os_name = platform.get("os")
    arch = platform.get("architecture")
    if not os_name or not arch:
        return None
    variant = platform.get("variant")
    return f"{os_name}/{arch}/{variant}" if variant else f"{os_name}/{arch}"


def _base_platform(platform: str) -> str:
    return "/".join(platform.split("/")[:2])


def parse_manifest(manifest: dict, header_digest: Optional[str], platform: str) -> ManifestInfo:
    """
    Digest for the host platform plus every platform the image offers.

    Manifest list / OCI index:
      - exact os/arch[/variant] match wins
      - otherwise a single entry with the same os/arch is used; several
        (e.g. two ARM variants) are ambiguous and give no digest
    Single-platform manifest:
      - digest from the Docker-Content-Digest header, platform from the
        top-level os/architecture
    """
    entries = manifest.get("manifests")
    if isinstance(entries, list):
        architectures = set()
        exact_digest = None
        base_matches: List[str] = []
        wanted_base = _base_platform(platform)

        for entry in entries:
            if not isinstance(entry, dict):
                continue
            entry_platform = _platform_of(entry)
            if not entry_platform:
                continue
            architectures.add(entry_platform)
            digest = entry.get("digest")
            if not digest:
                continue
            if entry_platform == platform and exact_digest is None:
                exact_digest = digest
            elif _base_platform(entry_platform) == wanted_base and digest not in base_matches:
                base_matches.append(digest)

        digest = exact_digest
        if digest is None and len(base_matches) == 1:
            digest = base_matches[0]
        elif digest is None and len(base_matches) > 1:
            logger.debug(f"{len(base_matches)} manifests match {wanted_base}, no digest selected")

        return ManifestInfo(digest=digest, architectures=sorted(architectures))

    architectures = []
    os_name = manifest.get("os")
    arch = manifest.get("architecture")
    if os_name and arch:
        variant = manifest.get("variant")
        architectures.append(f"{os_name}/{arch}/{variant}" if variant else f"{os_name}/{arch}")
    return ManifestInfo(digest=header_digest, architectures=architectures)


def compute_arch_match(platform: str, architectures: List[str]) -> ArchMatch:
    """
    Examples:
        >>> compute_arch_match("linux/arm64/v8", ["linux/amd64", "linux/arm64"])
        <ArchMatch.MATCH: 'match'>
        >>> compute_arch_match("linux/amd64", [])
        <ArchMatch.UNKNOWN: 'unknown'>
    """
    if not architectures:
        return ArchMatch.UNKNOWN
    if platform in architectures or _base_platform(platform) in architectures:
        return ArchMatch.MATCH
    return ArchMatch.MISMATCH


class RegistryAdapter:
    """
    Registry v2 client for tag listing and manifest resolution.

    Usage:
        adapter = RegistryAdapter(credentials=DockerConfigCredentials.load())
        tags = await adapter.list_tags(ImageReference.parse("nginx:1.25"))
        info = await adapter.get_manifest(image, "1.27", "linux/amd64")
    """

    def __init__(
        self,
        credentials: Optional[DockerConfigCredentials] = None,
        token_cache: Optional[TokenCache] = None,
        request_timeout: float = 30,
        scheme: str = "https",
        cache_ttl: int = 120,
    ):
        self.credentials = credentials or DockerConfigCredentials()
        self.tokens = token_cache or TokenCache()
        self.cache = RegistryCache(cache_ttl)
        self.request_timeout = request_timeout
        self.scheme = scheme

    def _base_url(self, image: ImageReference) -> str:
        return f"{self.scheme}://{image.api_host}/v2/{image.repository}"

    async def _send(
        self,
        url: str,
        headers: Dict[str, str],
        params: Optional[Dict[str, str]] = None,
    ) -> RegistryResponse:
        """GET a URL and read the whole body"""
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    url,
                    headers=headers,
                    params=params,
                    timeout=aiohttp.ClientTimeout(total=self.request_timeout),
                ) as response:
                    body = await response.read()
                    return RegistryResponse(
                        status=response.status,
                        headers={k.lower(): v for k, v in response.headers.items()},
                        body=body,
                    )
        except asyncio.TimeoutError:
            raise RegistryError(f"Timeout requesting {url}", url=url)
        except aiohttp.ClientError as e:
            raise RegistryError(f"Error requesting {url}: {e}", url=url) from e

    def _basic_auth_header(self, registry: str) -> Optional[str]:
        creds = self.credentials.get(registry)
        if not creds:
            return None
        encoded = base64.b64encode(f"{creds[0]}:{creds[1]}".encode()).decode()
        return f"Basic {encoded}"

    async def _fetch_token(self, image: ImageReference, challenge: Dict[str, str]) -> str:
        realm = challenge["realm"]
        service = challenge.get("service", "")
        scope = f"repository:{image.repository}:pull"
        key = (realm, service, scope)

        cached = self.tokens.get(key)
        if cached:
            return cached

        params = {"scope": scope}
        if service:
            params["service"] = service
        headers = {}
        basic = self._basic_auth_header(image.registry)
        if basic:
            headers["Authorization"] = basic

        response = await self._send(realm, headers, params)
        if not 200 <= response.status < 300:
            raise RegistryError(
                f"Token request to {realm} failed with status {response.status}",
                status=response.status,
                url=realm,
            )
        try:
            data = response.json()
        except (ValueError, UnicodeDecodeError) as e:
            raise RegistryError(f"Token endpoint {realm} returned invalid JSON", url=realm) from e

        token = data.get("token") or data.get("access_token")
        if not token:
            raise RegistryError(f"Token endpoint {realm} returned no token", url=realm)

        ttl = data.get("expires_in")
        ttl = int(ttl) if isinstance(ttl, (int, float)) and ttl > 0 else DEFAULT_TOKEN_TTL_SECONDS
        self.tokens.set(key, token, ttl)
        logger.debug(f"Obtained registry token from {realm} for {scope}")
        return token

    async def _get(self, image: ImageReference, url: str, headers: Optional[Dict[str, str]] = None) -> RegistryResponse:
        """
        GET with Bearer challenge handling.

        Raises:
            RegistryError: non-2xx status after authentication
        """
        headers = dict(headers or {})
        response = await self._send(url, headers)

        if response.status == 401:
            challenge = parse_www_authenticate(response.header("WWW-Authenticate"))
            if challenge is None:
                raise RegistryError(f"Unauthorized and no Bearer challenge for {url}", status=401, url=url)
            token = await self._fetch_token(image, challenge)
            headers["Authorization"] = f"Bearer {token}"
            response = await self._send(url, headers)

        if not 200 <= response.status < 300:
            raise RegistryError(f"Registry returned {response.status} for {url}", status=response.status, url=url)
        return response

    async def list_tags(self, image: ImageReference) -> List[str]:
        """All tags of a repository, following Link pagination"""
        url = f"{self._base_url(image)}/tags/list"
        tags: List[str] = []

        for _ in range(MAX_TAG_PAGES):
            response = await self._get(image, url)
            try:
                data = response.json()
            except (ValueError, UnicodeDecodeError) as e:
                raise RegistryError(f"Invalid tag list JSON from {url}", url=url) from e
            tags.extend(t for t in (data.get("tags") or []) if isinstance(t, str))

            url = parse_link_next(response.header("Link"), url)
            if not url:
                break
        else:
            logger.warning(f"Stopped tag listing for {image.name} after {MAX_TAG_PAGES} pages")

        logger.debug(f"Listed {len(tags)} tags for {image.name}")
        return tags

    async def get_manifest(self, image: ImageReference, reference: str, platform: str) -> ManifestInfo:
        """Digest and architectures for one tag or digest"""
        cache_key = f"{image.name}:{reference}:{platform}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        url = f"{self._base_url(image)}/manifests/{reference}"
        response = await self._get(image, url, {"Accept": MANIFEST_ACCEPT})
        try:
            manifest = response.json()
        except (ValueError, UnicodeDecodeError) as e:
            raise RegistryError(f"Invalid manifest JSON from {url}", url=url) from e

        info = parse_manifest(manifest, response.header("Docker-Content-Digest"), platform)
        self.cache.set(cache_key, info)
        return info
