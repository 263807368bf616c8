"""
Registry side of update detection: image reference parsing, pinned-tag
classification and a small client for the registry v2 HTTP API.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

# Constants
DEFAULT_REGISTRY = "registry-1.docker.io"
DEFAULT_AUTH_URL = "https://auth.docker.io/token"
DEFAULT_AUTH_SERVICE = "registry.docker.io"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"
MANIFEST_TIMEOUT = 15
TAGS_TIMEOUT = 10
MAX_TAGS = 50
MANIFEST_ACCEPT_HEADER = (
    "application/vnd.docker.distribution.manifest.v2+json, "
    "application/vnd.docker.distribution.manifest.list.v2+json, "
    "application/vnd.oci.image.manifest.v1+json, "
    "application/vnd.oci.image.index.v1+json"
)

# Tags a registry repoints over time; never treated as a pinned release
FLOATING_TAGS = frozenset([
    'latest', 'stable', 'main', 'master', 'edge',
    'dev', 'nightly', 'beta', 'alpha', 'rc',
])

# Shown first in tag listings, in this order
PRIORITY_TAGS = ('latest', 'stable', 'lts', 'main', 'master')

_VERSION_PREFIX = re.compile(r'^v?\d')
_DIGIT = re.compile(r'\d')
_DIGITS = re.compile(r'(\d+)')


class RegistryError(Exception):
    """Registry request failed."""


class RegistryUnauthorized(RegistryError):
    """Registry answered 401 (private image or auth required)."""


class RegistryNotFound(RegistryError):
    """Registry answered 404 for the requested manifest."""


class RegistryTimeout(RegistryError):
    """Registry did not answer within the request timeout."""


@dataclass(frozen=True)
class ImageReference:
    """Registry host, repository path and tag of an image name."""
    registry: str
    repository: str
    tag: str

    @property
    def is_docker_hub(self) -> bool:
        return self.registry == DEFAULT_REGISTRY

    @property
    def image_name(self) -> str:
        """Pullable name; Docker Hub images are left unqualified."""
        if self.is_docker_hub:
            return f"{self.repository}:{self.tag}"
        return f"{self.registry}/{self.repository}:{self.tag}"

    def with_tag(self, tag: str) -> 'ImageReference':
        return ImageReference(self.registry, self.repository, tag)


def split_tag(image: str) -> Tuple[str, str]:
    """Split ``name[:tag]`` into (name, tag), defaulting the tag to ``latest``.

    ``myregistry.io:5000/app`` -> (myregistry.io:5000/app, latest)
    """
    # Tag is after the last colon, unless that colon belongs to a registry port
    tag_index = image.rfind(':')
    if tag_index > 0 and '/' not in image[tag_index:]:
        return image[:tag_index], image[tag_index + 1:]
    return image, DEFAULT_TAG


def parse_image_reference(image: str) -> ImageReference:
    """
    Split an image name into registry, repository and tag.

    ``nginx`` -> (registry-1.docker.io, library/nginx, latest)
    ``myregistry.io:5000/app:v1.2.3`` -> (myregistry.io:5000, app, v1.2.3)
    ``ghcr.io/org/app`` -> (ghcr.io, org/app, latest)

    Never raises; any string yields a reference.
    """
    registry = DEFAULT_REGISTRY
    repository, tag = split_tag(image)

    # First path component is a registry host if it has a dot or a port
    first_slash = repository.find('/')
    if first_slash > 0:
        potential = repository[:first_slash]
        if '.' in potential or ':' in potential:
            registry = potential
            repository = repository[first_slash + 1:]

    # Docker Hub official images live under library/
    if registry == DEFAULT_REGISTRY and '/' not in repository:
        repository = f"{DEFAULT_NAMESPACE}/{repository}"

    return ImageReference(registry, repository, tag)


def is_pinned_version_tag(tag: str) -> bool:
    """Classify a tag as a pinned release (``1.22.4``, ``v2.0.0-rc1``).

    Floating names from FLOATING_TAGS are never pinned.  Anything else is
    pinned when it contains a digit and also a dot, a dash, or starts with
    an optional ``v`` followed by a digit.  Ambiguous tags are treated as
    floating.
    """
    if tag.lower() in FLOATING_TAGS:
        return False
    if _DIGIT.search(tag):
        return '.' in tag or '-' in tag or bool(_VERSION_PREFIX.match(tag))
    return False


def _natural_key(tag: str) -> List[Tuple[int, int, str]]:
    """Sort key comparing digit runs numerically ('2.0' > '1.10' > '1.9')."""
    key = []
    for part in _DIGITS.split(tag.lower()):
        if not part:
            continue
        if _DIGITS.fullmatch(part):
            key.append((0, int(part), ''))
        else:
            key.append((1, 0, part))
    return key


def sort_tags(tags: List[str], limit: int = MAX_TAGS) -> List[str]:
    """Priority tags first (in PRIORITY_TAGS order), then newest-looking first."""
    priority = sorted(
        (t for t in tags if t.lower() in PRIORITY_TAGS),
        key=lambda t: PRIORITY_TAGS.index(t.lower())
    )
    others = sorted(
        (t for t in tags if t.lower() not in PRIORITY_TAGS),
        key=_natural_key,
        reverse=True
    )
    return (priority + others)[:limit]


def registry_urls(image: str) -> Dict[str, str]:
    """Human-facing registry and changelog pages for an image."""
    ref = parse_image_reference(image)

    if ref.is_docker_hub:
        namespace, _, repo = ref.repository.partition('/')
        if namespace == DEFAULT_NAMESPACE:
            registry_url = f"https://hub.docker.com/_/{repo}"
        else:
            registry_url = f"https://hub.docker.com/r/{namespace}/{repo}"
        changelog_url = f"{registry_url}/tags"
    elif 'ghcr.io' in ref.registry:
        name = ref.repository.split('/')[-1]
        registry_url = f"https://github.com/{ref.repository}/pkgs/container/{name}"
        changelog_url = registry_url
    elif 'gcr.io' in ref.registry:
        registry_url = f"https://console.cloud.google.com/gcr/images/{ref.repository}"
        changelog_url = registry_url
    else:
        registry_url = f"https://{ref.registry}"
        changelog_url = registry_url

    return {
        'imageName': image,
        'registry': ref.registry,
        'repository': ref.repository,
        'tag': ref.tag,
        'registryUrl': registry_url,
        'changelogUrl': changelog_url,
    }


class RegistryClient:
    """Client for the registry v2 API: pull tokens, manifest digests, tag lists."""

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    def get_token(self, ref: ImageReference) -> str:
        """
        Get a pull-scoped bearer token.

        Only Docker Hub issues anonymous pull tokens here; other registries
        get an empty token and are queried unauthenticated.
        """
        if not ref.is_docker_hub:
            return ''

        logger.debug(f"Getting token for {ref.repository}")
        try:
            response = self.session.get(
                DEFAULT_AUTH_URL,
                params={
                    'service': DEFAULT_AUTH_SERVICE,
                    'scope': f"repository:{ref.repository}:pull",
                },
                timeout=MANIFEST_TIMEOUT,
            )
            response.raise_for_status()
            return response.json().get('token') or ''
        except requests.Timeout as e:
            raise RegistryTimeout(f"Token request timeout for {ref.repository}") from e
        except (requests.RequestException, ValueError) as e:
            raise RegistryError(f"Could not get token for {ref.repository}: {e}") from e

    def get_manifest_digest(self, image: str) -> str:
        """
        Get the manifest digest the registry currently serves for an image.

        Returns the Docker-Content-Digest header, which for multi-arch images
        is the digest of the manifest list / index itself.

        Raises:
            RegistryUnauthorized: on HTTP 401
            RegistryNotFound: on HTTP 404
            RegistryTimeout: when no answer within MANIFEST_TIMEOUT seconds
            RegistryError: on any other failure
        """
        ref = parse_image_reference(image)
        logger.debug(
            f"Checking remote digest for {image} "
            f"(registry={ref.registry}, repository={ref.repository}, tag={ref.tag})"
        )

        token = self.get_token(ref)
        headers = {'Accept': MANIFEST_ACCEPT_HEADER}
        if token:
            headers['Authorization'] = f"Bearer {token}"

        url = f"https://{ref.registry}/v2/{ref.repository}/manifests/{ref.tag}"
        try:
            response = self.session.get(url, headers=headers, timeout=MANIFEST_TIMEOUT)
        except requests.Timeout as e:
            raise RegistryTimeout("Request timeout") from e
        except requests.RequestException as e:
            raise RegistryError(f"Failed to get digest: {e}") from e

        digest = response.headers.get('Docker-Content-Digest')
        logger.debug(f"Remote digest for {image}: {digest or 'not found'} (status {response.status_code})")
        if digest:
            return digest
        if response.status_code == 401:
            raise RegistryUnauthorized("Unauthorized - private image or auth required")
        if response.status_code == 404:
            raise RegistryNotFound("Image not found in registry")
        raise RegistryError(f"Failed to get digest: {response.status_code}")

    def list_tags(self, image: str) -> List[str]:
        """
        Get available tags for an image, sorted for display.

        Advisory only: any failure yields an empty list.
        """
        ref = parse_image_reference(image)
        try:
            token = self.get_token(ref)
            headers = {}
            if token:
                headers['Authorization'] = f"Bearer {token}"
            response = self.session.get(
                f"https://{ref.registry}/v2/{ref.repository}/tags/list",
                headers=headers,
                timeout=TAGS_TIMEOUT,
            )
            if response.status_code != 200:
                logger.debug(f"Tag listing for {ref.repository} returned {response.status_code}")
                return []
            tags = response.json().get('tags') or []
        except (RegistryError, requests.RequestException, ValueError) as e:
            logger.warning(f"Error getting tags for {ref.repository}: {e}")
            return []

        return sort_tags(tags)
