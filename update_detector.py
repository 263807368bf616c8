"""
Decides whether a newer image is available for a container's image name by
comparing the registry's manifest digest with the local image's repo digest.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

import requests

from docker_api import DockerAPIError
from registry import (RegistryError, parse_image_reference,
                      is_pinned_version_tag)
from update_cache import UpdateCache, UpdateCheckResult

logger = logging.getLogger(__name__)

NO_TAG_ERROR = 'No image tag'
MAX_CHECK_WORKERS = 8


def is_untagged(image: str) -> bool:
    """True for empty names and digest-only references (``sha256:...``, ``repo@sha256:...``)."""
    return not image or image.startswith('sha256:') or '@' in image


def _strip_sha(image_id: str) -> str:
    return image_id[len('sha256:'):] if image_id.startswith('sha256:') else image_id


def _matches_name(repo_tag: str, image: str) -> bool:
    # "nginx" and "nginx:latest" name the same image
    if repo_tag == image:
        return True
    if ':' not in image and repo_tag == f"{image}:latest":
        return True
    if image.endswith(':latest') and repo_tag == image[:-len(':latest')]:
        return True
    return False


def find_local_digest(images: List[Dict[str, Any]], image: str,
                      local_image_id: str) -> Optional[str]:
    """Repo digest of the first local image matching *image* by tag or ID."""
    wanted_id = _strip_sha(local_image_id or '')
    for img in images:
        matches_name = any(_matches_name(t, image) for t in img.get('RepoTags') or [])
        img_id = img.get('Id', '')
        matches_id = bool(local_image_id) and (
            img_id == local_image_id or _strip_sha(img_id) == wanted_id
        )
        if not (matches_name or matches_id):
            continue
        for repo_digest in img.get('RepoDigests') or []:
            if '@sha256:' in repo_digest:
                return repo_digest.split('@', 1)[1]
        return None
    return None


class UpdateDetector:
    """Per-image update check backed by an UpdateCache."""

    def __init__(self, docker, registry, cache: UpdateCache):
        self.docker = docker
        self.registry = registry
        self.cache = cache

    def check(self, image: str, local_image_id: str) -> UpdateCheckResult:
        """
        Check whether *image* has a newer version in its registry.

        Served from the cache while the entry is fresh and the local image ID
        is unchanged.  Registry and daemon failures never raise; they come
        back as ``has_update=False`` with ``error`` set.
        """
        if is_untagged(image):
            return UpdateCheckResult(
                has_update=False,
                checked_at=self.cache.clock(),
                local_image_id=local_image_id,
                error=NO_TAG_ERROR,
            )

        cached = self.cache.get(image, local_image_id)
        if cached is not None:
            return cached
        previous = self.cache.peek(image)
        if previous is not None and previous.local_image_id != local_image_id:
            logger.info(f"Cache invalidated for {image}: local image changed (rollback or update detected)")

        ref = parse_image_reference(image)
        pinned = is_pinned_version_tag(ref.tag)
        logger.debug(f"Tag '{ref.tag}' of {image} is {'a pinned version' if pinned else 'a floating tag'}")

        try:
            remote_digest = self.registry.get_manifest_digest(image)
            local_digest = find_local_digest(
                self.docker.list_images(all=True), image, local_image_id
            )
            logger.debug(f"Local digest for {image}: {local_digest or 'not found'}")

            has_update = bool(remote_digest and local_digest and remote_digest != local_digest)
            latest_digest = None

            # A pinned tag never moves; compare against 'latest' to spot newer releases
            if not has_update and pinned and ref.is_docker_hub:
                latest_image = f"{ref.repository}:latest"
                try:
                    latest_digest = self.registry.get_manifest_digest(latest_image)
                    if latest_digest and remote_digest and latest_digest != remote_digest:
                        logger.info(f"{latest_image} differs from pinned {image}")
                        has_update = True
                except (RegistryError, requests.RequestException) as e:
                    logger.warning(f"Could not check latest tag for {image}: {e}")

            result = UpdateCheckResult(
                has_update=has_update,
                checked_at=self.cache.clock(),
                local_image_id=local_image_id,
                remote_digest=remote_digest,
                local_digest=local_digest,
                latest_digest=latest_digest,
                is_pinned_version=pinned,
            )
            logger.info(f"{image}: update available: {has_update}")
        except (RegistryError, DockerAPIError, requests.RequestException, OSError) as e:
            logger.warning(f"Update check failed for {image}: {e}")
            result = UpdateCheckResult(
                has_update=False,
                checked_at=self.cache.clock(),
                local_image_id=local_image_id,
                is_pinned_version=pinned,
                error=str(e),
            )

        self.cache.set(image, result)
        return result

    def check_containers(self, containers: List[Dict[str, Any]]) -> Dict[str, UpdateCheckResult]:
        """
        Check running containers concurrently.

        Args:
            containers: entries from ``list_containers`` (``Id``, ``Image``,
                ``ImageID``, ``State``)

        Returns:
            Dict mapping container ID -> UpdateCheckResult for every running
            container with a tagged image
        """
        targets = [
            c for c in containers
            if c.get('State') == 'running' and not is_untagged(c.get('Image', ''))
        ]
        if not targets:
            return {}

        def run(container):
            try:
                return self.check(container['Image'], container.get('ImageID', ''))
            except Exception as e:
                logger.error(f"Update check crashed for {container['Image']}: {e}")
                return UpdateCheckResult(
                    has_update=False,
                    checked_at=self.cache.clock(),
                    local_image_id=container.get('ImageID', ''),
                    error=str(e),
                )

        max_workers = min(MAX_CHECK_WORKERS, len(targets))
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            results = list(executor.map(run, targets))

        return {c['Id']: r for c, r in zip(targets, results)}
