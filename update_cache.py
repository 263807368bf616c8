"""TTL cache of per-image update check results."""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

CACHE_TTL = 5 * 60  # seconds


@dataclass
class UpdateCheckResult:
    """Outcome of one update check for an image name."""
    has_update: bool
    checked_at: float
    local_image_id: str = ''
    remote_digest: Optional[str] = None
    local_digest: Optional[str] = None
    latest_digest: Optional[str] = None
    is_pinned_version: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'hasUpdate': self.has_update,
            'checkedAt': int(self.checked_at * 1000),
            'remoteDigest': self.remote_digest,
            'localDigest': self.local_digest,
            'localImageId': self.local_image_id,
            'latestDigest': self.latest_digest,
            'isPinnedVersion': self.is_pinned_version,
            'error': self.error,
        }


class UpdateCache:
    """
    Image name -> last UpdateCheckResult.

    An entry is served only while it is younger than ``ttl`` seconds and was
    recorded against the same local image ID the caller sees now; a changed
    ID means the image was pulled or rolled back since the check.
    Concurrent writers for the same key are not ordered: the last write wins.
    """

    def __init__(self, ttl: float = CACHE_TTL, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[str, UpdateCheckResult] = {}
        self._lock = threading.Lock()

    def get(self, image: str, local_image_id: str) -> Optional[UpdateCheckResult]:
        with self._lock:
            entry = self._entries.get(image)
        if entry is None:
            return None
        if self.clock() - entry.checked_at >= self.ttl:
            return None
        if entry.local_image_id != local_image_id:
            return None
        return entry

    def peek(self, image: str) -> Optional[UpdateCheckResult]:
        """Return the stored entry regardless of age."""
        with self._lock:
            return self._entries.get(image)

    def set(self, image: str, result: UpdateCheckResult) -> None:
        with self._lock:
            self._entries[image] = result

    def invalidate(self, *images: str) -> None:
        with self._lock:
            for image in images:
                self._entries.pop(image, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def entries(self) -> List[UpdateCheckResult]:
        with self._lock:
            return list(self._entries.values())

    def updates_available(self) -> int:
        return sum(1 for entry in self.entries() if entry.has_update)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
