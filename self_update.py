"""Detects the container this process runs in, so updates never destroy it."""

import logging
import re
import socket
import threading
from typing import Callable, Optional

from docker_api import DockerAPIError

logger = logging.getLogger(__name__)

CGROUP_FILE = '/proc/self/cgroup'
MOUNTINFO_FILE = '/proc/self/mountinfo'

_CGROUP_ID = re.compile(r'docker[/-]([a-f0-9]{64})')
# cgroup v2 leaves /proc/self/cgroup as "0::/"; the source of Docker's
# bind-mounted /etc/hostname still carries the ID
_MOUNTINFO_ID = re.compile(r'/containers/([a-f0-9]{64})/hostname$')
HOSTNAME_MOUNT = '/etc/hostname'
_SHORT_ID = re.compile(r'^[a-f0-9]{12}$')

_UNRESOLVED = object()


def ids_match(a: str, b: str) -> bool:
    """Same container when either ID is a prefix of the other (12 vs 64 chars)."""
    if not a or not b:
        return False
    return a.startswith(b) or b.startswith(a)


class SelfUpdateGuard:
    """
    Resolves and memoizes the management process's own container ID.

    Lookup order: the cgroup file, mountinfo, then the hostname (Docker's
    default short container ID) matched against the daemon's containers.
    """

    def __init__(self, docker, cgroup_file: str = CGROUP_FILE,
                 mountinfo_file: str = MOUNTINFO_FILE,
                 hostname: Callable[[], str] = socket.gethostname):
        self.docker = docker
        self.cgroup_file = cgroup_file
        self.mountinfo_file = mountinfo_file
        self.hostname = hostname
        self._own_id = _UNRESOLVED
        self._lock = threading.Lock()

    def _read_id(self, path: str, pattern: re.Pattern) -> Optional[str]:
        try:
            with open(path, 'r') as f:
                match = pattern.search(f.read())
        except OSError as e:
            logger.debug(f"Could not read {path}: {e}")
            return None
        return match.group(1) if match else None

    def _read_mountinfo_id(self) -> Optional[str]:
        """ID from the mount backing this process's own /etc/hostname.

        Fields are "id parent major:minor root mount-point ..."; other mounts
        under /var/lib/docker/containers belong to other containers when
        running on the host.
        """
        try:
            with open(self.mountinfo_file, 'r') as f:
                lines = f.read().splitlines()
        except OSError as e:
            logger.debug(f"Could not read {self.mountinfo_file}: {e}")
            return None
        for line in lines:
            fields = line.split()
            if len(fields) < 5 or fields[4] != HOSTNAME_MOUNT:
                continue
            match = _MOUNTINFO_ID.search(fields[3])
            if match:
                return match.group(1)
        return None

    def _resolve(self) -> Optional[str]:
        own_id = self._read_id(self.cgroup_file, _CGROUP_ID)
        if own_id:
            return own_id

        own_id = self._read_mountinfo_id()
        if own_id:
            return own_id

        hostname = self.hostname() or ''
        if _SHORT_ID.match(hostname):
            for container in self.docker.list_containers(all=True):
                if container.get('Id', '').startswith(hostname):
                    return container['Id']
        return None

    def own_container_id(self) -> Optional[str]:
        """Own container ID, or None when not running in a container.

        A lookup cut short by a daemon error is not memoized and is retried
        on the next call.
        """
        with self._lock:
            if self._own_id is not _UNRESOLVED:
                return self._own_id
            try:
                own_id = self._resolve()
            except (DockerAPIError, OSError) as e:
                logger.warning(f"Could not determine own container ID: {e}")
                return None
            self._own_id = own_id
            if own_id:
                logger.info(f"Running inside container {own_id[:12]}")
            return own_id

    def is_self(self, container_id: str) -> bool:
        """True when *container_id* is the container this process runs in."""
        return ids_match(container_id, self.own_container_id() or '')
