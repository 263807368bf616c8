"""Shared fixtures for dockermaid tests."""

import copy
from unittest.mock import MagicMock

import pytest

from recreator import ContainerRecreator
from self_update import SelfUpdateGuard
from update_cache import UpdateCache
from update_detector import UpdateDetector
from update_log import UpdateLogRecorder

# ---------------------------------------------------------------------------
# IDs and digests used across tests
# ---------------------------------------------------------------------------

WEB_ID = "a1b2c3d4e5f6" + "0" * 52
SELF_ID = "feedfacecafe" + "1" * 52
OLD_IMAGE_ID = "sha256:" + "aa" * 32
NEW_IMAGE_ID = "sha256:" + "bb" * 32
LOCAL_DIGEST = "sha256:" + "11" * 32
REMOTE_DIGEST = "sha256:" + "22" * 32


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeClock:
    """Settable replacement for time.time."""

    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_inspect(container_id=WEB_ID, name="web", image="nginx:1.25.3",
                 image_id=OLD_IMAGE_ID, running=True, network_mode="bridge",
                 networks=None, **config_overrides):
    """Build a ``docker inspect`` payload with realistic defaults."""
    config = {
        "Image": image,
        "Hostname": container_id[:12],
        "Domainname": "",
        "User": "",
        "Env": ["PATH=/usr/bin", "MODE=prod"],
        "Cmd": ["nginx", "-g", "daemon off;"],
        "Entrypoint": ["/docker-entrypoint.sh"],
        "Labels": {"com.example.role": "frontend"},
        "WorkingDir": "/srv",
        "ExposedPorts": {"80/tcp": {}},
        "Tty": False,
        "OpenStdin": False,
    }
    config.update(config_overrides)
    if networks is None:
        networks = {
            network_mode if network_mode != "default" else "bridge": {
                "Aliases": ["web", container_id[:12]],
                "IPAddress": "172.17.0.2",
            }
        }
    return {
        "Id": container_id,
        "Name": f"/{name}",
        "Image": image_id,
        "Created": "2024-01-01T00:00:00Z",
        "State": {"Status": "running" if running else "exited", "Running": running},
        "Config": config,
        "HostConfig": {
            "NetworkMode": network_mode,
            "Binds": ["/srv/data:/data:rw"],
            "PortBindings": {"80/tcp": [{"HostIp": "", "HostPort": "8080"}]},
            "RestartPolicy": {"Name": "unless-stopped", "MaximumRetryCount": 0},
            "Privileged": False,
            "CapAdd": ["NET_ADMIN"],
        },
        "NetworkSettings": {
            "Networks": networks,
            "Ports": {"80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "8080"}]},
        },
    }


def make_summary(container_id=WEB_ID, name="web", image="nginx:1.25.3",
                 image_id=OLD_IMAGE_ID, state="running"):
    """Build a ``list_containers`` entry."""
    return {
        "Id": container_id,
        "Names": [f"/{name}"],
        "Image": image,
        "ImageID": image_id,
        "State": state,
        "Status": "Up 2 hours" if state == "running" else "Exited (0)",
        "Created": 1_700_000_000,
        "Ports": [{"PrivatePort": 80, "PublicPort": 8080, "Type": "tcp"}],
        "Labels": {},
    }


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def docker():
    """MagicMock daemon client that behaves like a small, healthy daemon."""
    client = MagicMock()
    inspects = {WEB_ID: make_inspect()}

    def inspect(id_or_name):
        if id_or_name == "new-id":
            info = copy.deepcopy(inspects[WEB_ID])
            info["Id"] = "new-id"
            info["Image"] = client.replacement_image_id
            return info
        return copy.deepcopy(inspects[id_or_name])

    client.inspects = inspects
    client.replacement_image_id = NEW_IMAGE_ID
    client.inspect_container.side_effect = inspect
    client.create_container.return_value = "new-id"
    client.iter_pull.side_effect = lambda image, tag=None: iter([
        {"status": f"Pulling from {image}"},
        {"status": "Downloading", "progress": "[==>   ] 1MB/3MB", "id": "layer1"},
        {"status": "Status: Downloaded newer image"},
    ])
    client.list_containers.return_value = [make_summary()]
    client.list_images.return_value = [{
        "Id": OLD_IMAGE_ID,
        "RepoTags": ["nginx:1.25.3"],
        "RepoDigests": [f"nginx@{LOCAL_DIGEST}"],
    }]
    return client


@pytest.fixture
def registry():
    client = MagicMock()
    client.get_manifest_digest.return_value = REMOTE_DIGEST
    return client


@pytest.fixture
def cache(clock):
    return UpdateCache(clock=clock)


@pytest.fixture
def update_log():
    return UpdateLogRecorder()


@pytest.fixture
def detector(docker, registry, cache):
    return UpdateDetector(docker, registry, cache)


@pytest.fixture
def guard(tmp_path):
    """Guard resolving to SELF_ID through a fake cgroup file."""
    cgroup = tmp_path / "cgroup"
    cgroup.write_text(f"12:memory:/docker/{SELF_ID}\n")
    return SelfUpdateGuard(
        MagicMock(),
        cgroup_file=str(cgroup),
        mountinfo_file=str(tmp_path / "missing"),
        hostname=lambda: "not-a-container",
    )


@pytest.fixture
def recreator(docker, guard, cache, update_log, detector):
    return ContainerRecreator(docker, guard, cache, update_log, detector)
