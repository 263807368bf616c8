#!/usr/bin/env python3
"""
DockerMaid - container image update monitor

Watches the containers of the local Docker daemon, detects when the registry
serves a newer image for a container's tag, and recreates containers on the
new image while preserving their runtime configuration.
"""

__version__ = "1.4.1"

import argparse
import json
import logging
import os
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import jsonschema

from docker_api import DockerClient, DockerAPIError
from log_demux import demux_log_frames
from recreator import ContainerRecreator, container_display_name
from registry import RegistryClient, parse_image_reference, registry_urls
from self_update import SelfUpdateGuard
from update_cache import UpdateCache
from update_detector import UpdateDetector
from update_log import UpdateLogRecorder

# Constants
DEFAULT_SETTINGS_FILE = "/data/settings.json"
DEFAULT_LOG_TAIL = 100

STATUS_MAP = {
    'running': 'running',
    'exited': 'exited',
    'paused': 'paused',
    'restarting': 'restarting',
    'dead': 'stopped',
    'created': 'stopped',
    'removing': 'stopped',
}

# Settings file schema
SETTINGS_SCHEMA = {
    "type": "object",
    "properties": {
        "checkInterval": {"type": "number", "minimum": 0},
        "autoUpdate": {"type": "boolean"},
        "lastCheck": {"type": ["string", "null"]}
    },
    "additionalProperties": False
}

LOG_FORMAT = '%(asctime)s - [%(name)s] - %(levelname)s - %(message)s'


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Configure the root handler once and return the application logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S %Z'))
        root.addHandler(handler)

    return logging.getLogger('dockermaid')


def map_container_status(state: str) -> str:
    return STATUS_MAP.get((state or '').lower(), 'stopped')


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class Settings:
    """User settings; check_interval is in minutes, 0 disables periodic checks."""
    check_interval: float = 0
    auto_update: bool = False
    last_check: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'checkInterval': self.check_interval,
            'autoUpdate': self.auto_update,
            'lastCheck': self.last_check,
        }


class SettingsStore:
    """Settings persisted as JSON, validated against SETTINGS_SCHEMA."""

    def __init__(self, settings_file: str = DEFAULT_SETTINGS_FILE):
        self.settings_file = Path(settings_file)
        self.logger = logging.getLogger('dockermaid.settings')
        self.settings = self._load()

    def _load(self) -> Settings:
        """Load settings from file, falling back to defaults."""
        if not self.settings_file.exists():
            return Settings()

        try:
            with open(self.settings_file, 'r') as f:
                data = json.load(f)
            jsonschema.validate(data, SETTINGS_SCHEMA)
        except json.JSONDecodeError as e:
            self.logger.warning(f"Error parsing settings file, using defaults: {e}")
            return Settings()
        except jsonschema.ValidationError as e:
            self.logger.warning(f"Settings validation failed, using defaults: {e.message}")
            return Settings()
        except IOError as e:
            self.logger.warning(f"Error loading settings: {e}")
            return Settings()

        return Settings(
            check_interval=data.get('checkInterval', 0),
            auto_update=data.get('autoUpdate', False),
            last_check=data.get('lastCheck'),
        )

    def save(self) -> None:
        """Write settings atomically; failures are logged, not raised."""
        try:
            self.settings_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self.settings_file.with_suffix('.tmp')
            with open(temp_file, 'w') as f:
                json.dump(self.settings.to_dict(), f, indent=2)
            temp_file.replace(self.settings_file)
        except (IOError, OSError) as e:
            self.logger.error(f"Error saving settings: {e}")

    def update(self, changes: Dict[str, Any]) -> Settings:
        """Apply ``checkInterval`` / ``autoUpdate`` from an API payload.

        Values of the wrong type are ignored, like unknown keys.
        """
        interval = changes.get('checkInterval')
        if isinstance(interval, (int, float)) and not isinstance(interval, bool) and interval >= 0:
            self.settings.check_interval = interval
        auto_update = changes.get('autoUpdate')
        if isinstance(auto_update, bool):
            self.settings.auto_update = auto_update
        self.save()
        return self.settings

    def touch_last_check(self) -> None:
        self.settings.last_check = datetime.now(timezone.utc).isoformat()
        self.save()


class DockerMaid:
    """Wires the daemon client, registry client, stores and services together."""

    def __init__(self, settings_file: str = DEFAULT_SETTINGS_FILE,
                 log_level: str = "INFO", docker: Optional[DockerClient] = None,
                 registry: Optional[RegistryClient] = None):
        self.logger = setup_logging(log_level)
        self.docker = docker or DockerClient()
        self.registry = registry or RegistryClient()
        self.settings = SettingsStore(settings_file)

        self.cache = UpdateCache()
        self.update_log = UpdateLogRecorder()
        self.detector = UpdateDetector(self.docker, self.registry, self.cache)
        self.guard = SelfUpdateGuard(self.docker)
        self.recreator = ContainerRecreator(
            self.docker, self.guard, self.cache, self.update_log, self.detector
        )

    # ── Containers ────────────────────────────────────────────────

    def list_containers(self, check_updates: bool = True) -> List[Dict[str, Any]]:
        """All containers, annotated with update status for the running ones."""
        containers = self.docker.list_containers(all=True)
        checks = self.detector.check_containers(containers) if check_updates else {}

        formatted = []
        for c in containers:
            check = checks.get(c['Id'])
            formatted.append({
                'id': c['Id'],
                'name': container_display_name(c),
                'image': c.get('Image', ''),
                'imageId': c.get('ImageID', ''),
                'status': map_container_status(c.get('State', '')),
                'state': c.get('Status', ''),
                'created': _iso(c.get('Created', 0)),
                'ports': [{
                    'privatePort': p.get('PrivatePort'),
                    'publicPort': p.get('PublicPort'),
                    'type': p.get('Type'),
                } for p in c.get('Ports') or []],
                'labels': c.get('Labels') or {},
                'hasUpdate': check.has_update if check else False,
                'updateCheckError': check.error if check else None,
                'isUpdating': False,
            })

        self.settings.touch_last_check()
        return formatted

    def get_container(self, container_id: str) -> Dict[str, Any]:
        info = self.docker.inspect_container(container_id)
        ports = []
        for port, bindings in ((info.get('NetworkSettings') or {}).get('Ports') or {}).items():
            number, _, proto = port.partition('/')
            host_port = bindings[0].get('HostPort') if bindings else None
            ports.append({
                'privatePort': int(number),
                'publicPort': int(host_port) if host_port else None,
                'type': proto or 'tcp',
            })
        state = (info.get('State') or {}).get('Status', '')
        return {
            'id': info['Id'],
            'name': info.get('Name', '').lstrip('/'),
            'image': info['Config'].get('Image', ''),
            'imageId': info.get('Image', ''),
            'status': map_container_status(state),
            'state': state,
            'created': info.get('Created'),
            'ports': ports,
            'labels': info['Config'].get('Labels') or {},
            'hasUpdate': False,
            'isUpdating': False,
        }

    def container_logs(self, container_id: str, tail: int = DEFAULT_LOG_TAIL,
                       since: int = 0) -> List[Dict[str, str]]:
        raw = self.docker.container_logs(container_id, tail=tail, since=since)
        return demux_log_frames(raw or b'')

    # ── Images ────────────────────────────────────────────────────

    def pull_image(self, image: str) -> None:
        """Pull an image without recreating anything."""
        self.recreator.pull(image)
        self.cache.invalidate(image)

    def available_tags(self, image: str) -> Dict[str, Any]:
        ref = parse_image_reference(image)
        return {
            'imageName': image,
            'repository': ref.repository,
            'currentTag': ref.tag,
            'tags': self.registry.list_tags(image),
        }

    def registry_urls(self, image: str) -> Dict[str, str]:
        return registry_urls(image)

    def list_images(self) -> List[Dict[str, Any]]:
        return [{
            'id': img.get('Id'),
            'repoTags': img.get('RepoTags') or [],
            'size': img.get('Size'),
            'created': _iso(img.get('Created', 0)),
        } for img in self.docker.list_images()]

    # ── Checks ────────────────────────────────────────────────────

    def periodic_check(self) -> int:
        """
        Run one detection pass over running containers.

        Applies updates afterwards when auto_update is enabled.

        Returns:
            Number of cached images with an update available
        """
        self.logger.info("Running periodic update check...")
        containers = self.docker.list_containers(all=False)
        self.detector.check_containers(containers)
        self.settings.touch_last_check()

        updates_available = self.cache.updates_available()
        self.logger.info(f"Periodic check complete. {updates_available} updates available.")

        if updates_available and self.settings.settings.auto_update:
            self.logger.info("Auto-update enabled, applying updates")
            self.recreator.update_all()
        return updates_available

    def status(self) -> Dict[str, Any]:
        containers = self.docker.list_containers(all=True)
        running = sum(1 for c in containers if c.get('State') == 'running')
        settings = self.settings.settings
        return {
            'isRunning': True,
            'version': __version__,
            'lastCheck': settings.last_check or datetime.now(timezone.utc).isoformat(),
            'totalContainers': len(containers),
            'runningContainers': running,
            'stoppedContainers': len(containers) - running,
            'updatesAvailable': self.cache.updates_available(),
            'settings': {
                'checkInterval': settings.check_interval,
                'autoUpdate': settings.auto_update,
            },
        }

    def docker_info(self) -> Dict[str, Any]:
        info = self.docker.info()
        return {
            'dockerVersion': info.get('ServerVersion'),
            'os': info.get('OperatingSystem'),
            'architecture': info.get('Architecture'),
            'cpus': info.get('NCPU'),
            'memory': info.get('MemTotal'),
            'containers': info.get('Containers'),
            'containersRunning': info.get('ContainersRunning'),
            'containersPaused': info.get('ContainersPaused'),
            'containersStopped': info.get('ContainersStopped'),
            'images': info.get('Images'),
        }


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2))


def main():
    parser = argparse.ArgumentParser(
        description='Container image update monitor'
    )
    parser.add_argument(
        '--settings',
        default=os.environ.get('SETTINGS_FILE', DEFAULT_SETTINGS_FILE),
        help='Path to settings JSON file (env: SETTINGS_FILE, default: /data/settings.json)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO'),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )
    commands = parser.add_subparsers(dest='command', required=True)

    commands.add_parser('check', help='Check running containers for image updates')

    update = commands.add_parser('update', help='Pull and recreate one container')
    update.add_argument('container', help='Container ID or name')
    update.add_argument('--tag', help='Move the container to this tag')

    update_all = commands.add_parser('update-all', help='Update every container with an update available')
    update_all.add_argument('--concurrency', type=int, default=1,
                            help='Containers recreated at once (default: 1)')

    logs = commands.add_parser('logs', help='Show container logs')
    logs.add_argument('container', help='Container ID or name')
    logs.add_argument('--tail', type=int, default=DEFAULT_LOG_TAIL)

    daemon = commands.add_parser('daemon', help='Run checks continuously')
    daemon.add_argument(
        '--interval',
        type=int,
        default=int(os.environ.get('CHECK_INTERVAL', '60')),
        help='Minutes between checks (env: CHECK_INTERVAL, default: 60)'
    )

    args = parser.parse_args()

    try:
        maid = DockerMaid(args.settings, args.log_level)

        if args.command == 'check':
            _print_json([c for c in maid.list_containers() if c['status'] == 'running'])
        elif args.command == 'update':
            result = maid.recreator.update_container(args.container, args.tag)
            _print_json(result.to_dict())
            if not result.success:
                sys.exit(1)
        elif args.command == 'update-all':
            _print_json(maid.recreator.update_all(args.concurrency).to_dict())
        elif args.command == 'logs':
            for line in maid.container_logs(args.container, tail=args.tail):
                print(f"[{line['stream']}] {line['message']}")
        elif args.command == 'daemon':
            maid.logger.info(f"Running in daemon mode, checking every {args.interval} minutes")
            while True:
                try:
                    maid.periodic_check()
                    time.sleep(args.interval * 60)
                except KeyboardInterrupt:
                    maid.logger.info("Exiting...")
                    break
                except (DockerAPIError, OSError) as e:
                    maid.logger.error(f"Periodic check failed: {e}")
                    time.sleep(args.interval * 60)

    except (DockerAPIError, OSError) as e:
        logging.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
