"""
Container recreation: pull the target image, then replace a container with
an identically configured one running the new image.

The replacement is created (under a temporary name) before the original is
touched, and swapped in by renaming, so a failure at any step leaves either
the original or the replacement in place.
"""

import copy
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from docker_api import DockerAPIError
from registry import parse_image_reference, is_pinned_version_tag, split_tag
from update_detector import is_untagged, NO_TAG_ERROR
from update_log import UpdateLogEntry

logger = logging.getLogger(__name__)

SHARED_NAMESPACE_PREFIX = 'container:'
# Endpoint fields that are settings rather than runtime state
ENDPOINT_SETTINGS = ('IPAMConfig', 'Links', 'Aliases', 'DriverOpts')


class RecreateError(Exception):
    """Recreation failed after the original container was stopped."""


def short_id(image_or_container_id: str) -> str:
    if image_or_container_id.startswith('sha256:'):
        image_or_container_id = image_or_container_id[len('sha256:'):]
    return image_or_container_id[:12]


def container_display_name(container: Dict[str, Any]) -> str:
    """Name from a ``list_containers`` entry (``Names`` carries a ``/`` prefix)."""
    names = container.get('Names') or []
    return names[0].lstrip('/') if names else 'unknown'


@dataclass
class ContainerSnapshot:
    """Recreation-relevant settings of a container, read from ``inspect``."""
    id: str
    name: str
    image: str
    image_id: str
    running: bool
    hostname: Optional[str] = None
    domainname: Optional[str] = None
    user: Optional[str] = None
    attach_stdin: Optional[bool] = None
    attach_stdout: Optional[bool] = None
    attach_stderr: Optional[bool] = None
    tty: Optional[bool] = None
    open_stdin: Optional[bool] = None
    stdin_once: Optional[bool] = None
    env: Optional[List[str]] = None
    cmd: Optional[List[str]] = None
    entrypoint: Optional[List[str]] = None
    labels: Optional[Dict[str, str]] = None
    working_dir: Optional[str] = None
    exposed_ports: Optional[Dict[str, Any]] = None
    stop_signal: Optional[str] = None
    stop_timeout: Optional[int] = None
    healthcheck: Optional[Dict[str, Any]] = None
    host_config: Dict[str, Any] = field(default_factory=dict)
    networks: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_inspect(cls, info: Dict[str, Any]) -> 'ContainerSnapshot':
        config = info.get('Config') or {}
        return cls(
            id=info['Id'],
            name=info.get('Name', '').lstrip('/'),
            image=config.get('Image', ''),
            image_id=info.get('Image', ''),
            running=bool((info.get('State') or {}).get('Running')),
            hostname=config.get('Hostname'),
            domainname=config.get('Domainname'),
            user=config.get('User'),
            attach_stdin=config.get('AttachStdin'),
            attach_stdout=config.get('AttachStdout'),
            attach_stderr=config.get('AttachStderr'),
            tty=config.get('Tty'),
            open_stdin=config.get('OpenStdin'),
            stdin_once=config.get('StdinOnce'),
            env=config.get('Env'),
            cmd=config.get('Cmd'),
            entrypoint=config.get('Entrypoint'),
            labels=config.get('Labels'),
            working_dir=config.get('WorkingDir'),
            exposed_ports=config.get('ExposedPorts'),
            stop_signal=config.get('StopSignal'),
            stop_timeout=config.get('StopTimeout'),
            healthcheck=config.get('Healthcheck'),
            host_config=copy.deepcopy(info.get('HostConfig') or {}),
            networks=copy.deepcopy((info.get('NetworkSettings') or {}).get('Networks') or {}),
        )

    @property
    def network_mode(self) -> str:
        return self.host_config.get('NetworkMode') or 'default'

    @property
    def shares_network_namespace(self) -> bool:
        mode = self.network_mode
        return mode == 'host' or mode.startswith(SHARED_NAMESPACE_PREFIX)

    def _endpoint_config(self, network: str) -> Dict[str, Any]:
        endpoint = self.networks.get(network) or {}
        settings = {k: endpoint[k] for k in ENDPOINT_SETTINGS if endpoint.get(k)}
        # Docker adds the old short ID as an alias; the new container gets its own
        if settings.get('Aliases'):
            settings['Aliases'] = [a for a in settings['Aliases'] if a != self.id[:12]]
            if not settings['Aliases']:
                del settings['Aliases']
        return settings

    def create_config(self, image: str) -> Tuple[Dict[str, Any], Dict[str, Dict[str, Any]]]:
        """Build the ``POST /containers/create`` body for *image*.

        Returns:
            Tuple of (create config, {extra network name: endpoint config})
            where the extra networks are connected after creation
        """
        shared = self.shares_network_namespace
        hostname = self.hostname
        # A hostname equal to the old short ID was assigned by Docker, not the user
        if shared or hostname == self.id[:12]:
            hostname = None

        config: Dict[str, Any] = {
            'Image': image,
            'Hostname': hostname,
            'Domainname': None if shared else self.domainname,
            'User': self.user,
            'AttachStdin': self.attach_stdin,
            'AttachStdout': self.attach_stdout,
            'AttachStderr': self.attach_stderr,
            'Tty': self.tty,
            'OpenStdin': self.open_stdin,
            'StdinOnce': self.stdin_once,
            'Env': self.env,
            'Cmd': self.cmd,
            'Entrypoint': self.entrypoint,
            'Labels': self.labels,
            'WorkingDir': self.working_dir,
            'ExposedPorts': None if shared else self.exposed_ports,
            'StopSignal': self.stop_signal,
            'StopTimeout': self.stop_timeout,
            'Healthcheck': self.healthcheck,
            'HostConfig': copy.deepcopy(self.host_config),
        }
        config = {k: v for k, v in config.items() if v is not None}
        if shared:
            config['HostConfig'].pop('PortBindings', None)

        extra_networks: Dict[str, Dict[str, Any]] = {}
        mode = self.network_mode
        if shared or mode == 'none':
            return config, extra_networks

        # HostConfig reports the default bridge as 'default', NetworkSettings as 'bridge'
        primary = 'bridge' if mode == 'default' else mode
        if primary in self.networks:
            config['NetworkingConfig'] = {
                'EndpointsConfig': {primary: self._endpoint_config(primary)}
            }
        for network in self.networks:
            if network != primary:
                extra_networks[network] = self._endpoint_config(network)

        return config, extra_networks


@dataclass
class RecreateResult:
    """Outcome of a single-container update."""
    success: bool
    message: str
    image_changed: bool = False
    tag_changed: bool = False
    self_update: bool = False
    manual_restart_required: bool = False
    log: Optional[UpdateLogEntry] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'message': self.message,
            'imageChanged': self.image_changed,
            'tagChanged': self.tag_changed,
            'selfUpdate': self.self_update,
            'manualRestartRequired': self.manual_restart_required,
            'log': self.log.to_dict() if self.log else None,
        }


@dataclass
class BatchItemResult:
    """Outcome for one container of an "update all" pass."""
    container_id: str
    container_name: str
    status: str
    message: str = ''
    old_tag: Optional[str] = None
    new_tag: Optional[str] = None
    error: Optional[str] = None
    self_update: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d = {
            'containerId': self.container_id,
            'containerName': self.container_name,
            'status': self.status,
            'message': self.message,
        }
        if self.old_tag is not None:
            d['oldTag'] = self.old_tag
        if self.new_tag is not None:
            d['newTag'] = self.new_tag
        if self.error is not None:
            d['error'] = self.error
        if self.self_update:
            d['selfUpdate'] = True
        return d


@dataclass
class BatchUpdateResult:
    results: List[BatchItemResult]
    self_update_skipped: bool = False
    self_update_container_name: Optional[str] = None
    success: bool = True

    @property
    def message(self) -> str:
        if self.self_update_skipped:
            return (f"Updates applied. {self.self_update_container_name} was skipped "
                    f"to prevent a crash. Update it manually.")
        return 'All updates applied successfully.'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'results': [r.to_dict() for r in self.results],
            'selfUpdateSkipped': self.self_update_skipped,
            'selfUpdateContainerName': self.self_update_container_name,
            'message': self.message,
        }


def manual_restart_hint(container_name: str) -> str:
    return f"docker compose up -d --force-recreate {container_name}"


class ContainerRecreator:
    """Pulls new images and swaps containers over to them."""

    def __init__(self, docker, guard, cache, update_log, detector,
                 stop_timeout: int = 10):
        self.docker = docker
        self.guard = guard
        self.cache = cache
        self.update_log = update_log
        self.detector = detector
        self.stop_timeout = stop_timeout
        self._listeners: List[Callable[[str, Dict[str, Any]], None]] = []

    def subscribe(self, listener: Callable[[str, Dict[str, Any]], None]) -> None:
        """Receive ``(image, event)`` for every pull progress event."""
        self._listeners.append(listener)

    def pull(self, image: str) -> None:
        """Pull *image*, returning once the daemon has finished.

        The tag is always sent explicitly; a bare repository name would make
        the daemon pull every tag.  Digest references go through as given.
        """
        logger.info(f"Pulling image {image}...")
        if is_untagged(image):
            events = self.docker.iter_pull(image)
        else:
            events = self.docker.iter_pull(*split_tag(image))
        for event in events:
            logger.debug(f"  {event.get('status', '')}{': ' + event['progress'] if event.get('progress') else ''}")
            for listener in self._listeners:
                try:
                    listener(image, event)
                except Exception as e:
                    logger.warning(f"Pull progress listener failed: {e}")
        logger.info(f"Successfully pulled {image}")

    def _stop(self, snapshot: ContainerSnapshot) -> None:
        logger.info(f"Stopping container {snapshot.name}...")
        try:
            self.docker.stop_container(snapshot.id, timeout=self.stop_timeout)
        except DockerAPIError as e:
            # Not running / already stopped; the swap continues either way
            logger.info(f"Container {snapshot.name} was not running or already stopped ({e.message})")

    def _rollback(self, snapshot: ContainerSnapshot, new_id: str,
                  backup_name: Optional[str]) -> List[str]:
        """Put the original container back; returns the problems hit on the way."""
        logger.info(f"Rolling back {snapshot.name}...")
        problems = []
        try:
            self.docker.remove_container(new_id, force=True)
        except (DockerAPIError, OSError) as e:
            problems.append(f"could not remove replacement {new_id[:12]}: {e}")

        if backup_name:
            try:
                self.docker.rename_container(snapshot.id, snapshot.name)
            except (DockerAPIError, OSError) as e:
                problems.append(f"original kept as {backup_name}: {e}")

        if snapshot.running:
            try:
                self.docker.start_container(snapshot.id)
            except (DockerAPIError, OSError) as e:
                problems.append(f"could not restart original: {e}")

        if problems:
            logger.error(f"Rollback of {snapshot.name} incomplete: {'; '.join(problems)}")
        else:
            logger.info(f"Rolled back {snapshot.name} to its original container")
        return problems

    def _swap(self, snapshot: ContainerSnapshot, image: str) -> Dict[str, Any]:
        """Replace *snapshot*'s container with one running *image*; returns its inspect data."""
        create_config, extra_networks = snapshot.create_config(image)
        stamp = int(time.time())
        temp_name = f"{snapshot.name}_new_{stamp}"
        backup_name = f"{snapshot.name}_backup_{stamp}"

        logger.info(f"Creating replacement container {temp_name}...")
        new_id = self.docker.create_container(temp_name, create_config)
        try:
            for network, endpoint in extra_networks.items():
                self.docker.connect_network(network, new_id, endpoint)
        except (DockerAPIError, OSError):
            # Original untouched so far; drop the half-built replacement
            try:
                self.docker.remove_container(new_id, force=True)
            except (DockerAPIError, OSError) as e:
                logger.error(f"Could not remove replacement {temp_name}: {e} - remove it manually")
            raise

        renamed_old = None
        try:
            self._stop(snapshot)
            self.docker.rename_container(snapshot.id, backup_name)
            renamed_old = backup_name
            self.docker.rename_container(new_id, snapshot.name)
            logger.info(f"Starting container {snapshot.name}...")
            self.docker.start_container(new_id)
            new_info = self.docker.inspect_container(new_id)
        except (DockerAPIError, OSError) as e:
            logger.error(f"Failed to swap in replacement for {snapshot.name}: {e}")
            problems = self._rollback(snapshot, new_id, renamed_old)
            message = str(e.message if isinstance(e, DockerAPIError) else e)
            if problems:
                message += f" (rollback incomplete: {'; '.join(problems)})"
            else:
                message += " (rolled back to the original container)"
            raise RecreateError(message) from e

        logger.info(f"Removing old container {backup_name}")
        try:
            self.docker.remove_container(snapshot.id, force=True, timeout=120)
        except (DockerAPIError, OSError) as e:
            logger.warning(f"Could not remove old container {backup_name}: {e} - remove it manually")

        return new_info

    def update_container(self, container_id: str, target_tag: Optional[str] = None) -> RecreateResult:
        """
        Pull and recreate one container, optionally moving it to *target_tag*.

        When the container is the one this process runs in, only the pull
        happens and the result asks for a manual restart.
        """
        try:
            info = self.docker.inspect_container(container_id)
        except (DockerAPIError, OSError) as e:
            logger.error(f"Error inspecting container {container_id}: {e}")
            return RecreateResult(success=False, message=f"Failed to update container: {e}")

        snapshot = ContainerSnapshot.from_inspect(info)
        ref = parse_image_reference(snapshot.image)
        current_tag = ref.tag
        new_tag = target_tag or current_tag
        target_image = ref.with_tag(target_tag).image_name if target_tag else snapshot.image
        is_self = self.guard.is_self(snapshot.id)

        if is_self:
            logger.warning(f"Self-update detected for {snapshot.name}")
            message = f"Updating {snapshot.name} (self-update)..."
        else:
            message = f"Updating {snapshot.name} to {new_tag}..."
        entry = self.update_log.start(
            container_name=snapshot.name,
            old_image=current_tag,
            old_image_id=short_id(snapshot.image_id),
            new_image=new_tag,
            message=message,
        )

        try:
            self.pull(target_image)

            if is_self:
                hint = manual_restart_hint(snapshot.name)
                self.update_log.succeed(
                    entry,
                    f"Image pulled for {snapshot.name}. Please restart the container manually using: {hint}"
                )
                return RecreateResult(
                    success=True,
                    message=f"Image pulled for {snapshot.name}. To complete the self-update, please run: {hint}",
                    self_update=True,
                    manual_restart_required=True,
                    log=entry,
                )

            new_info = self._swap(snapshot, target_image)
        except (DockerAPIError, OSError, RecreateError) as e:
            detail = e.message if isinstance(e, DockerAPIError) else str(e)
            logger.error(f"Error updating container {snapshot.name}: {detail}")
            self.update_log.fail(entry, f"Failed to update: {detail}")
            return RecreateResult(success=False, message=f"Failed to update container: {detail}", log=entry)
        finally:
            self.cache.invalidate(snapshot.image, target_image)

        new_image_id = new_info.get('Image', '')
        image_changed = snapshot.image_id != new_image_id
        tag_changed = current_tag != new_tag

        if tag_changed:
            log_message = f"Updated {snapshot.name}: {current_tag} → {new_tag}"
        elif image_changed:
            log_message = f"Updated {snapshot.name} to latest {new_tag}"
        else:
            log_message = f"Recreated {snapshot.name} (no changes)"
        self.update_log.succeed(entry, log_message, short_id(new_image_id))
        logger.info(f"Container {snapshot.name} updated and started successfully")

        return RecreateResult(
            success=True,
            message=f"Container {snapshot.name} updated successfully",
            image_changed=image_changed,
            tag_changed=tag_changed,
            log=entry,
        )

    def _update_one(self, container: Dict[str, Any]) -> BatchItemResult:
        container_id = container['Id']
        name = container_display_name(container)

        try:
            info = self.docker.inspect_container(container_id)
            image = (info.get('Config') or {}).get('Image', '')
            if is_untagged(image):
                return BatchItemResult(container_id, name, 'skipped', NO_TAG_ERROR)

            check = self.detector.check(image, info.get('Image', ''))
            if not check.has_update:
                return BatchItemResult(container_id, name, 'skipped', 'No update available')

            if self.guard.is_self(container_id):
                logger.warning(f"Skipping self-update for {name} in batch update")
                return BatchItemResult(
                    container_id, name, 'skipped',
                    f"Self-update skipped. Please update {name} manually using: {manual_restart_hint(name)}",
                    self_update=True,
                )

            # Pinned releases move to the newest release line; floating tags re-pull
            current_tag = parse_image_reference(image).tag
            pinned = is_pinned_version_tag(current_tag)
            new_tag = 'latest' if pinned else current_tag
            logger.info(f"Updating {name}: {current_tag} -> {new_tag}")

            result = self.update_container(container_id, target_tag='latest' if pinned else None)
        except (DockerAPIError, OSError) as e:
            return BatchItemResult(container_id, name, 'failed', error=str(e))

        if result.success:
            return BatchItemResult(
                container_id, name, 'success', result.message,
                old_tag=current_tag, new_tag=new_tag,
            )
        return BatchItemResult(container_id, name, 'failed', error=result.message)

    def update_all(self, concurrency: int = 1) -> BatchUpdateResult:
        """
        Update every running container that has an update available.

        Containers are processed in listing order with at most *concurrency*
        recreations in flight (1 = strictly sequential).  The container this
        process runs in is never touched.
        """
        containers = self.docker.list_containers(all=False)

        with ThreadPoolExecutor(max_workers=max(1, concurrency)) as executor:
            results = list(executor.map(self._update_one, containers))

        batch = BatchUpdateResult(results=results)
        for item in results:
            if item.self_update:
                batch.self_update_skipped = True
                batch.self_update_container_name = item.container_name

        succeeded = sum(1 for r in results if r.status == 'success')
        failed = sum(1 for r in results if r.status == 'failed')
        if failed:
            logger.warning(f"Update all: {succeeded} updated, {failed} failed, {len(results) - succeeded - failed} skipped")
        else:
            logger.info(f"Update all: {succeeded} updated, {len(results) - succeeded} skipped")
        return batch
