"""Docker Engine API client over Unix socket.

Talks to the Docker Engine API via the mounted /var/run/docker.sock Unix
socket using only Python stdlib (http.client, socket).  Every call opens a
fresh connection; the socket is local so the overhead is negligible.
"""

import http.client
import json
import logging
import os
import socket
import urllib.parse
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

# Docker Engine API version, compatible with Docker 20.10+
API_VERSION = "v1.41"

DEFAULT_SOCKET = "/var/run/docker.sock"


class DockerAPIError(Exception):
    """Error from the Docker Engine API."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"Docker API error {status}: {message}")


class UnixHTTPConnection(http.client.HTTPConnection):
    """HTTPConnection subclass that connects via a Unix domain socket."""

    def __init__(self, socket_path: str, timeout: int = 30):
        # host is unused for the actual connection but required by HTTPConnection
        super().__init__("localhost", timeout=timeout)
        self._socket_path = socket_path

    def connect(self):
        self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.sock.settimeout(self.timeout)
        self.sock.connect(self._socket_path)


def _error_message(raw: str) -> str:
    try:
        err = json.loads(raw)
        return err.get("message", raw)
    except (json.JSONDecodeError, AttributeError):
        return raw


class DockerClient:
    """Client for the Docker Engine API over Unix socket."""

    def __init__(self, socket_path: Optional[str] = None):
        if socket_path is None:
            host = os.environ.get("DOCKER_HOST", "")
            if host.startswith("unix://"):
                socket_path = host[len("unix://"):]
            else:
                socket_path = DEFAULT_SOCKET
        self.socket_path = socket_path

    def _url(self, path: str, query: Optional[Dict[str, str]] = None) -> str:
        url = f"/{API_VERSION}{path}"
        if query:
            url += "?" + urllib.parse.urlencode(query)
        return url

    def _request(self, method: str, path: str, body: Any = None,
                 query: Optional[Dict[str, str]] = None,
                 timeout: int = 30, raw: bool = False) -> Any:
        """Send an HTTP request to the Docker Engine API.

        Returns parsed JSON, or the undecoded body bytes when *raw* is True
        (used for the multiplexed log stream).  HTTP 204 and empty bodies
        return None.
        """
        headers: Dict[str, str] = {}
        encoded_body: Optional[bytes] = None

        if body is not None:
            encoded_body = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"

        conn = UnixHTTPConnection(self.socket_path, timeout=timeout)
        try:
            conn.request(method, self._url(path, query), body=encoded_body, headers=headers)
            response = conn.getresponse()
            data = response.read()

            if response.status >= 400:
                raise DockerAPIError(
                    response.status,
                    _error_message(data.decode("utf-8", errors="replace"))
                )

            if raw:
                return data

            if response.status in (204, 304) or not data:
                return None

            return json.loads(data.decode("utf-8", errors="replace"))
        finally:
            conn.close()

    # ── System ────────────────────────────────────────────────────

    def ping(self) -> bool:
        """Return True when the daemon answers ``GET /_ping``."""
        conn = UnixHTTPConnection(self.socket_path, timeout=5)
        try:
            conn.request("GET", self._url("/_ping"))
            return conn.getresponse().status == 200
        finally:
            conn.close()

    def info(self) -> Dict[str, Any]:
        return self._request("GET", "/info")

    # ── Image operations ──────────────────────────────────────────

    def iter_pull(self, image: str, tag: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        """Pull an image, yielding each NDJSON progress event as it arrives.

        Raises DockerAPIError when the daemon rejects the request or reports
        an ``error`` object in the stream.  Uses a 300 s socket timeout for
        large images.
        """
        query = {"fromImage": image}
        if tag:
            query["tag"] = tag

        conn = UnixHTTPConnection(self.socket_path, timeout=300)
        try:
            conn.request("POST", self._url("/images/create", query))
            response = conn.getresponse()
            if response.status >= 400:
                data = response.read().decode("utf-8", errors="replace")
                raise DockerAPIError(response.status, _error_message(data.strip()))

            for line in response:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if "error" in event:
                    raise DockerAPIError(
                        response.status or 500,
                        (event.get("errorDetail") or {}).get("message", event["error"])
                    )
                yield event
        finally:
            conn.close()

    def list_images(self, all: bool = False) -> List[Dict[str, Any]]:
        """List local images.

        Returns list of dicts with keys like ``Id``, ``RepoTags``,
        ``RepoDigests``, ``Size``, ``Created``.
        """
        query = {"all": "true"} if all else None
        return self._request("GET", "/images/json", query=query) or []

    # ── Container operations ──────────────────────────────────────

    def list_containers(self, all: bool = False) -> List[Dict[str, Any]]:
        """List containers.

        Returns list of dicts with keys like ``Id``, ``Names`` (list with
        ``/`` prefix), ``Image``, ``ImageID``, ``State``.
        """
        query = {"all": "true"} if all else None
        return self._request("GET", "/containers/json", query=query) or []

    def inspect_container(self, id_or_name: str) -> Dict[str, Any]:
        """Inspect a container (equivalent to ``docker inspect``)."""
        return self._request("GET", f"/containers/{id_or_name}/json")

    def start_container(self, id_or_name: str) -> None:
        self._request("POST", f"/containers/{id_or_name}/start")

    def stop_container(self, id_or_name: str, timeout: int = 10) -> None:
        """Stop a container.  The daemon answers 304 when already stopped."""
        self._request(
            "POST", f"/containers/{id_or_name}/stop",
            query={"t": str(timeout)},
            timeout=timeout + 30,
        )

    def restart_container(self, id_or_name: str, timeout: int = 10) -> None:
        self._request(
            "POST", f"/containers/{id_or_name}/restart",
            query={"t": str(timeout)},
            timeout=timeout + 30,
        )

    def rename_container(self, id_or_name: str, new_name: str) -> None:
        self._request("POST", f"/containers/{id_or_name}/rename",
                      query={"name": new_name})

    def create_container(self, name: str, config: Dict[str, Any]) -> str:
        """Create a container.  Returns the new container ID."""
        result = self._request(
            "POST", "/containers/create",
            body=config,
            query={"name": name},
        )
        return result["Id"]

    def remove_container(self, id_or_name: str, force: bool = False,
                         timeout: int = 30) -> None:
        query = {"force": "true"} if force else None
        self._request("DELETE", f"/containers/{id_or_name}", query=query,
                      timeout=timeout)

    def container_logs(self, id_or_name: str, tail: int = 100, since: int = 0,
                       timestamps: bool = True) -> bytes:
        """Fetch combined stdout/stderr logs as the raw multiplexed stream."""
        query = {
            "stdout": "1",
            "stderr": "1",
            "tail": str(tail),
            "since": str(since),
            "timestamps": "1" if timestamps else "0",
        }
        return self._request("GET", f"/containers/{id_or_name}/logs",
                             query=query, raw=True)

    # ── Network operations ────────────────────────────────────────

    def connect_network(self, network: str, container_id: str,
                        endpoint_config: Optional[Dict[str, Any]] = None) -> None:
        """Connect a container to a network."""
        body: Dict[str, Any] = {"Container": container_id}
        if endpoint_config:
            body["EndpointConfig"] = endpoint_config
        self._request("POST", f"/networks/{network}/connect", body=body)
