"""Tests for the HTTP API (webui.py).

Covers: container and image endpoints, update endpoints, settings, logs,
token authentication, Socket.IO events and the periodic check thread.
"""

import os
import tempfile
from unittest.mock import MagicMock, patch

import pytest

# Point module-level startup at a throwaway settings file before importing webui
os.environ.setdefault("SETTINGS_FILE", os.path.join(tempfile.mkdtemp(), "settings.json"))
os.environ.pop("API_TOKEN", None)

import webui as webui_mod
from dockermaid import Settings, __version__
from docker_api import DockerAPIError
from recreator import BatchItemResult, BatchUpdateResult, RecreateResult
from update_log import UpdateLogEntry


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def mock_maid():
    maid = MagicMock()
    maid.settings.settings = Settings()
    maid.docker.socket_path = "/var/run/docker.sock"
    return maid


@pytest.fixture()
def app_client(mock_maid):
    """Flask test client with a mock DockerMaid wired in."""
    webui_mod.maid = mock_maid
    webui_mod.is_checking = False
    webui_mod.API_TOKEN = ""

    webui_mod.app.config["TESTING"] = True
    with patch.object(webui_mod.socketio, "emit") as emit:
        with webui_mod.app.test_client() as client:
            client.emitted = emit
            yield client

    webui_mod.daemon_stop_event.set()


@pytest.fixture()
def token_client(app_client):
    webui_mod.API_TOKEN = "s3cret"
    yield app_client
    webui_mod.API_TOKEN = ""


@pytest.fixture()
def socketio_client(mock_maid):
    webui_mod.maid = mock_maid
    webui_mod.is_checking = False
    webui_mod.app.config["TESTING"] = True
    client = webui_mod.socketio.test_client(webui_mod.app)
    yield client
    client.disconnect()


# ===========================================================================
# TestSystemEndpoints
# ===========================================================================

class TestSystemEndpoints:
    def test_version(self, app_client):
        resp = app_client.get("/api/version")
        assert resp.status_code == 200
        assert resp.get_json() == {"version": __version__}

    def test_health_ok(self, app_client, mock_maid):
        mock_maid.docker.ping.return_value = True
        resp = app_client.get("/api/health")
        assert resp.status_code == 200
        assert resp.get_json() == {"status": "ok", "docker": "connected"}

    def test_health_socket_missing(self, app_client, mock_maid):
        mock_maid.docker.ping.side_effect = FileNotFoundError()
        resp = app_client.get("/api/health")
        assert resp.status_code == 500
        data = resp.get_json()
        assert data["docker"] == "disconnected"
        assert data["socketPath"] == "/var/run/docker.sock"
        assert "not found" in data["error"]

    def test_docker_info(self, app_client, mock_maid):
        mock_maid.docker_info.return_value = {"dockerVersion": "24.0.7"}
        assert app_client.get("/api/docker/info").get_json()["dockerVersion"] == "24.0.7"

    def test_supervisor_status(self, app_client, mock_maid):
        mock_maid.status.return_value = {"isRunning": True, "updatesAvailable": 2}
        assert app_client.get("/api/supervisor/status").get_json()["updatesAvailable"] == 2

    def test_service_not_loaded(self, app_client):
        webui_mod.maid = None
        resp = app_client.get("/api/containers")
        assert resp.status_code == 503


# ===========================================================================
# TestContainerEndpoints
# ===========================================================================

class TestContainerEndpoints:
    def test_list(self, app_client, mock_maid):
        mock_maid.list_containers.return_value = [{"id": "abc", "hasUpdate": True}]
        resp = app_client.get("/api/containers")
        assert resp.status_code == 200
        assert resp.get_json() == [{"id": "abc", "hasUpdate": True}]
        mock_maid.list_containers.assert_called_once_with(check_updates=True)

    def test_list_without_checks(self, app_client, mock_maid):
        mock_maid.list_containers.return_value = []
        app_client.get("/api/containers?checkUpdates=false")
        mock_maid.list_containers.assert_called_once_with(check_updates=False)

    def test_list_daemon_error(self, app_client, mock_maid):
        mock_maid.list_containers.side_effect = DockerAPIError(500, "daemon unavailable")
        resp = app_client.get("/api/containers")
        assert resp.status_code == 500
        assert resp.get_json() == {"error": "Failed to fetch containers", "details": "daemon unavailable"}

    def test_get_missing_container(self, app_client, mock_maid):
        mock_maid.get_container.side_effect = DockerAPIError(404, "No such container: nope")
        resp = app_client.get("/api/containers/nope")
        assert resp.status_code == 404

    @pytest.mark.parametrize("action", ["start", "stop", "restart"])
    def test_actions(self, app_client, mock_maid, action):
        resp = app_client.post(f"/api/containers/abc/{action}")
        assert resp.status_code == 200
        assert resp.get_json()["success"] is True
        getattr(mock_maid.docker, f"{action}_container").assert_called_once_with("abc")

    def test_action_failure(self, app_client, mock_maid):
        mock_maid.docker.start_container.side_effect = DockerAPIError(500, "bad mount")
        resp = app_client.post("/api/containers/abc/start")
        assert resp.status_code == 500
        assert resp.get_json()["details"] == "bad mount"

    def test_unknown_action(self, app_client):
        assert app_client.post("/api/containers/abc/explode").status_code == 404

    def test_logs(self, app_client, mock_maid):
        mock_maid.container_logs.return_value = [{"stream": "stdout", "message": "hi"}]
        resp = app_client.get("/api/containers/abc/logs?tail=20&since=5")
        assert resp.get_json() == {"logs": [{"stream": "stdout", "message": "hi"}]}
        mock_maid.container_logs.assert_called_once_with("abc", tail=20, since=5)


# ===========================================================================
# TestUpdateEndpoints
# ===========================================================================

class TestUpdateEndpoints:
    def test_update_with_target_tag(self, app_client, mock_maid):
        mock_maid.recreator.update_container.return_value = RecreateResult(
            success=True, message="Container web updated successfully",
            image_changed=True, tag_changed=True)
        resp = app_client.post("/api/containers/abc/update", json={"targetTag": "1.26.0"})
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["success"] is True
        assert data["tagChanged"] is True
        mock_maid.recreator.update_container.assert_called_once_with("abc", "1.26.0")
        app_client.emitted.assert_any_call("update_complete", data, namespace="/")

    def test_update_without_body(self, app_client, mock_maid):
        mock_maid.recreator.update_container.return_value = RecreateResult(True, "ok")
        app_client.post("/api/containers/abc/update")
        mock_maid.recreator.update_container.assert_called_once_with("abc", None)

    def test_update_failure(self, app_client, mock_maid):
        mock_maid.recreator.update_container.return_value = RecreateResult(
            success=False, message="Failed to update container: pull denied")
        resp = app_client.post("/api/containers/abc/update", json={})
        assert resp.status_code == 500
        assert resp.get_json()["details"] == "Failed to update container: pull denied"

    def test_self_update_result(self, app_client, mock_maid):
        mock_maid.recreator.update_container.return_value = RecreateResult(
            success=True, message="Image pulled", self_update=True, manual_restart_required=True)
        data = app_client.post("/api/containers/abc/update").get_json()
        assert data["selfUpdate"] is True
        assert data["manualRestartRequired"] is True

    def test_update_all(self, app_client, mock_maid):
        mock_maid.recreator.update_all.return_value = BatchUpdateResult(
            results=[
                BatchItemResult("a", "web", "success", old_tag="1.0", new_tag="latest"),
                BatchItemResult("b", "dockermaid", "skipped", self_update=True),
            ],
            self_update_skipped=True,
            self_update_container_name="dockermaid",
        )
        resp = app_client.post("/api/containers/update-all")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["selfUpdateSkipped"] is True
        assert data["selfUpdateContainerName"] == "dockermaid"
        assert data["results"][0]["newTag"] == "latest"

    def test_update_all_with_failures_is_still_200(self, app_client, mock_maid):
        mock_maid.recreator.update_all.return_value = BatchUpdateResult(
            results=[BatchItemResult("a", "web", "failed", error="registry down")])
        resp = app_client.post("/api/containers/update-all")
        assert resp.status_code == 200
        assert resp.get_json()["results"][0]["error"] == "registry down"


# ===========================================================================
# TestImageEndpoints
# ===========================================================================

class TestImageEndpoints:
    def test_pull_image_with_slashes(self, app_client, mock_maid):
        resp = app_client.post("/api/images/ghcr.io/org/app:v1/pull")
        assert resp.status_code == 200
        mock_maid.pull_image.assert_called_once_with("ghcr.io/org/app:v1")

    def test_pull_failure(self, app_client, mock_maid):
        mock_maid.pull_image.side_effect = DockerAPIError(404, "manifest unknown")
        resp = app_client.post("/api/images/nginx:nope/pull")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Failed to pull image"

    def test_tags(self, app_client, mock_maid):
        mock_maid.available_tags.return_value = {"tags": ["latest"]}
        assert app_client.get("/api/images/nginx/tags").get_json() == {"tags": ["latest"]}
        mock_maid.available_tags.assert_called_once_with("nginx")

    def test_registry_url(self, app_client, mock_maid):
        mock_maid.registry_urls.return_value = {"registryUrl": "https://hub.docker.com/_/nginx"}
        resp = app_client.get("/api/images/nginx:1.25/registry-url")
        assert resp.get_json()["registryUrl"] == "https://hub.docker.com/_/nginx"

    def test_images(self, app_client, mock_maid):
        mock_maid.list_images.return_value = [{"id": "sha256:a", "repoTags": ["nginx:latest"]}]
        assert app_client.get("/api/images").get_json()[0]["repoTags"] == ["nginx:latest"]


# ===========================================================================
# TestSettingsAndLogs
# ===========================================================================

class TestSettingsAndLogs:
    def test_get_settings(self, app_client):
        assert app_client.get("/api/settings").get_json() == {
            "checkInterval": 0, "autoUpdate": False, "lastCheck": None,
        }

    def test_put_settings(self, app_client, mock_maid):
        mock_maid.settings.update.return_value = Settings(check_interval=15, auto_update=True)
        resp = app_client.put("/api/settings", json={"checkInterval": 15, "autoUpdate": True})
        assert resp.status_code == 200
        assert resp.get_json()["checkInterval"] == 15
        mock_maid.settings.update.assert_called_once_with({"checkInterval": 15, "autoUpdate": True})

    def test_clear_cache(self, app_client, mock_maid):
        resp = app_client.post("/api/cache/clear")
        assert resp.get_json()["success"] is True
        mock_maid.cache.clear.assert_called_once_with()

    def test_get_logs(self, app_client, mock_maid):
        mock_maid.update_log.entries.return_value = [UpdateLogEntry(
            id="1", timestamp="2024-01-01T00:00:00+00:00", container_name="web",
            old_image="1.0", old_image_id="aaa", new_image="1.1")]
        data = app_client.get("/api/logs").get_json()
        assert data[0]["containerName"] == "web"
        assert data[0]["status"] == "in-progress"

    def test_clear_logs(self, app_client, mock_maid):
        resp = app_client.delete("/api/logs")
        assert resp.get_json()["success"] is True
        mock_maid.update_log.clear.assert_called_once_with()


# ===========================================================================
# TestTokenAuth
# ===========================================================================

class TestTokenAuth:
    def test_valid_bearer(self, token_client):
        resp = token_client.get("/api/version", headers={"Authorization": "Bearer s3cret"})
        assert resp.status_code == 200

    def test_wrong_bearer(self, token_client):
        resp = token_client.get("/api/version", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401
        assert "Invalid token" in resp.get_json()["error"]

    def test_cross_origin_without_token(self, token_client):
        resp = token_client.get("/api/version", headers={"Origin": "https://evil.example"})
        assert resp.status_code == 401

    def test_same_origin_referer(self, token_client):
        resp = token_client.get("/api/version", headers={
            "Origin": "http://localhost", "Referer": "http://localhost/containers"})
        assert resp.status_code == 200

    def test_no_origin_allowed(self, token_client):
        assert token_client.get("/api/version").status_code == 200

    def test_no_token_configured(self, app_client):
        resp = app_client.get("/api/version", headers={"Origin": "https://evil.example"})
        assert resp.status_code == 200


# ===========================================================================
# TestSocketIO
# ===========================================================================

class TestSocketIO:
    def test_connect_sends_status(self, socketio_client):
        received = socketio_client.get_received()
        names = [r["name"] for r in received]
        assert "connected" in names
        status = next(r for r in received if r["name"] == "status_update")
        assert status["args"][0]["checking"] is False

    def test_pull_progress_forwarded(self):
        with patch.object(webui_mod.socketio, "emit") as emit:
            webui_mod.emit_pull_progress("nginx:latest", {"status": "Downloading", "progress": "1MB", "id": "l1"})
        emit.assert_called_once_with("pull_progress", {
            "image": "nginx:latest", "status": "Downloading", "progress": "1MB", "id": "l1",
        }, namespace="/")


# ===========================================================================
# TestPeriodicCheck
# ===========================================================================

class TestPeriodicCheck:
    def test_run_check_emits(self, mock_maid):
        webui_mod.maid = mock_maid
        webui_mod.is_checking = False
        mock_maid.periodic_check.return_value = 2
        with patch.object(webui_mod.socketio, "emit") as emit:
            webui_mod.run_check()
        emit.assert_called_once_with("check_complete", {
            "updatesAvailable": 2, "lastCheck": None,
        }, namespace="/")
        assert webui_mod.is_checking is False

    def test_run_check_skips_when_busy(self, mock_maid):
        webui_mod.maid = mock_maid
        webui_mod.is_checking = True
        webui_mod.run_check()
        mock_maid.periodic_check.assert_not_called()
        webui_mod.is_checking = False

    def test_run_check_error(self, mock_maid):
        webui_mod.maid = mock_maid
        webui_mod.is_checking = False
        mock_maid.periodic_check.side_effect = DockerAPIError(500, "boom")
        with patch.object(webui_mod.socketio, "emit") as emit:
            webui_mod.run_check()
        assert emit.call_args.args[0] == "check_error"
        assert webui_mod.is_checking is False

    def test_thread_follows_interval(self, mock_maid):
        webui_mod.maid = mock_maid
        mock_maid.settings.settings = Settings(check_interval=30)
        webui_mod.setup_periodic_check()
        thread = webui_mod.daemon_thread
        assert thread is not None and thread.is_alive()

        mock_maid.settings.settings = Settings(check_interval=0)
        webui_mod.setup_periodic_check()
        assert webui_mod.daemon_thread is None
        thread.join(timeout=5)
        assert not thread.is_alive()
        mock_maid.periodic_check.assert_not_called()
