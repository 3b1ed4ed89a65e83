"""Gateway app tests: /ws/operations frames and the REST endpoints.

State is injected onto app.state directly (no lifespan, no database); external
tools are stand-in scripts run by the test interpreter.
"""

from __future__ import annotations

import json
import shlex
import sys
import time
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from starlette.testclient import TestClient

from src.config.settings import CommandSettings, GatewaySettings, ProgressSettings, TokenGrant
from src.gateway.app import app
from src.gateway.auth import StaticTokenAuthorizer
from src.gateway.dispatch import OperationGateway
from src.operations.models import AuditEntry, Outcome
from src.session.manager import SessionManager
from src.stacks.reconciler import StackReconciler
from src.stacks.repository import StackDefinition
from src.stacks.runtime import ContainerRuntime, StackContainer

FAKE_DNF = """
import sys
import time
print("Last metadata expiration check: 0:01:00 ago.", flush=True)
print("Dependencies resolved.", flush=True)
if "slowpkg" in sys.argv[3:]:
    print("Downloading Packages:", flush=True)
    time.sleep(30)
print("Running transaction", flush=True)
print("Installed:", flush=True)
for name in sys.argv[3:]:
    print("  " + name + "-1.0-1.x86_64", flush=True)
print("Complete!", flush=True)
"""

_TOKENS = {
    "admin-token": TokenGrant(identity="alice", role="admin"),
    "viewer-token": TokenGrant(identity="carol", role="viewer"),
}


class FakeRuntime(ContainerRuntime):
    async def list_containers(self, project_name: str) -> list[StackContainer]:
        return [
            StackContainer(service="web", container_name="web_web_1", image="nginx",
                           status="running", ports=["8080->80/tcp"]),
            StackContainer(service="db", container_name="web_db_1", image="postgres",
                           status="stopped"),
        ]


# ---------------------------------------------------------------------------
# Fixtures / helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def client(tmp_path: Path):
    script = tmp_path / "fake_dnf.py"
    script.write_text(FAKE_DNF)

    stack = StackDefinition(
        id="web", name="web", compose_content="services:\n  web:\n    image: nginx\n",
        env_content="", path=str(tmp_path / "web"),
    )
    stack_repo = MagicMock()
    stack_repo.get = AsyncMock(side_effect=lambda sid: stack if sid == "web" else None)
    stack_repo.list_all = AsyncMock(return_value=[stack])
    stack_repo.mark_deploy_result = AsyncMock()

    audit = MagicMock()
    audit.record = AsyncMock(return_value=True)
    audit.list_entries = AsyncMock(return_value=[
        AuditEntry(
            actor="alice", action="package.install", target="htop", success=True,
            detail={"packages": ["htop-1.0-1.x86_64"]},
            timestamp=datetime(2026, 10, 1, 12, 0, tzinfo=UTC),
            outcome="success", session_id="s-1",
        ),
    ])

    sessions = SessionManager()
    authorizer = StaticTokenAuthorizer(_TOKENS)
    app.state.authorizer = authorizer
    app.state.session_manager = sessions
    app.state.audit_recorder = audit
    app.state.stack_reconciler = StackReconciler(stack_repo, FakeRuntime(), sessions)
    app.state.operation_gateway = OperationGateway(
        authorizer=authorizer,
        sessions=sessions,
        audit=audit,
        stacks=stack_repo,
        commands=CommandSettings(
            package_manager=f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}",
            compose="podman-compose",
            privilege_prefix="",
        ),
        progress=ProgressSettings(),
        gateway=GatewaySettings(terminate_grace_seconds=2),
    )

    yield TestClient(app)

    for name in (
        "authorizer", "session_manager", "audit_recorder", "stack_reconciler", "operation_gateway",
    ):
        delattr(app.state, name)


def _run_operation(client: TestClient, payload: dict, *, token: str | None) -> list[dict]:
    url = "/ws/operations" if token is None else f"/ws/operations?token={token}"
    frames = []
    with client.websocket_connect(url) as ws:
        ws.send_text(json.dumps(payload))
        while True:
            frame = json.loads(ws.receive_text())
            frames.append(frame)
            if frame["type"] in ("complete", "error"):
                break
    return frames


# ---------------------------------------------------------------------------
# WebSocket operations
# ---------------------------------------------------------------------------


class TestOperationsWebSocket:
    def test_install_streams_then_completes(self, client: TestClient) -> None:
        frames = _run_operation(
            client, {"operation": "install", "targets": ["htop"]}, token="admin-token",
        )

        progress = frames[:-1]
        terminal = frames[-1]
        assert terminal["type"] == "complete"
        assert terminal["success"] is True
        assert terminal["packages"] == ["htop-1.0-1.x86_64"]
        assert terminal["message"] == "Installed 1 package(s)"

        assert [f["sequence"] for f in progress] == list(range(len(progress)))
        values = [f["progress"] for f in progress]
        assert values == sorted(values)
        assert progress[-1]["progress"] == 100
        assert any(f["type"] == "output" and f["message"] == "Complete!" for f in progress)

    def test_unauthorized(self, client: TestClient) -> None:
        frames = _run_operation(
            client, {"operation": "install", "targets": ["htop"]}, token="viewer-token",
        )
        assert frames == [{
            "type": "error",
            "message": "User 'carol' is not allowed to run host operations",
            "success": False,
            "code": "UNAUTHORIZED",
        }]

    def test_missing_token(self, client: TestClient) -> None:
        frames = _run_operation(client, {"operation": "refresh"}, token=None)
        assert frames[0]["code"] == "UNAUTHORIZED"

    def test_invalid_json(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/operations?token=admin-token") as ws:
            ws.send_text("{not json")
            frame = json.loads(ws.receive_text())
        assert frame["type"] == "error"
        assert frame["code"] == "INVALID_REQUEST"

    def test_invalid_target(self, client: TestClient) -> None:
        frames = _run_operation(
            client, {"operation": "install", "targets": ["--nogpgcheck"]}, token="admin-token",
        )
        assert frames[-1]["code"] == "INVALID_REQUEST"

    def test_busy(self, client: TestClient) -> None:
        app.state.session_manager.registry.try_acquire("package-manager", "other")
        frames = _run_operation(
            client, {"operation": "install", "targets": ["htop"]}, token="admin-token",
        )
        assert len(frames) == 1
        assert frames[0]["code"] == "BUSY"
        app.state.audit_recorder.record.assert_not_awaited()

    def test_client_disconnect_mid_install_cancels(self, client: TestClient) -> None:
        audit = app.state.audit_recorder
        sessions: SessionManager = app.state.session_manager

        with client.websocket_connect("/ws/operations?token=admin-token") as ws:
            ws.send_text(json.dumps({"operation": "install", "targets": ["slowpkg"]}))
            while json.loads(ws.receive_text())["message"] != "Downloading Packages:":
                pass
            assert sessions.registry.is_held("package-manager")
            ws.close()

            deadline = time.monotonic() + 15
            while audit.record.await_count == 0 and time.monotonic() < deadline:
                time.sleep(0.05)

        audit.record.assert_awaited_once()
        recorded = audit.record.call_args.args[1]
        assert recorded.outcome is Outcome.cancelled
        assert recorded.success is False
        assert "Complete!" not in recorded.raw_output
        assert sessions.registry.held() == []
        assert sessions.active_sessions() == []


# ---------------------------------------------------------------------------
# REST
# ---------------------------------------------------------------------------


class TestRest:
    def test_health(self, client: TestClient) -> None:
        assert client.get("/health").json() == {"status": "ok"}

    def test_stack_status_requires_token(self, client: TestClient) -> None:
        assert client.get("/stacks/web/status").status_code == 401

    def test_stack_status_partial(self, client: TestClient) -> None:
        resp = client.get(
            "/stacks/web/status", headers={"Authorization": "Bearer viewer-token"},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "partial"
        assert body["running_count"] == 1
        assert body["container_count"] == 2
        assert body["containers"][0]["ports"] == ["8080->80/tcp"]

    def test_stack_not_found(self, client: TestClient) -> None:
        resp = client.get("/stacks/ghost/status", headers={"Authorization": "Bearer viewer-token"})
        assert resp.status_code == 404

    def test_list_stacks(self, client: TestClient) -> None:
        resp = client.get("/stacks", headers={"Authorization": "Bearer viewer-token"})
        assert [s["id"] for s in resp.json()] == ["web"]

    def test_audit_requires_privilege(self, client: TestClient) -> None:
        resp = client.get("/audit", headers={"Authorization": "Bearer viewer-token"})
        assert resp.status_code == 403

    def test_audit_entries(self, client: TestClient) -> None:
        resp = client.get(
            "/audit",
            params={"limit": 10, "action": "package."},
            headers={"Authorization": "Bearer admin-token"},
        )
        assert resp.status_code == 200
        [entry] = resp.json()
        assert entry["action"] == "package.install"
        assert entry["outcome"] == "success"
        app.state.audit_recorder.list_entries.assert_awaited_once_with(
            limit=10, action_prefix="package.", actor=None,
        )

    def test_active_operations_empty(self, client: TestClient) -> None:
        resp = client.get("/operations/active", headers={"Authorization": "Bearer admin-token"})
        assert resp.json() == []
