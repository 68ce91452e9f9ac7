"""End-to-end tests for PUT /builds/{id} through the FastAPI app."""

import httpx
import pytest

from conductor import api, auth
from conductor.auth import create_token
from conductor.builds import BuildLifecycleManager
from conductor.cascade import TriggerCascade
from conductor.config import AuthConfig
from conductor.events import EventFactory
from conductor.models import BuildStatus, Permissions, TriggerRecord
from conductor.notifications import NotificationBus

SECRET = "test-secret"
CTX = "github:github.com"


def bearer(username, scope=("user",)):
    token = create_token(SECRET, str(username), CTX, list(scope))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def received():
    return []


@pytest.fixture
async def bus(received):
    notifications = NotificationBus()

    async def record(note):
        received.append(note)

    notifications.on(record)
    yield notifications
    await notifications.drain()


@pytest.fixture
async def client(make_app, registry, scm, bus):
    auth_config = AuthConfig(jwt_secret=SECRET, admins=[f"{CTX}:root"])
    auth.configure(auth_config)
    api.configure(
        BuildLifecycleManager(
            registry,
            scm,
            TriggerCascade(registry, EventFactory(registry, scm)),
            bus,
            auth_config,
            "https://ui.example.com",
        )
    )
    transport = httpx.ASGITransport(app=make_app(api.router))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
async def scenario(registry, seed):
    """Pipeline 5 runs ``main``; pipeline 9 subscribes to ``~sd@5:main``."""
    upstream = await seed.pipeline("main", id=5, edges=(("~commit", "main"),))
    await seed.pipeline("main", id=9, repo_id="200", edges=(("~sd@5:main", "deploy"),))
    await registry.create_trigger(TriggerRecord(src="~sd@5:main", dest="~sd@9:deploy"))

    job = await registry.get_job_by_name(5, "main")
    event = await seed.event(upstream)
    build = await seed.build(job, event, BuildStatus.RUNNING, id=77)
    return build


class TestBuildIdentity:
    async def test_success_triggers_downstream_pipeline(
        self, client, registry, scenario, bus, received
    ):
        resp = await client.put(
            "/builds/77", json={"status": "SUCCESS"}, headers=bearer(77, ["build"])
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["id"] == 77
        assert body["status"] == "SUCCESS"
        assert body["end_time"] is not None

        [event] = await registry.list_events(9)
        assert event.start_from == "~sd@5:main"
        assert event.parent_build_id == 77
        assert event.cause_message == "Triggered by build 77"
        deploy = await registry.get_job_by_name(9, "deploy")
        [queued] = await registry.list_builds_for_event(event.id)
        assert queued.job_id == deploy.id
        assert queued.status == BuildStatus.QUEUED

        await bus.drain()
        assert [n.status for n in received] == [BuildStatus.SUCCESS]
        assert received[0].build_link == "https://ui.example.com/pipelines/5/builds/77"

    async def test_status_message_alias(self, client, registry, scenario):
        resp = await client.put(
            "/builds/77",
            json={"statusMessage": "Pulling image"},
            headers=bearer(77, ["build"]),
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "RUNNING"
        assert (await registry.get_build(77)).status_message == "Pulling image"

    async def test_other_build_forbidden(self, client, scenario):
        resp = await client.put(
            "/builds/77", json={"status": "SUCCESS"}, headers=bearer(78, ["build"])
        )
        assert resp.status_code == 403
        assert resp.json() == {
            "statusCode": 403,
            "error": "Forbidden",
            "message": "Credential only valid for 78",
        }

    async def test_unknown_build(self, client):
        resp = await client.put(
            "/builds/404", json={"status": "SUCCESS"}, headers=bearer(404, ["build"])
        )
        assert resp.status_code == 404
        assert resp.json()["error"] == "Not Found"

    async def test_unsupported_status(self, client, scenario):
        resp = await client.put(
            "/builds/77", json={"status": "QUEUED"}, headers=bearer(77, ["build"])
        )
        assert resp.status_code == 400
        assert resp.json()["message"] == "Cannot update builds to QUEUED"

    async def test_finished_build_forbidden(self, client, registry, scenario):
        scenario.status = BuildStatus.FAILURE
        await registry.update_build(scenario)

        resp = await client.put(
            "/builds/77", json={"status": "SUCCESS"}, headers=bearer(77, ["build"])
        )
        assert resp.status_code == 403


class TestHumans:
    async def test_abort_with_push(self, client, registry, seed, scenario):
        await seed.user("alice")

        resp = await client.put("/builds/77", json={"status": "ABORTED"}, headers=bearer("alice"))

        assert resp.status_code == 200
        assert resp.json()["status_message"] == "Aborted by alice"
        assert await registry.list_events(9) == []

    async def test_abort_without_push(self, client, seed, scm, scenario):
        await seed.user("bob")
        scm.get_permissions.return_value = Permissions(pull=True)

        resp = await client.put("/builds/77", json={"status": "ABORTED"}, headers=bearer("bob"))

        assert resp.status_code == 401

    async def test_humans_may_only_abort(self, client, seed, scenario):
        await seed.user("alice")
        resp = await client.put("/builds/77", json={"status": "SUCCESS"}, headers=bearer("alice"))
        assert resp.status_code == 400
        assert resp.json()["message"] == "Can only update builds to ABORTED"

    async def test_guest_forbidden(self, client, scenario):
        resp = await client.put(
            "/builds/77", json={"status": "ABORTED"}, headers=bearer("guest", ["guest"])
        )
        assert resp.status_code == 403


class TestAuthentication:
    async def test_missing_token(self, client, scenario):
        resp = await client.put("/builds/77", json={"status": "SUCCESS"})
        assert resp.status_code == 401
        assert resp.json()["statusCode"] == 401

    async def test_wrong_secret(self, client, scenario):
        token = create_token("other-secret", "77", CTX, ["build"])
        resp = await client.put(
            "/builds/77",
            json={"status": "SUCCESS"},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert resp.status_code == 401

    async def test_expired_token(self, client, scenario):
        token = create_token(SECRET, "77", CTX, ["build"], ttl_seconds=-10)
        resp = await client.put(
            "/builds/77",
            json={"status": "SUCCESS"},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert resp.status_code == 401
