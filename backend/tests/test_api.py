import httpx
import pytest
from fastapi.testclient import TestClient

from owl.agent.prompts import UNCONFIGURED_MESSAGE
from owl.api.models import ALLOWED_MODELS
from owl.service import OwlService
from server import create_app
from tests.fakes import FailingCompletion, FakeEnvironment, ScriptedCompletion, call, reply


@pytest.fixture
def environment():
    return FakeEnvironment()


def make_client(settings, environment, completion):
    service = OwlService(settings, environment, completion)
    return TestClient(create_app(service=service)), service


@pytest.fixture
def completion():
    return ScriptedCompletion(
        [reply("", call("write_file", path="hello.txt", content="hi")), reply("Done")]
    )


@pytest.fixture
def client(settings, environment, completion):
    test_client, _ = make_client(settings, environment, completion)
    with test_client as c:
        yield c


class TestChatEndpoint:
    def test_chat_runs_the_agent(self, client, environment):
        resp = client.post("/api/chat", json={"sessionId": "s1", "message": "make hello.txt"})

        assert resp.status_code == 200
        assert resp.json() == {"message": {"content": "Done", "rounds": 2, "stopReason": "completed"}}
        assert environment.sandboxes["sbx-1"].files["hello.txt"] == b"hi"

    def test_blank_message_is_rejected(self, client, environment):
        resp = client.post("/api/chat", json={"sessionId": "s1", "message": "  "})
        assert resp.status_code == 400
        assert environment.create_calls == 0

    def test_unconfigured_completion_explains_setup(self, settings, environment, completion):
        test_client, _ = make_client(
            settings.model_copy(update={"api_key": None}), environment, completion
        )
        with test_client as c:
            resp = c.post("/api/chat", json={"sessionId": "s1", "message": "hi"})

        assert resp.status_code == 200
        assert resp.json()["message"]["content"] == UNCONFIGURED_MESSAGE
        assert completion.calls == []
        assert environment.create_calls == 0

    def test_completion_failure_maps_to_502(self, settings, environment):
        test_client, _ = make_client(settings, environment, FailingCompletion(RuntimeError("down")))
        with test_client as c:
            resp = c.post("/api/chat", json={"sessionId": "s1", "message": "hi"})

        assert resp.status_code == 502
        assert resp.json()["error"] == "completion_failed"
        assert resp.json()["sessionId"] == "s1"

    def test_provision_failure_maps_to_502(self, client, environment):
        environment.create_error = RuntimeError("no capacity")

        resp = client.post("/api/chat", json={"sessionId": "s1", "message": "hi"})

        assert resp.status_code == 502
        assert resp.json()["error"] == "provision_failed"
        assert "no capacity" in resp.json()["message"]


class TestSandboxEndpoints:
    def test_lifecycle(self, client, environment):
        created = client.post("/api/sandbox/s1").json()
        assert created == {"sandboxId": "sbx-1", "previewUrl": "https://3000-sbx-1.sandbox.test"}

        status = client.get("/api/sandbox/s1").json()
        assert status["active"] is True
        assert status["sandboxId"] == "sbx-1"

        alive = client.post("/api/sandbox/s1/keepalive").json()
        assert alive["alive"] is True
        assert alive["remainingSeconds"] > 0

        assert client.delete("/api/sandbox/s1").json() == {"ok": True, "released": True}
        assert client.get("/api/sandbox/s1").json() == {"active": False}
        assert environment.destroy_calls == 1

    def test_keepalive_without_sandbox(self, client):
        assert client.post("/api/sandbox/nobody/keepalive").json() == {"alive": False}

    def test_release_without_sandbox(self, client):
        assert client.delete("/api/sandbox/nobody").json() == {"ok": True, "released": False}

    def test_files_without_sandbox_is_409(self, client):
        resp = client.get("/api/sandbox/s1/files")

        assert resp.status_code == 409
        assert resp.json()["error"] == "no_environment"

    def test_files_of_expired_sandbox_is_409(self, client, environment):
        client.post("/api/sandbox/s1")
        environment.kill("sbx-1")

        resp = client.get("/api/sandbox/s1/files")

        assert resp.status_code == 409
        assert resp.json()["error"] == "environment_expired"

    def test_files_skip_dependencies_and_binaries(self, client, environment):
        client.post("/api/sandbox/s1")
        sandbox = environment.sandboxes["sbx-1"]
        sandbox.dirs.update({"src", "node_modules", "node_modules/react"})
        sandbox.files.update(
            {
                "package.json": b"{}",
                "src/index.ts": b"console.log(1)",
                "node_modules/react/index.js": b"module.exports = {}",
                "logo.png": b"\x89PNG\xff\xfe",
            }
        )

        files = client.get("/api/sandbox/s1/files").json()["files"]

        assert files == [
            {"path": "package.json", "content": "{}"},
            {"path": "src/index.ts", "content": "console.log(1)"},
        ]


class TestActivityEndpoints:
    def test_history_and_clear(self, client):
        client.post("/api/chat", json={"sessionId": "s1", "message": "make hello.txt"})

        activities = client.get("/api/sessions/s1/activities").json()["activities"]
        kinds = [a["kind"] for a in activities]
        assert "tool_call" in kinds
        assert "file_change" in kinds

        assert client.delete("/api/sessions/s1/activities").json() == {"ok": True}
        assert client.get("/api/sessions/s1/activities").json() == {"activities": []}

    def test_events_replay_without_follow(self, client):
        client.post("/api/sandbox/s1")

        resp = client.get("/api/sessions/s1/events", params={"follow": "false"})

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        frames = [f for f in resp.text.split("\n\n") if f]
        assert len(frames) == 3
        assert all(f.startswith("data: ") for f in frames)
        assert '"event_type": "preview_ready"' in frames[-1]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_models_without_gateway_key(settings, environment, completion):
    test_client, _ = make_client(settings.model_copy(update={"api_key": None}), environment, completion)
    with test_client as c:
        body = c.get("/api/models").json()

    assert body["models"] == ALLOWED_MODELS
    assert body["default"] == settings.model


@pytest.fixture
def gateway(monkeypatch):
    """Routes the models endpoint's outbound client to a canned gateway reply."""
    replies = {}
    real_client = httpx.AsyncClient

    def handler(request):
        return replies["response"]

    def client_factory(*args, **kwargs):
        return real_client(*args, transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", client_factory)
    return replies


def test_models_intersects_gateway_list(client, gateway):
    gateway["response"] = httpx.Response(200, json={"data": [{"id": "openai/gpt-5"}, {"id": "x/y"}]})

    body = client.get("/api/models").json()

    assert body["models"] == ["openai/gpt-5"]


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="<html>gateway maintenance</html>"),
        httpx.Response(200, json=["openai/gpt-5"]),
        httpx.Response(503, text="unavailable"),
    ],
)
def test_models_falls_back_on_unusable_gateway_reply(client, gateway, response):
    gateway["response"] = response

    body = client.get("/api/models").json()

    assert body["models"] == ALLOWED_MODELS
