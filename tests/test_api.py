import pytest
from fastapi.testclient import TestClient
from jose import jwt

from raven.core.flags import FeatureFlags
from raven.factory import create_app

from fakes import FailingLLM, FakeLLM, UnwritableThreadStore


def _client(settings, flags, llm=None) -> TestClient:
    return TestClient(create_app(settings=settings, flags=flags, llm_client=llm or FakeLLM()))


def test_health(settings, flags):
    with _client(settings, flags) as client:
        resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_chat_and_thread_endpoints(settings, flags):
    llm = FakeLLM(replies=["Hello from Raven", "Second answer"])
    with _client(settings, flags, llm) as client:
        resp = client.post("/v1/chat", json={"message": "  Plan my week  ", "attachments": ["todo.md"]})
        assert resp.status_code == 200
        body = resp.json()
        assert body["reply"] == "Hello from Raven"
        assert body["provider"] == "koboldcpp"
        assert body["quota"]["used"] == 1
        thread_id = body["thread_id"]

        resp = client.post("/v1/chat", json={"message": "And next week?", "thread_id": thread_id})
        assert resp.json()["thread_id"] == thread_id

        threads = client.get("/v1/threads").json()["threads"]
        assert [t["title"] for t in threads] == ["Plan my week"]

        detail = client.get(f"/v1/threads/{thread_id}").json()
        assert [m["role"] for m in detail["messages"]] == ["user", "assistant", "user", "assistant"]
        assert detail["messages"][0]["attachments"] == ["todo.md"]

        renamed = client.patch(f"/v1/threads/{thread_id}", json={"title": "Weekly plan"})
        assert renamed.json()["thread"]["title"] == "Weekly plan"

        assert client.delete(f"/v1/threads/{thread_id}").status_code == 200
        assert client.get(f"/v1/threads/{thread_id}").status_code == 404
        assert client.delete(f"/v1/threads/{thread_id}").status_code == 404


def test_empty_message_is_a_bad_request(settings, flags):
    with _client(settings, flags) as client:
        assert client.post("/v1/chat", json={"message": "   "}).status_code == 400


def test_quota_exhaustion_returns_429_with_quota(settings, flags):
    with _client(settings, flags) as client:
        for _ in range(3):
            assert client.post("/v1/chat", json={"message": "hi"}).status_code == 200
        resp = client.post("/v1/chat", json={"message": "hi"})

    assert resp.status_code == 429
    body = resp.json()
    assert body["error"] == "You're cut off! Go outside. Touch some grass."
    assert body["quota"] == {"allowed": False, "role": "base", "used": 3, "limit": 3, "remaining": 0}


def test_provider_failure_returns_502(settings, flags):
    with _client(settings, flags, FailingLLM(provider="openrouter")) as client:
        resp = client.post("/v1/chat", json={"message": "hi"})
    assert resp.status_code == 502
    assert resp.json()["detail"]["provider"] == "openrouter"


def test_settings_and_memory_endpoints(settings, flags):
    with _client(settings, flags) as client:
        body = client.get("/v1/settings").json()
        assert body["storage_available"] is True
        assert body["settings"]["memory_enabled"] is True
        assert body["memories"] == []

        resp = client.patch("/v1/settings", json={"personalization_guidance": "Be brief.", "auto_memory_enabled": False})
        assert resp.json()["settings"]["personalization_guidance"] == "Be brief."
        assert resp.json()["settings"]["auto_memory_enabled"] is False

        created = client.post("/v1/settings/memory", json={"content": "  Lives in   Porto ", "kind": "profile"})
        assert created.status_code == 201
        memory = created.json()["memory"]
        assert memory["content"] == "Lives in Porto"
        assert memory["source"] == "manual"
        assert memory["confidence"] == 1.0

        assert client.post("/v1/settings/memory", json={"content": "   "}).status_code == 400

        memories = client.get("/v1/settings").json()["memories"]
        assert [m["id"] for m in memories] == [memory["id"]]

        assert client.delete(f"/v1/settings/memory/{memory['id']}").status_code == 200
        assert client.delete(f"/v1/settings/memory/{memory['id']}").status_code == 404
        assert client.delete("/v1/settings/memory/0").status_code == 400
        assert client.get("/v1/settings").json()["memories"] == []


def test_unsaved_message_returns_500(settings, flags):
    llm = FakeLLM(replies=["never sent"])
    with _client(settings, flags, llm) as client:
        orchestrator = client.app.state.orchestrator
        orchestrator.threads = UnwritableThreadStore(orchestrator.threads.db)
        resp = client.post("/v1/chat", json={"message": "hi"})

    assert resp.status_code == 500
    assert resp.json()["detail"] == "Failed to save the conversation."
    assert llm.calls == []


def test_missing_memory_schema_is_advisory_on_reads(settings):
    flags = FeatureFlags(_env_file=None, FF_USE_AUTH=False, FF_CREATE_MEMORY_SCHEMA=False)
    with _client(settings, flags, FakeLLM(replies=["still works"])) as client:
        body = client.get("/v1/settings").json()
        assert body["storage_available"] is False
        assert body["warning"]
        assert body["settings"]["memory_enabled"] is True

        assert client.patch("/v1/settings", json={"memory_enabled": False}).status_code == 503
        assert client.post("/v1/settings/memory", json={"content": "x"}).status_code == 503

        resp = client.post("/v1/chat", json={"message": "hello"})
        assert resp.status_code == 200
        assert resp.json()["reply"] == "still works"


def test_dev_user_session_is_admin_and_promoted(settings, flags):
    with _client(settings, flags) as client:
        body = client.get("/v1/session").json()
    assert body["user"]["id"] == "dev-user"
    assert body["is_admin"] is True
    assert body["role"] == "dev"


# ── Auth ─────────────────────────────────────────────────────────────

def _token(sub, email="", secret="test-secret"):
    return jwt.encode({"sub": sub, "email": email, "aud": "authenticated"}, secret, algorithm="HS256")


@pytest.fixture
def auth_flags() -> FeatureFlags:
    return FeatureFlags(_env_file=None, FF_USE_AUTH=True)


def test_missing_or_bad_token_is_rejected(settings, auth_flags):
    with _client(settings, auth_flags) as client:
        assert client.get("/v1/session").status_code == 401
        bad = {"Authorization": f"Bearer {_token('u1', secret='wrong')}"}
        assert client.get("/v1/session", headers=bad).status_code == 401
        assert client.get("/v1/session", headers={"Authorization": "Basic abc"}).status_code == 401


def test_valid_token_and_admin_role_management(settings, auth_flags):
    settings.admin_email = "boss@example.com"
    user = {"Authorization": f"Bearer {_token('user-1', 'someone@example.com')}"}
    admin = {"Authorization": f"Bearer {_token('admin-1', 'Boss@Example.com')}"}

    with _client(settings, auth_flags) as client:
        session = client.get("/v1/session", headers=user).json()
        assert session == {
            "user": {"id": "user-1", "email": "someone@example.com", "name": ""},
            "role": "base",
            "is_admin": False,
        }

        assert client.put("/v1/admin/users/user-1/role", json={"role": "vip"}, headers=user).status_code == 403

        resp = client.put("/v1/admin/users/user-1/role", json={"role": "vip"}, headers=admin)
        assert resp.json() == {"user_id": "user-1", "role": "vip"}
        assert client.put("/v1/admin/users/user-1/role", json={"role": "dev"}, headers=admin).status_code == 422

        assert client.get("/v1/session", headers=user).json()["role"] == "vip"
        assert client.get("/v1/session", headers=admin).json()["role"] == "dev"

        assert client.get("/v1/admin/users", headers=user).status_code == 403
        users = client.get("/v1/admin/users", headers=admin).json()["users"]
        assert [(u["user_id"], u["role"]) for u in users] == [("admin-1", "dev"), ("user-1", "vip")]
        assert all(u["created_at"] for u in users)


def test_non_admin_cannot_pick_a_provider(settings, auth_flags):
    llm = FakeLLM(replies=["a"])
    user = {"Authorization": f"Bearer {_token('user-1')}"}
    with _client(settings, auth_flags, llm) as client:
        client.post("/v1/chat", json={"message": "hi", "provider": "openrouter"}, headers=user)
    assert llm.calls[0]["provider"] is None
