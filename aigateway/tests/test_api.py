import json
import time

import jwt

from aigateway.app.config.settings import settings
from aigateway.app.providers.types import RawModel
from aigateway.app.services.image_pipeline import image_pipeline
from aigateway.app.services.rate_limit import rate_limiter
from aigateway.tests.fakes import JPEG_BYTES, PNG_BYTES, FakeStore


def parse_sse(text):
    events = []
    for block in text.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


def generate(client, **body):
    body.setdefault("prompt", "A hero section")
    body.setdefault("model", "fake/fake-model")
    return client.post("/ai/generate", json=body)


def test_list_providers(client):
    response = client.get("/providers")

    assert response.status_code == 200
    assert response.json() == [
        {
            "provider_id": "fake",
            "display_name": "Fake",
            "kind": "openai_compat",
            "capabilities": ["image", "text", "vision"],
            "has_credential": True,
            "allow_direct": True,
        }
    ]


def test_unknown_provider_models(client):
    response = client.get("/providers/ghost/models")

    assert response.status_code == 503
    assert response.json()["code"] == "PROVIDER_UNAVAILABLE"


def test_generate_streams_sse_events(client):
    response = generate(client)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = parse_sse(response.text)
    assert [name for name, _ in events] == ["meta", "chunk", "chunk", "chunk", "chunk", "done"]
    meta, done = events[0][1], events[-1][1]
    assert meta["model"] == "fake-model"
    assert done["content"] == "<div>Hello world</div>"
    assert done["session_id"] == meta["session_id"]


def test_session_status_is_owner_only(client):
    events = parse_sse(generate(client).text)
    session_id = events[0][1]["session_id"]

    own = client.get(f"/ai/sessions/{session_id}")
    assert own.status_code == 200
    assert own.json()["state"] == "completed"
    assert own.json()["provider"] == "fake"

    other = client.get(f"/ai/sessions/{session_id}", headers={"X-Caller-Id": "mallory"})
    assert other.status_code == 404
    assert other.json()["code"] == "SESSION_NOT_FOUND"

    admin = client.get(
        f"/ai/sessions/{session_id}",
        headers={"X-Caller-Id": "ops", "X-Admin-Token": "test-admin-token"},
    )
    assert admin.status_code == 200


def test_cancel_unknown_session(client):
    response = client.post("/ai/sessions/does-not-exist/cancel")

    assert response.status_code == 404
    assert response.json()["code"] == "SESSION_NOT_FOUND"
    assert "request_id" in response.json()


def test_rate_limited_generate(client):
    rate_limiter.configure(1, 60)

    assert generate(client).status_code == 200
    response = generate(client)

    assert response.status_code == 429
    body = response.json()
    assert body["code"] == "RATE_LIMITED"
    assert 1 <= body["retry_after"] <= 60
    assert response.headers["Retry-After"] == str(body["retry_after"])


def test_empty_prompt_is_invalid(client):
    response = client.post("/ai/generate", json={"prompt": ""})

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_REQUEST"


def test_direct_mode_returns_connection_parameters(client, fake_transport, monkeypatch):
    monkeypatch.setattr(settings, "allow_direct_mode", True)

    response = generate(client, connection="direct")

    assert response.status_code == 200
    body = response.json()
    assert body["connection"] == "direct"
    assert body["provider_id"] == "fake"
    assert body["base_url"] == "https://fake.example/v1"
    assert body["limits_enforced"] is False
    assert "test-key" not in response.text
    assert fake_transport.stream_calls == 0


def test_sync_and_list_models(client, fake_transport):
    fake_transport.models = [RawModel("gpt-4o"), RawModel("dall-e-3"), RawModel("text-embedding-3-small")]

    sync = client.post("/ai/models/sync")
    assert sync.status_code == 200
    assert sync.json()["counts"] == {"text": 0, "image": 1, "vision": 1}
    assert sync.json()["errors"] == {}

    listed = client.get("/ai/models", params={"capability": "image"})
    assert listed.status_code == 200
    models = listed.json()["models"]
    assert [m["id"] for m in models] == ["fake/dall-e-3"]
    assert models[0]["capability"] == "image"
    assert listed.json()["synced_at"] is not None

    provider_models = client.get("/providers/fake/models").json()["models"]
    assert {m["id"] for m in provider_models} == {"gpt-4o", "dall-e-3"}


def test_screenshot_type_mismatch_is_rejected(client, fake_transport):
    response = client.post(
        "/ai/screenshots",
        files={"file": ("shot.png", JPEG_BYTES, "image/png")},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["detail"] == {"reason": "type_mismatch"}
    assert fake_transport.once_calls == []


def test_screenshot_to_html(client, fake_transport, monkeypatch):
    store = FakeStore()
    monkeypatch.setattr(image_pipeline, "store", store)

    response = client.post(
        "/ai/screenshots",
        files={"file": ("shot.png", PNG_BYTES, "image/png")},
        data={"instructions": "Keep the header", "model": "fake/gpt-4o"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "html": "<section>Hello</section>",
        "model": "gpt-4o",
        "provider": "fake",
        "asset_ref": "asset-1",
    }
    assert store.items[0][2]["source"] == "screenshot"


def test_generate_image(client, monkeypatch):
    monkeypatch.setattr(image_pipeline, "store", FakeStore())

    response = client.post("/ai/images", json={"prompt": "a lighthouse", "model": "fake/dall-e-3"})

    assert response.status_code == 200
    assert response.json() == {
        "asset_ref": "asset-1",
        "content_type": "image/png",
        "model": "dall-e-3",
        "provider": "fake",
    }


def test_admin_endpoints_require_token(client):
    assert client.post("/admin/config/reload").status_code == 403
    assert client.get("/admin/sessions").json()["code"] == "FORBIDDEN"


def test_admin_lists_sessions(client):
    generate(client)

    response = client.get("/admin/sessions", headers={"X-Admin-Token": "test-admin-token"})

    assert response.status_code == 200
    assert response.json()["active"] == []
    assert response.json()["recent"][-1]["state"] == "completed"


def test_admin_reload_rebuilds_registry(client):
    response = client.post("/admin/config/reload", headers={"X-Admin-Token": "test-admin-token"})

    assert response.status_code == 200
    body = response.json()
    # The test environment enables only an unconfigured local provider
    assert body["providers"] == []
    assert set(body["default_models"]) == {"text", "image", "vision"}


def test_bearer_identity(client, monkeypatch):
    monkeypatch.setattr(settings, "identity_mode", "bearer")

    missing = client.get("/providers")
    assert missing.status_code == 401
    assert missing.json()["code"] == "AUTH_REQUIRED"

    bad = client.get("/providers", headers={"Authorization": "Bearer not-a-jwt"})
    assert bad.json()["code"] == "AUTH_INVALID"

    expired = jwt.encode({"sub": "u1", "exp": int(time.time()) - 60}, settings.jwt_secret, algorithm="HS256")
    response = client.get("/providers", headers={"Authorization": f"Bearer {expired}"})
    assert response.json()["code"] == "AUTH_EXPIRED"

    token = jwt.encode({"sub": "u1", "exp": int(time.time()) + 60}, settings.jwt_secret, algorithm="HS256")
    response = client.get("/providers", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200


def test_forwarded_headers_from_untrusted_peer_do_not_reset_limit(client, monkeypatch):
    monkeypatch.setattr(image_pipeline, "store", FakeStore())
    rate_limiter.configure(2, 60)

    statuses = [
        client.post(
            "/ai/images",
            json={"prompt": "a lighthouse", "model": "fake/dall-e-3"},
            headers={"X-Forwarded-For": f"203.0.113.{i}", "X-Real-IP": f"198.51.100.{i}"},
        ).status_code
        for i in range(6)
    ]

    assert statuses == [200, 200, 429, 429, 429, 429]
    assert list(rate_limiter._buckets) == ["testclient"]


def test_forwarded_headers_from_trusted_proxy_key_the_limit(client, monkeypatch):
    monkeypatch.setattr(image_pipeline, "store", FakeStore())
    monkeypatch.setattr(settings, "trusted_proxies", "testclient")
    rate_limiter.configure(1, 60)

    def post(ip):
        return client.post(
            "/ai/images",
            json={"prompt": "a lighthouse", "model": "fake/dall-e-3"},
            headers={"X-Forwarded-For": f"{ip}, 10.0.0.1"},
        ).status_code

    assert post("203.0.113.1") == 200
    assert post("203.0.113.2") == 200
    assert post("203.0.113.1") == 429
