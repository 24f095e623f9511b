from __future__ import annotations

import base64

import httpx
from fastapi.testclient import TestClient

from conftest import BFL_BASE, KLING_BASE, TEST_CREDENTIALS, FakeProvider
from framecast.api.app import create_app
from framecast.config import Settings
from framecast.services.tasks import InMemoryTaskStore

FRAME = "F" * 2048


def _settings(**overrides) -> Settings:
    values = dict(
        bfl_api_key="bfl-test-key",
        bfl_api_base=BFL_BASE,
        image_max_base64_chars=64 * 1024,
        image_poll_interval_seconds=0.001,
        image_poll_max_attempts=3,
        image_timeout_seconds=5,
        kling_access_key=TEST_CREDENTIALS.issuer_key,
        kling_secret_key=TEST_CREDENTIALS.signing_secret,
        kling_api_base=KLING_BASE,
        video_max_bytes=256 * 1024,
        video_poll_interval_seconds=0.001,
        video_poll_max_attempts=3,
        video_timeout_seconds=5,
        token_reuse_margin_seconds=None,
        supabase_url=None,
        supabase_service_role_key=None,
        log_level="WARNING",
        log_json=False,
    )
    values.update(overrides)
    return Settings(**values)


def _client(fake: FakeProvider, **overrides) -> tuple[TestClient, InMemoryTaskStore]:
    store = InMemoryTaskStore()
    app = create_app(settings=_settings(**overrides), http_client=fake.client(), task_store=store)
    return TestClient(app), store


def test_health_reports_configured_providers() -> None:
    client, _ = _client(FakeProvider(submit={}), kling_secret_key=None)

    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["providers"] == {"image_edit": True, "video_compile": False}
    assert body["task_store"] == "InMemoryTaskStore"


def test_image_edit_success() -> None:
    fake = FakeProvider(
        submit={"id": "abc", "polling_url": f"{BFL_BASE}/get_result?id=abc"},
        statuses=[{"status": "Pending"}, {"status": "Ready", "result": {"sample": "http://result.jpg"}}],
    )
    client, store = _client(fake)

    response = client.post("/image-edits", json={"prompt": "add rainbow", "input_image": FRAME})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["state"] == "Succeeded"
    assert body["task_id"] == "abc"
    assert body["result_url"] == "http://result.jpg"
    assert body["error"] is None
    assert any("Done: http://result.jpg" in line for line in body["log"])

    tasks = client.get("/tasks").json()
    assert tasks == [
        {
            "task_id": "abc",
            "kind": "image_edit",
            "prompt": "add rainbow",
            "status": "completed",
            "result_url": "http://result.jpg",
            "error_message": None,
        }
    ]


def test_image_edit_without_prompt_is_a_bad_request() -> None:
    fake = FakeProvider(submit={"id": "abc"})
    client, _ = _client(fake)

    response = client.post("/image-edits", json={"input_image": FRAME})

    assert response.status_code == 400
    assert response.json()["state"] == "Idle"
    assert fake.requests == []


def test_oversized_image_maps_to_413() -> None:
    fake = FakeProvider(submit={"id": "abc"})
    client, _ = _client(fake, image_max_base64_chars=1024)

    response = client.post("/image-edits", json={"prompt": "p", "input_image": FRAME})

    assert response.status_code == 413
    assert response.json()["success"] is False
    assert fake.requests == []


def test_provider_rejection_status_passes_through() -> None:
    fake = FakeProvider(submit=httpx.Response(402, text="Insufficient credits"))
    client, _ = _client(fake)

    response = client.post("/image-edits", json={"prompt": "p", "input_image": FRAME})

    assert response.status_code == 402
    assert "Insufficient credits" in response.json()["error"]


def test_exhausted_poll_budget_maps_to_504() -> None:
    fake = FakeProvider(submit={"id": "abc"}, statuses=[{"status": "Pending"}])
    client, store = _client(fake)

    response = client.post("/image-edits", json={"prompt": "p", "input_image": FRAME})

    assert response.status_code == 504
    assert response.json()["state"] == "Failed"
    assert client.get("/tasks").json()[0]["status"] == "failed"


def test_missing_api_key_is_a_server_error() -> None:
    fake = FakeProvider(submit={"id": "abc"})
    client, _ = _client(fake, bfl_api_key=None)

    response = client.post("/image-edits", json={"prompt": "p", "input_image": FRAME})

    assert response.status_code == 500
    assert fake.requests == []


def test_image_edit_status_check() -> None:
    fake = FakeProvider(submit={}, statuses=[{"status": "Ready", "result": {"sample": "http://r.jpg"}}])
    client, _ = _client(fake)

    response = client.get("/image-edits/abc")

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "status": "completed",
        "result_url": "http://r.jpg",
        "message": None,
    }
    assert str(fake.status_queries[0].url) == f"{BFL_BASE}/get_result?id=abc"


def test_video_status_check_reports_processing_and_failures() -> None:
    fake = FakeProvider(
        submit={},
        statuses=[
            {"code": 0, "data": {"task_status": "processing"}},
            {"code": 0, "data": {"task_status": "failed", "task_status_msg": "bad frame"}},
        ],
    )
    client, _ = _client(fake)

    first = client.get("/video-compilations/t-1").json()
    second = client.get("/video-compilations/t-1").json()

    assert first["status"] == "processing"
    assert second == {"success": False, "status": "failed", "result_url": None, "message": "bad frame"}
    assert str(fake.status_queries[0].url) == f"{KLING_BASE}/v1/videos/image2video/t-1"


def test_status_check_transport_failure_is_bad_gateway() -> None:
    fake = FakeProvider(submit={}, statuses=[httpx.Response(503, text="maintenance")])
    client, _ = _client(fake)

    response = client.get("/video-compilations/t-1")

    assert response.status_code == 502


def test_video_compilation_success() -> None:
    fake = FakeProvider(
        submit={"code": 0, "data": {"task_id": "t-1"}},
        statuses=[
            {"code": 0, "data": {"task_status": "succeed", "task_result": {"videos": [{"url": "http://v.mp4"}]}}}
        ],
    )
    client, _ = _client(fake)
    video = base64.b64encode(b"recorded-clip").decode("ascii")

    response = client.post(
        "/video-compilations",
        json={"transcript": "make it snow", "video_base64": f"data:video/webm;base64,{video}"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "Succeeded"
    assert body["generated_url"] == "http://v.mp4"
    assert fake.submissions[0].headers["Authorization"].startswith("Bearer ")


def test_video_compilation_rejects_invalid_base64() -> None:
    fake = FakeProvider(submit={"code": 0, "data": {"task_id": "t-1"}})
    client, _ = _client(fake)

    response = client.post("/video-compilations", json={"prompt": "p", "video_base64": "not base64!!"})

    assert response.status_code == 400
    assert fake.requests == []


def test_credentials_verify_reports_token_metadata() -> None:
    client, _ = _client(FakeProvider(submit={}))

    response = client.post("/credentials/verify")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["issuer"] == "ak-test-..."
    assert body["token_length"] > 0
    assert TEST_CREDENTIALS.signing_secret not in response.text


def test_credentials_verify_fails_without_secret() -> None:
    client, _ = _client(FakeProvider(submit={}), kling_secret_key="")

    response = client.post("/credentials/verify")

    assert response.status_code == 500
    assert response.json()["success"] is False


def test_image_edit_without_image_is_a_bad_request() -> None:
    fake = FakeProvider(submit={"id": "abc"})
    client, _ = _client(fake)

    response = client.post("/image-edits", json={"prompt": "p"})

    assert response.status_code == 400
    assert "input image" in response.json()["error"]
    assert fake.requests == []


def test_video_compilation_without_clip_is_a_bad_request() -> None:
    fake = FakeProvider(submit={"code": 0, "data": {"task_id": "t-1"}})
    client, _ = _client(fake)

    response = client.post("/video-compilations", json={"prompt": "p"})

    assert response.status_code == 400
    assert "recorded clip" in response.json()["error"]
    assert fake.requests == []
