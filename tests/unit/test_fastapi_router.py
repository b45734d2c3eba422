"""Unit tests for FastAPI router."""

import json
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from studio_jobs.config import StudioJobsConfig
from studio_jobs.errors import (
    InsufficientCreditsError,
    JobAccessDeniedError,
    JobNotFoundError,
    ProfileNotFoundError,
)
from studio_jobs.fastapi_router import create_jobs_router
from studio_jobs.models import JobStatus, JobType, ProcessOutcome, Profile
from studio_jobs.pricing import CreditCostTable
from studio_jobs.prompts import sse_event
from studio_jobs.service import JobService

USER = {"X-User-Id": "user-1"}


@pytest.fixture
def mock_job_service(sample_job):
    """Create a mock job service."""
    service = MagicMock(spec=JobService)
    service.config = StudioJobsConfig(
        db_dsn="postgresql://localhost/test", wait_poll_interval_seconds=0.01
    )
    service.create_job = AsyncMock(return_value=sample_job)
    service.get_job = AsyncMock(return_value=sample_job)
    service.get_job_for_user = AsyncMock(return_value=sample_job)
    service.list_jobs = AsyncMock(return_value=[])
    service.get_cost_table = AsyncMock(return_value=CreditCostTable())
    service.get_balance = AsyncMock()
    service.register_user = AsyncMock()
    service.get_signup_bonus = AsyncMock(return_value=20)
    return service


@pytest.fixture
def upstream():
    client = MagicMock()

    async def stream_chat(messages, model=None):
        yield sse_event({"choices": [{"delta": {"content": '["Mug"]'}}]})
        yield sse_event("[DONE]")

    client.stream_chat = stream_chat
    return client


@pytest.fixture
def app(mock_job_service, upstream):
    """Create FastAPI app with router."""

    def job_service_factory():
        return mock_job_service

    router = create_jobs_router(job_service_factory, auth_token=None, upstream=upstream)
    app = FastAPI()
    app.include_router(router)
    return app


@pytest.fixture
def client(app):
    """Create test client."""
    return TestClient(app)


def test_create_image_job_charges_table_cost(client, mock_job_service, sample_job):
    response = client.post(
        "/jobs/image",
        headers=USER,
        json={
            "model": "nano-banana-pro",
            "prompt": "Mug on marble",
            "productImage": "https://img/p.png",
            "client_job_id": "c-1",
            "fe_attempt": 2,
        },
    )

    assert response.status_code == 200
    assert response.json() == {"job_id": str(sample_job.id), "status": "processing"}
    kwargs = mock_job_service.create_job.call_args[1]
    assert kwargs["cost_amount"] == 5
    assert kwargs["type"] is JobType.IMAGE_GEN
    assert kwargs["client_job_id"] == "c-1"
    assert kwargs["fe_attempt"] == 2
    assert "client_job_id" not in kwargs["payload"]
    assert kwargs["payload"]["prompt"] == "Mug on marble"


def test_create_image_job_turbo_cost(client, mock_job_service):
    client.post(
        "/jobs/image",
        headers=USER,
        json={
            "model": "nano-banana",
            "prompt": "p",
            "productImage": "https://img/p.png",
            "turboEnabled": True,
            "imageSize": "4K",
        },
    )

    assert mock_job_service.create_job.call_args[1]["cost_amount"] == 17


def test_create_image_job_model_mode_requires_model_image(client, mock_job_service):
    response = client.post(
        "/jobs/image",
        headers=USER,
        json={
            "model": "nano-banana",
            "prompt": "p",
            "productImage": "https://img/p.png",
            "workflowMode": "model",
        },
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "IMAGE_INPUT_SOURCE_MISSING"
    mock_job_service.create_job.assert_not_called()


def test_create_job_insufficient_credits(client, mock_job_service):
    mock_job_service.create_job.side_effect = InsufficientCreditsError("user-1", 12, 10)

    response = client.post(
        "/jobs/image",
        headers=USER,
        json={"model": "nano-banana", "prompt": "p", "productImage": "https://img/p.png"},
    )

    assert response.status_code == 402
    error = response.json()["error"]
    assert error["code"] == "INSUFFICIENT_CREDITS"
    assert error["details"] == {"required": 12, "available": 10}


def test_create_job_without_profile(client, mock_job_service):
    mock_job_service.create_job.side_effect = ProfileNotFoundError("user-1")

    response = client.post(
        "/jobs/analysis", headers=USER, json={"productImage": "https://img/p.png"}
    )

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "PROFILE_NOT_FOUND"


def test_create_analysis_job_is_free(client, mock_job_service):
    response = client.post(
        "/jobs/analysis",
        headers=USER,
        json={"productImages": ["https://img/p.png"], "imageCount": 4, "requirements": "warm"},
    )

    assert response.status_code == 200
    kwargs = mock_job_service.create_job.call_args[1]
    assert kwargs["cost_amount"] == 0
    assert kwargs["payload"]["requirements"] == "warm"


def test_create_analysis_job_requires_image(client):
    response = client.post("/jobs/analysis", headers=USER, json={"imageCount": 2})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "ANALYSIS_INPUT_IMAGE_MISSING"


def test_create_style_replicate_batch_cost(client, mock_job_service):
    response = client.post(
        "/jobs/style-replicate",
        headers=USER,
        json={
            "mode": "batch",
            "model": "nano-banana",
            "productImage": "https://img/p.png",
            "referenceImages": ["https://img/r1.png", "https://img/r2.png"],
            "groupCount": 3,
            "imageSize": "1K",
        },
    )

    assert response.status_code == 200
    assert mock_job_service.create_job.call_args[1]["cost_amount"] == 3 * 6


def test_create_style_replicate_invalid_input(client, mock_job_service):
    response = client.post(
        "/jobs/style-replicate",
        headers=USER,
        json={"mode": "single", "productImages": ["https://img/p.png"]},
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "STYLE_REFERENCE_IMAGE_MISSING"
    mock_job_service.create_job.assert_not_called()


def test_missing_fields_return_422(client):
    """Test that missing required fields return 422."""
    response = client.post("/jobs/image", headers=USER, json={"prompt": "p"})

    assert response.status_code == 422


def test_missing_user_header(client):
    response = client.get("/credits")

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"


def test_create_job_without_user_is_rejected_with_envelope(client, mock_job_service):
    response = client.post("/jobs/analysis", json={"productImage": "https://img/p.png"})

    assert response.status_code == 401
    assert response.json() == {
        "error": {"code": "UNAUTHORIZED", "message": "Missing X-User-Id header"}
    }
    mock_job_service.create_job.assert_not_called()


def test_auth_token_required_when_configured(mock_job_service):
    app = FastAPI()
    app.include_router(create_jobs_router(lambda: mock_job_service, auth_token="secret"))
    client = TestClient(app)

    rejected = client.get("/credits", headers=USER)
    assert rejected.status_code == 401
    assert rejected.json()["error"]["code"] == "UNAUTHORIZED"
    nudge = client.post("/jobs/process", json={"job_id": str(uuid4())})
    assert nudge.json()["error"]["message"] == "Invalid or missing auth token"
    mock_job_service.get_balance.return_value = Profile("user-1")
    response = client.get(
        "/credits", headers={**USER, "X-Studio-Jobs-Token": "secret"}
    )
    assert response.status_code == 200


def test_get_job(client, sample_job):
    response = client.get(f"/jobs/{sample_job.id}", headers=USER)

    assert response.status_code == 200
    assert response.json()["id"] == str(sample_job.id)
    assert response.json()["status"] == "processing"


def test_get_job_of_another_user(client, mock_job_service, sample_job):
    mock_job_service.get_job_for_user.side_effect = JobAccessDeniedError(sample_job.id, "intruder")

    response = client.get(f"/jobs/{sample_job.id}", headers={"X-User-Id": "intruder"})

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FORBIDDEN"
    mock_job_service.get_job_for_user.assert_awaited_once_with(sample_job.id, "intruder")


def test_job_events_of_another_user(client, mock_job_service, sample_job):
    mock_job_service.get_job_for_user.side_effect = JobAccessDeniedError(sample_job.id, "intruder")

    response = client.get(f"/jobs/{sample_job.id}/events", headers={"X-User-Id": "intruder"})

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FORBIDDEN"


def test_get_job_not_found(client, mock_job_service):
    job_id = uuid4()
    mock_job_service.get_job_for_user.side_effect = JobNotFoundError(job_id)

    response = client.get(f"/jobs/{job_id}", headers=USER)

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "JOB_NOT_FOUND"


def test_get_job_invalid_id(client):
    response = client.get("/jobs/not-a-uuid", headers=USER)

    assert response.status_code == 400


def test_list_jobs_scoped_to_caller(client, mock_job_service, sample_job):
    mock_job_service.list_jobs.return_value = [sample_job]

    response = client.get("/jobs?status=processing&limit=5", headers=USER)

    assert response.status_code == 200
    assert len(response.json()) == 1
    assert mock_job_service.list_jobs.call_args[1] == {
        "user_id": "user-1",
        "status": "processing",
        "type": None,
        "limit": 5,
    }


def test_process_job_nudge(client, sample_job):
    with patch(
        "studio_jobs.fastapi_router.process_job",
        AsyncMock(return_value=ProcessOutcome.PROCESSED),
    ) as process:
        response = client.post("/jobs/process", json={"job_id": str(sample_job.id)})

    assert response.status_code == 200
    assert response.json() == {"ok": True, "status": "processed", "job_id": str(sample_job.id)}
    assert process.call_args[0][2] == sample_job.id


def test_process_job_lost_race(client, sample_job):
    with patch(
        "studio_jobs.fastapi_router.process_job",
        AsyncMock(return_value=ProcessOutcome.NO_AVAILABLE_TASK),
    ):
        response = client.post("/jobs/process", json={"job_id": str(sample_job.id)})

    assert response.json()["status"] == "no_available_task"


def test_process_job_without_upstream(mock_job_service, sample_job):
    app = FastAPI()
    app.include_router(create_jobs_router(lambda: mock_job_service))

    with patch("studio_jobs.fastapi_router.process_job", AsyncMock()) as process:
        response = TestClient(app).post("/jobs/process", json={"job_id": str(sample_job.id)})

    assert response.status_code == 503
    process.assert_not_called()


def test_job_events_for_finished_job(client, mock_job_service, job_factory):
    job = job_factory(status=JobStatus.SUCCESS)
    mock_job_service.get_job_for_user.return_value = job

    response = client.get(f"/jobs/{job.id}/events", headers=USER)

    assert response.status_code == 200
    assert response.text == (
        f'data: {{"job_id": "{job.id}", "status": "success"}}\n\n' "data: [DONE]\n\n"
    )


def test_job_events_until_failure(client, mock_job_service, job_factory):
    processing = job_factory()
    failed = job_factory(id=processing.id, status=JobStatus.FAILED, error_code="UPSTREAM_ERROR")
    mock_job_service.get_job_for_user.return_value = processing
    mock_job_service.get_job.side_effect = [processing, failed]

    response = client.get(f"/jobs/{processing.id}/events", headers=USER)

    lines = [line[6:] for line in response.text.split("\n\n") if line]
    assert json.loads(lines[0])["status"] == "processing"
    assert json.loads(lines[1])["error_code"] == "UPSTREAM_ERROR"
    assert lines[-1] == "[DONE]"


def test_get_credits(client, mock_job_service):
    mock_job_service.get_balance.return_value = Profile("user-1", subscription_credits=5, purchased_credits=10)

    response = client.get("/credits", headers=USER)

    assert response.json()["available_credits"] == 15


def test_get_credits_without_profile(client, mock_job_service):
    mock_job_service.get_balance.side_effect = ProfileNotFoundError("user-1")

    assert client.get("/credits", headers=USER).status_code == 404


def test_register_profile(client, mock_job_service):
    mock_job_service.register_user.return_value = Profile("user-1", purchased_credits=20)

    response = client.post("/profiles", headers=USER, json={"email": "u@example.com"})

    assert response.json()["purchased_credits"] == 20
    mock_job_service.register_user.assert_awaited_once_with("user-1", "u@example.com")


def test_public_config(client):
    response = client.get("/config/public")

    assert response.json()["credit_costs"]["turbo-2k"] == 12
    assert response.json()["signup_bonus_credits"] == 20


def test_prompt_stream(client):
    response = client.post(
        "/prompts/stream", headers=USER, json={"analysisJson": {"images": [{}]}}
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.text.endswith("data: [DONE]\n\n")
    assert '"fullText": "[\\"Mug\\"]"' in response.text
