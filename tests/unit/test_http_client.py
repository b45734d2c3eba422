"""Unit tests for HTTP client."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import aiohttp
import pytest

from studio_jobs.errors import JobFailedError, RemoteHttpError
from studio_jobs.http_client import SseJobNotifier, StudioJobsHttpClient
from studio_jobs.models import JobStatus


class FakeContent:
    """Stands in for aiohttp's StreamReader."""

    def __init__(self, chunks):
        self.chunks = chunks

    def __aiter__(self):
        return self._lines()

    async def _lines(self):
        for line in b"".join(self.chunks).splitlines(keepends=True):
            yield line

    async def iter_any(self):
        for chunk in self.chunks:
            yield chunk


def fake_response(status=200, body="", chunks=()):
    resp = MagicMock()
    resp.status = status
    resp.text = AsyncMock(return_value=body)
    resp.content = FakeContent(list(chunks))
    return resp


@pytest.fixture
def session():
    """Patch aiohttp.ClientSession; configure responses per method."""
    with patch("aiohttp.ClientSession") as session_cls:
        session_cls.return_value.__aexit__.return_value = False
        mock_session = MagicMock()
        session_cls.return_value.__aenter__.return_value = mock_session
        for method in ("request", "get", "post"):
            getattr(mock_session, method).return_value.__aexit__.return_value = False
        yield mock_session


def respond(session, method, *responses):
    cm = getattr(session, method).return_value
    cm.__aenter__.side_effect = list(responses)


@pytest.mark.asyncio
async def test_create_image_job_sends_identity_and_nudges(session):
    job_id = uuid4()
    respond(
        session,
        "request",
        fake_response(body=json.dumps({"job_id": str(job_id), "status": "processing"})),
        fake_response(body=json.dumps({"ok": True, "status": "processed", "job_id": str(job_id)})),
    )
    client = StudioJobsHttpClient("https://api.example.com/", user_id="user-1", auth_token="t")

    result = await client.create_image_job(
        {"model": "nano-banana", "prompt": "p"}, client_job_id="c-1", trace_id="tr-1"
    )
    await client.aclose()

    assert result == job_id
    first, second = session.request.call_args_list
    assert first[0] == ("POST", "https://api.example.com/jobs/image")
    assert first[1]["json"]["client_job_id"] == "c-1"
    assert first[1]["json"]["fe_attempt"] == 1
    assert first[1]["headers"]["X-User-Id"] == "user-1"
    assert first[1]["headers"]["X-Studio-Jobs-Token"] == "t"
    assert second[0] == ("POST", "https://api.example.com/jobs/process")


@pytest.mark.asyncio
async def test_error_envelope_is_parsed(session):
    envelope = {
        "error": {
            "code": "INSUFFICIENT_CREDITS",
            "message": "Not enough credits",
            "details": {"required": 12, "available": 10},
        }
    }
    respond(session, "request", fake_response(status=402, body=json.dumps(envelope)))
    client = StudioJobsHttpClient("https://api.example.com", user_id="user-1")

    with pytest.raises(RemoteHttpError) as exc_info:
        await client.create_style_replicate_job({"mode": "single"}, nudge=False)

    assert exc_info.value.status_code == 402
    assert exc_info.value.code == "INSUFFICIENT_CREDITS"
    assert "Not enough credits" in str(exc_info.value)


@pytest.mark.asyncio
async def test_network_error(session):
    """Test that network errors raise RemoteHttpError."""
    session.request.side_effect = aiohttp.ClientConnectionError("Network error")
    client = StudioJobsHttpClient("https://api.example.com")

    with pytest.raises(RemoteHttpError) as exc_info:
        await client.get_credits()

    assert exc_info.value.status_code == 0


@pytest.mark.asyncio
async def test_nudge_failure_is_swallowed(session):
    session.request.side_effect = aiohttp.ClientConnectionError("down")
    client = StudioJobsHttpClient("https://api.example.com")

    assert await client.nudge(uuid4()) is None


@pytest.mark.asyncio
async def test_nudge_ignores_unreadable_success_body(session):
    respond(session, "request", fake_response(body="<html>ok</html>"), fake_response(body="[1, 2]"))
    client = StudioJobsHttpClient("https://api.example.com")

    assert await client.nudge(uuid4()) is None
    assert await client.nudge(uuid4()) is None


@pytest.mark.asyncio
async def test_get_job_returns_model(session, sample_job):
    respond(session, "request", fake_response(body=json.dumps(sample_job.to_dict())))
    client = StudioJobsHttpClient("https://api.example.com", user_id="user-1")

    job = await client.get_job(sample_job.id)

    assert job.id == sample_job.id
    assert job.status is JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_list_jobs_passes_filters(session, sample_job):
    respond(session, "request", fake_response(body=json.dumps([sample_job.to_dict()])))
    client = StudioJobsHttpClient("https://api.example.com", user_id="user-1")

    jobs = await client.list_jobs(status="failed", limit=10)

    assert [j.id for j in jobs] == [sample_job.id]
    assert session.request.call_args[1]["params"] == {"limit": 10, "status": "failed"}


@pytest.mark.asyncio
async def test_sse_notifier_yields_events_until_done(session, sample_job):
    events = (
        f'data: {{"job_id": "{sample_job.id}", "status": "processing"}}\n\n'
        f'data: {{"job_id": "{sample_job.id}", "status": "failed"}}\n\n'
        "data: [DONE]\n\n"
    ).encode()
    respond(session, "get", fake_response(chunks=[events]))
    notifier = SseJobNotifier(StudioJobsHttpClient("https://api.example.com", user_id="user-1"))

    received = [event async for event in notifier.watch(sample_job.id)]

    assert [e["status"] for e in received] == ["processing", "failed"]
    assert session.get.call_args[0][0] == f"https://api.example.com/jobs/{sample_job.id}/events"


@pytest.mark.asyncio
async def test_wait_for_job_raises_on_failure(session, job_factory):
    failed = job_factory(status=JobStatus.FAILED, error_code="UPSTREAM_ERROR")
    respond(session, "request", fake_response(body=json.dumps(failed.to_dict())))
    client = StudioJobsHttpClient("https://api.example.com", user_id="user-1")

    with pytest.raises(JobFailedError) as exc_info:
        await client.wait_for_job(failed.id, timeout=1)

    assert exc_info.value.error_code == "UPSTREAM_ERROR"


@pytest.mark.asyncio
async def test_stream_prompts(session):
    chunks = [
        b'data: {"fullText": ""}\n\ndata: {"fullText": "[{\\"prompt\\": ',
        b'\\"Mug\\"}]"}\n\ndata: [DONE]\n\n',
    ]
    respond(session, "post", fake_response(chunks=chunks))
    client = StudioJobsHttpClient("https://api.example.com", user_id="user-1")

    result = await client.stream_prompts({"images": [{}]}, image_count=1)

    assert result.prompts == ["Mug"]
    assert result.done
    assert session.post.call_args[1]["json"]["imageCount"] == 1


@pytest.mark.asyncio
async def test_stream_prompts_http_error(session):
    respond(session, "post", fake_response(status=503, body='{"error": {"code": "UPSTREAM_UNAVAILABLE", "message": "x"}}'))
    client = StudioJobsHttpClient("https://api.example.com", user_id="user-1")

    with pytest.raises(RemoteHttpError) as exc_info:
        await client.stream_prompts("blueprint")

    assert exc_info.value.code == "UPSTREAM_UNAVAILABLE"


@pytest.mark.asyncio
async def test_stream_prompts_connect_timeout(session):
    session.post.side_effect = asyncio.TimeoutError()
    client = StudioJobsHttpClient("https://api.example.com", user_id="user-1")

    with pytest.raises(RemoteHttpError) as exc_info:
        await client.stream_prompts("blueprint")

    assert exc_info.value.status_code == 0
    assert "timed out" in str(exc_info.value)
