"""HTTP client for the studio jobs service."""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Union
from uuid import UUID

import aiohttp

from studio_jobs.errors import RemoteHttpError
from studio_jobs.models import Job
from studio_jobs.streaming import DONE_SENTINEL, PromptStreamConsumer, PromptStreamResult, iter_sse_data
from studio_jobs.waiter import wait_for_job


def _parse_error(status: int, response_body: str) -> RemoteHttpError:
    """Turn an error response into RemoteHttpError, reading the error envelope when present."""
    code = None
    message = response_body
    try:
        data = json.loads(response_body)
    except (json.JSONDecodeError, TypeError):
        data = None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            code = error.get("code")
            message = error.get("message") or message
        elif "detail" in data:
            message = str(data["detail"])
    return RemoteHttpError(
        status_code=status, message=message, response_body=response_body, code=code
    )


class StudioJobsHttpClient:
    """HTTP client for calling the studio jobs service on behalf of one user."""

    def __init__(
        self,
        base_url: str,
        user_id: Optional[str] = None,
        auth_token: Optional[str] = None,
        timeout: float = 10.0,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize HTTP client.

        Args:
            base_url: Base URL of the studio jobs service
            user_id: Sent as X-User-Id on user-scoped calls
            auth_token: Optional auth token for X-Studio-Jobs-Token header
            timeout: Request timeout in seconds
            logger: Logger instance
        """
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.auth_token = auth_token
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        # Streams stay open well past the request timeout.
        self.stream_timeout = aiohttp.ClientTimeout(total=None, sock_connect=timeout)
        self.logger = logger or logging.getLogger(__name__)
        self._background: Set[asyncio.Task] = set()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["X-Studio-Jobs-Token"] = self.auth_token
        if self.user_id:
            headers["X-User-Id"] = self.user_id
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.request(
                    method, url, json=json_body, params=params, headers=self._headers()
                ) as resp:
                    response_body = await resp.text()
                    if resp.status >= 400:
                        raise _parse_error(resp.status, response_body)
                    return json.loads(response_body) if response_body else None
            except aiohttp.ClientError as e:
                raise RemoteHttpError(
                    status_code=0,
                    message=f"Network error: {str(e)}",
                ) from e
            except asyncio.TimeoutError as e:
                raise RemoteHttpError(status_code=0, message="Request timed out") from e

    async def _create_job(
        self,
        path: str,
        payload: Dict[str, Any],
        trace_id: Optional[str],
        client_job_id: Optional[str],
        fe_attempt: int,
        nudge: bool,
    ) -> UUID:
        request_body = dict(payload)
        request_body["fe_attempt"] = fe_attempt
        if trace_id:
            request_body["trace_id"] = trace_id
        if client_job_id:
            request_body["client_job_id"] = client_job_id

        data = await self._request("POST", path, json_body=request_body)
        job_id = UUID(data["job_id"])
        if nudge:
            task = asyncio.create_task(self.nudge(job_id))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return job_id

    async def create_analysis_job(
        self,
        payload: Dict[str, Any],
        *,
        trace_id: Optional[str] = None,
        client_job_id: Optional[str] = None,
        fe_attempt: int = 1,
        nudge: bool = True,
    ) -> UUID:
        """
        Create an analysis job and nudge a worker without waiting for it.

        Returns:
            Job ID (UUID)

        Raises:
            RemoteHttpError: If the HTTP request fails; ``code`` carries the
                error envelope code, e.g. INSUFFICIENT_CREDITS
        """
        return await self._create_job(
            "/jobs/analysis", payload, trace_id, client_job_id, fe_attempt, nudge
        )

    async def create_image_job(
        self,
        payload: Dict[str, Any],
        *,
        trace_id: Optional[str] = None,
        client_job_id: Optional[str] = None,
        fe_attempt: int = 1,
        nudge: bool = True,
    ) -> UUID:
        """Create an image generation job. Same contract as create_analysis_job."""
        return await self._create_job(
            "/jobs/image", payload, trace_id, client_job_id, fe_attempt, nudge
        )

    async def create_style_replicate_job(
        self,
        payload: Dict[str, Any],
        *,
        trace_id: Optional[str] = None,
        client_job_id: Optional[str] = None,
        fe_attempt: int = 1,
        nudge: bool = True,
    ) -> UUID:
        return await self._create_job(
            "/jobs/style-replicate", payload, trace_id, client_job_id, fe_attempt, nudge
        )

    async def nudge(self, job_id: UUID) -> Optional[str]:
        """
        Ask the service to process a job now.

        Failures are logged and otherwise ignored; the polling worker picks
        the job up regardless.

        Returns:
            The process outcome, or None if the nudge did not go through
        """
        try:
            data = await self._request("POST", "/jobs/process", json_body={"job_id": str(job_id)})
            return data.get("status") if isinstance(data, dict) else None
        except Exception as e:
            self.logger.warning(f"Nudge for job {job_id} failed: {e}")
            return None

    async def get_job(self, job_id: UUID) -> Job:
        """
        Get job details by ID.

        Raises:
            RemoteHttpError: If the HTTP request fails (404 if not found)
        """
        data = await self._request("GET", f"/jobs/{job_id}")
        return Job.from_dict(data)

    async def list_jobs(
        self,
        *,
        status: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 50,
    ) -> List[Job]:
        params: Dict[str, Any] = {"limit": limit}
        if status:
            params["status"] = status
        if type:
            params["type"] = type
        data = await self._request("GET", "/jobs", params=params)
        return [Job.from_dict(item) for item in data]

    async def get_credits(self) -> Dict[str, Any]:
        return await self._request("GET", "/credits")

    async def register_profile(self, email: Optional[str] = None) -> Dict[str, Any]:
        return await self._request("POST", "/profiles", json_body={"email": email})

    async def get_public_config(self) -> Dict[str, Any]:
        return await self._request("GET", "/config/public")

    async def wait_for_job(
        self,
        job_id: UUID,
        *,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
        poll_interval: float = 2.0,
        use_events: bool = True,
    ) -> Job:
        """
        Wait until a job is terminal, listening to its event stream and polling.

        Raises:
            JobFailedError: If the job failed
            WaitCancelledError: On timeout or when cancel_event is set
        """
        return await wait_for_job(
            job_id,
            fetch_job=self.get_job,
            notifier=SseJobNotifier(self) if use_events else None,
            poll_interval=poll_interval,
            timeout=timeout,
            cancel_event=cancel_event,
            logger=self.logger,
        )

    async def stream_prompts(
        self,
        analysis_json: Union[Dict[str, Any], str],
        *,
        image_count: Optional[int] = None,
        language: str = "en",
        design_specs: Optional[Union[Dict[str, Any], str]] = None,
        expected_count: Optional[int] = None,
    ) -> PromptStreamResult:
        """
        Stream prompt synthesis and parse the accumulated text into prompts.

        Returns:
            PromptStreamResult; never raises for malformed stream content
        """
        request_body: Dict[str, Any] = {"analysisJson": analysis_json, "language": language}
        if image_count is not None:
            request_body["imageCount"] = image_count
        if design_specs is not None:
            request_body["design_specs"] = design_specs

        consumer = PromptStreamConsumer(
            expected_count=expected_count or image_count or 1, logger=self.logger
        )
        url = f"{self.base_url}/prompts/stream"
        async with aiohttp.ClientSession(timeout=self.stream_timeout) as session:
            try:
                async with session.post(url, json=request_body, headers=self._headers()) as resp:
                    if resp.status >= 400:
                        raise _parse_error(resp.status, await resp.text())
                    return await consumer.consume(resp.content.iter_any())
            except aiohttp.ClientError as e:
                raise RemoteHttpError(
                    status_code=0,
                    message=f"Network error: {str(e)}",
                ) from e
            except asyncio.TimeoutError as e:
                raise RemoteHttpError(status_code=0, message="Request timed out") from e

    async def aclose(self) -> None:
        """Wait for outstanding nudges."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)


class SseJobNotifier:
    """Push channel over the service's ``/jobs/{id}/events`` stream."""

    def __init__(self, client: StudioJobsHttpClient):
        self.client = client

    async def watch(self, job_id: Any) -> AsyncIterator[Dict[str, Any]]:
        url = f"{self.client.base_url}/jobs/{job_id}/events"
        async with aiohttp.ClientSession(timeout=self.client.stream_timeout) as session:
            async with session.get(url, headers=self.client._headers()) as resp:
                if resp.status >= 400:
                    raise _parse_error(resp.status, await resp.text())
                async for raw_line in resp.content:
                    line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
                    for data in iter_sse_data([line]):
                        if data == DONE_SENTINEL:
                            return
                        try:
                            yield json.loads(data)
                        except json.JSONDecodeError:
                            self.client.logger.warning(f"Ignoring malformed job event: {data!r}")
