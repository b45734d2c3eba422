"""HTTP client for the OpenAI-compatible AI endpoints that do the actual generation."""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from studio_jobs.errors import TaskExecutionError, UpstreamError


def _is_azure(url: str) -> bool:
    return ".openai.azure.com" in url or ".services.ai.azure.com" in url


class UpstreamAIClient:
    """Chat-completion and image-edit calls."""

    def __init__(
        self,
        chat_url: str,
        image_url: str,
        api_key: str,
        chat_model: str = "gpt-4o",
        image_model: Optional[str] = None,
        timeout: float = 120.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.chat_url = chat_url
        self.image_url = image_url
        self.api_key = api_key
        self.chat_model = chat_model
        self.image_model = image_model
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config, logger: Optional[logging.Logger] = None) -> "UpstreamAIClient":
        if not (config.upstream_chat_url and config.upstream_image_url and config.upstream_api_key):
            raise ValueError(
                "STUDIO_JOBS_UPSTREAM_CHAT_URL, STUDIO_JOBS_UPSTREAM_IMAGE_URL and "
                "STUDIO_JOBS_UPSTREAM_API_KEY are required to run handlers"
            )
        return cls(
            chat_url=config.upstream_chat_url,
            image_url=config.upstream_image_url,
            api_key=config.upstream_api_key,
            chat_model=config.analysis_model,
            timeout=config.upstream_timeout_seconds,
            logger=logger,
        )

    def _headers(self, url: str) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if _is_azure(url):
            headers["api-key"] = self.api_key
        else:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Run a chat completion and return the first choice's text."""
        body: Dict[str, Any] = {"messages": messages, "stream": False}
        if max_tokens:
            body["max_tokens"] = max_tokens
        if not _is_azure(self.chat_url):
            # Azure carries the deployment in the URL
            body["model"] = model or self.chat_model

        data = await self._post_json(self.chat_url, body)
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise UpstreamError(502, f"Malformed chat response: {e}") from e

    async def stream_chat(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
    ) -> AsyncIterator[bytes]:
        """Stream a chat completion's raw SSE body, chunk by chunk."""
        body: Dict[str, Any] = {"messages": messages, "stream": True}
        if not _is_azure(self.chat_url):
            body["model"] = model or self.chat_model

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.post(
                    self.chat_url, json=body, headers=self._headers(self.chat_url)
                ) as resp:
                    if resp.status >= 400:
                        response_body = await resp.text()
                        raise UpstreamError(resp.status, "Chat stream failed", response_body)
                    async for chunk in resp.content.iter_any():
                        yield chunk
            except aiohttp.ClientError as e:
                raise UpstreamError(0, f"Network error: {str(e)}") from e
            except asyncio.TimeoutError as e:
                raise UpstreamError(504, "Upstream stream timed out") from e

    async def edit_image(
        self,
        images: List[str],
        prompt: str,
        model: Optional[str] = None,
        size: Optional[str] = None,
    ) -> Dict[str, Optional[str]]:
        """
        Generate one image from input images and a prompt.

        Returns:
            Dict with ``url`` and ``b64_json``; at least one is set.

        Raises:
            UpstreamError: On HTTP or network failure
        """
        body: Dict[str, Any] = {
            "image": images[0] if len(images) == 1 else images,
            "prompt": prompt,
            "n": 1,
        }
        if size:
            body["size"] = size
        if model or self.image_model:
            body["model"] = model or self.image_model

        data = await self._post_json(self.image_url, body)
        return extract_image_result(data)

    async def _post_json(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.post(url, json=body, headers=self._headers(url)) as resp:
                    response_body = await resp.text()

                    if resp.status >= 400:
                        raise UpstreamError(
                            resp.status,
                            f"Upstream call failed: {response_body[:500]}",
                            response_body,
                        )

                    try:
                        return json.loads(response_body) if response_body else {}
                    except json.JSONDecodeError as e:
                        raise UpstreamError(502, "Upstream returned invalid JSON", response_body) from e

            except aiohttp.ClientError as e:
                raise UpstreamError(0, f"Network error: {str(e)}") from e
            except asyncio.TimeoutError as e:
                raise UpstreamError(504, "Upstream request timed out") from e


def extract_image_result(data: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Pull the first image URL or base64 payload out of an images response."""
    entries = data.get("data")
    if not isinstance(entries, list):
        raise TaskExecutionError("IMAGE_RESULT_MISSING", "Image response has no data array")

    for entry in entries:
        if not isinstance(entry, dict):
            continue
        url = entry.get("url") or None
        b64 = entry.get("b64_json") or None
        if b64 and "base64," in b64:
            b64 = b64.split("base64,", 1)[1] or None
        if url or b64:
            return {"url": url, "b64_json": b64}

    raise TaskExecutionError("IMAGE_RESULT_MISSING", "Image response contains no url or b64_json")
