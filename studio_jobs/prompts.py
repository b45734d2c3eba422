"""Server side of the streaming prompt endpoint."""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from studio_jobs.streaming import DONE_SENTINEL, PromptStreamConsumer
from studio_jobs.upstream import UpstreamAIClient

_SYSTEM_PROMPT = (
    "You are an e-commerce visual prompt engineering expert. Return a strict JSON "
    "array where each item only has a prompt field. No explanations."
)


def prompt_image_count(blueprint: Union[str, Dict[str, Any]], image_count: Optional[int]) -> int:
    """Number of prompts to ask for, clamped to 1..15."""
    if image_count is None and isinstance(blueprint, dict):
        meta = blueprint.get("_ai_meta")
        if isinstance(meta, dict):
            image_count = meta.get("image_count")
        if image_count is None and isinstance(blueprint.get("images"), list):
            image_count = len(blueprint["images"])
    try:
        count = int(image_count or 1)
    except (TypeError, ValueError):
        count = 1
    return max(1, min(15, count))


def build_prompt_messages(
    blueprint: Union[str, Dict[str, Any]],
    image_count: int,
    language: str = "en",
    design_specs: Optional[Union[str, Dict[str, Any]]] = None,
) -> List[Dict[str, Any]]:
    blueprint_text = blueprint if isinstance(blueprint, str) else json.dumps(blueprint, indent=2, ensure_ascii=False)
    if design_specs is not None and not isinstance(design_specs, str):
        design_specs = json.dumps(design_specs, indent=2, ensure_ascii=False)

    user_prompt = f"""
Generate exactly {image_count} prompt objects with this schema:
[{{"prompt":"Subject: ... Composition: ... Background: ... Lighting: ... Color scheme: ... Material details: ... Text layout: ... Atmosphere: ... Style: ... Quality: ..."}}]

Rules:
- Preserve product identity and material realism.
- Each prompt must represent a different scene/angle/composition.
- Keep language for in-image text consistent with output language: {language}.
- If language is "none", force pure-visual output and set text layout as no-text.
- Return JSON array only.

Analysis blueprint:
{blueprint_text}

Edited design specs (if provided):
{design_specs or "(none)"}
"""
    return [
        {"role": "system", "content": _SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]


def sse_event(data: Union[str, Dict[str, Any]]) -> bytes:
    if not isinstance(data, str):
        data = json.dumps(data, ensure_ascii=False)
    return f"data: {data}\n\n".encode("utf-8")


async def stream_prompt_events(
    upstream: UpstreamAIClient,
    messages: List[Dict[str, Any]],
    logger: Optional[logging.Logger] = None,
) -> AsyncIterator[bytes]:
    """
    Relay an upstream chat stream as ``{"fullText": ...}`` events.

    Always ends with the ``[DONE]`` sentinel. An upstream failure is reported
    as an event carrying ``error`` rather than by breaking the response.
    """
    logger = logger or logging.getLogger(__name__)
    consumer = PromptStreamConsumer(logger=logger)
    yield sse_event({"fullText": ""})
    try:
        async for chunk in upstream.stream_chat(messages):
            if consumer.feed(chunk):
                yield sse_event({"fullText": consumer.text})
            if consumer.done:
                break
    except Exception as e:
        logger.error(f"Prompt stream failed: {e}", exc_info=True)
        yield sse_event({"fullText": consumer.text, "error": str(e)})
    yield sse_event(DONE_SENTINEL)
