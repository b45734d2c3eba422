"""Consumer for streamed prompt generation.

The prompt endpoint streams server-sent events, each carrying a piece of a
JSON array of ``{"prompt": ...}`` objects. Models do not always return clean
JSON, so once the stream ends the accumulated text is parsed with
progressively looser strategies. Parsing never raises.
"""

import codecs
import json
import logging
import re
from typing import Any, AsyncIterable, Iterable, Iterator, List, Optional, Tuple, Union

DONE_SENTINEL = "[DONE]"
ERROR_PREFIX = "[ERROR]"

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n{2,}|\n(?=\d+[\.\)、])")


class PromptStreamResult:
    """Outcome of one consumed stream."""

    def __init__(
        self,
        prompts: List[str],
        raw_text: str,
        parse_mode: str,
        error: Optional[str] = None,
        done: bool = False,
    ):
        self.prompts = prompts
        self.raw_text = raw_text
        # json, fenced, array, paragraphs, raw or empty
        self.parse_mode = parse_mode
        self.error = error
        self.done = done

    @property
    def degraded(self) -> bool:
        return self.parse_mode in ("paragraphs", "raw", "empty")

    def to_dict(self) -> dict:
        return {
            "prompts": self.prompts,
            "raw_text": self.raw_text,
            "parse_mode": self.parse_mode,
            "error": self.error,
            "done": self.done,
        }


def iter_sse_data(lines: Iterable[str]) -> Iterator[str]:
    """Yield the payload of each ``data:`` line."""
    for line in lines:
        line = line.rstrip("\r")
        if not line.startswith("data:"):
            continue
        payload = line[5:]
        if payload.startswith(" "):
            payload = payload[1:]
        yield payload


def extract_delta(event: Any, current_text: str) -> Tuple[Optional[str], bool]:
    """
    Text an event adds to the buffer.

    Returns ``(text, replace)``; ``replace`` is True when the event carries a
    cumulative text that does not extend the current buffer.
    """
    if not isinstance(event, dict):
        return (event, False) if isinstance(event, str) else (None, False)

    choices = event.get("choices")
    if isinstance(choices, list) and choices:
        delta = choices[0].get("delta") if isinstance(choices[0], dict) else None
        content = delta.get("content") if isinstance(delta, dict) else None
        return (content, False) if isinstance(content, str) else (None, False)

    if isinstance(event.get("delta"), str):
        return event["delta"], False

    full_text = event.get("fullText")
    if isinstance(full_text, str):
        if full_text.startswith(current_text):
            return full_text[len(current_text):], False
        return full_text, True

    return None, False


class PromptStreamConsumer:
    """Accumulates a streamed prompt response and parses it at the end.

    Usage::

        consumer = PromptStreamConsumer(expected_count=4)
        async for chunk in response.content.iter_any():
            consumer.feed(chunk)
        result = consumer.finish()
    """

    def __init__(
        self,
        expected_count: int = 1,
        min_paragraph_length: int = 20,
        logger: Optional[logging.Logger] = None,
    ):
        self.expected_count = max(1, expected_count)
        self.min_paragraph_length = min_paragraph_length
        self.logger = logger or logging.getLogger(__name__)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._parts: List[str] = []
        self.error: Optional[str] = None
        self.done = False

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def feed(self, chunk: Union[bytes, str]) -> str:
        """Consume one network chunk. Returns the text it appended."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._pending += chunk

        *lines, self._pending = self._pending.split("\n")
        return "".join(self._handle_payload(p) for p in iter_sse_data(lines))

    def finish(self) -> PromptStreamResult:
        """Flush buffered input and parse everything received."""
        tail = self._decoder.decode(b"", final=True)
        remainder = self._pending + tail
        self._pending = ""
        for payload in iter_sse_data(remainder.split("\n")):
            self._handle_payload(payload)

        raw_text = self.text
        prompts, mode = parse_prompts(
            raw_text, self.expected_count, self.min_paragraph_length
        )
        if mode in ("paragraphs", "raw"):
            self.logger.warning(
                f"Prompt stream was not valid JSON, fell back to {mode} parsing"
            )
        return PromptStreamResult(
            prompts=prompts,
            raw_text=raw_text,
            parse_mode=mode,
            error=self.error,
            done=self.done,
        )

    async def consume(self, chunks: AsyncIterable[Union[bytes, str]]) -> PromptStreamResult:
        """Drain an async byte stream, e.g. ``response.content.iter_any()``."""
        async for chunk in chunks:
            self.feed(chunk)
            if self.done:
                break
        return self.finish()

    def _handle_payload(self, payload: str) -> str:
        if self.done:
            return ""
        stripped = payload.strip()
        if not stripped:
            return ""
        if stripped == DONE_SENTINEL:
            self.done = True
            return ""
        if stripped.startswith(ERROR_PREFIX):
            self.error = stripped[len(ERROR_PREFIX):].strip() or "stream error"
            return ""

        try:
            event = json.loads(stripped)
        except json.JSONDecodeError:
            self._parts.append(payload)
            return payload

        if isinstance(event, dict) and event.get("error"):
            self.error = str(event["error"])

        text, replace = extract_delta(event, self.text)
        if text is None:
            return ""
        if replace:
            self._parts = [text]
        else:
            self._parts.append(text)
        return text


def _prompts_from_json(value: Any) -> List[str]:
    if isinstance(value, dict):
        for key in ("prompts", "images", "items"):
            if isinstance(value.get(key), list):
                value = value[key]
                break
        else:
            value = [value]
    if not isinstance(value, list):
        return []

    prompts = []
    for item in value:
        if isinstance(item, dict):
            item = item.get("prompt")
        if isinstance(item, str) and item.strip():
            prompts.append(item.strip())
    return prompts


def _try_json(candidate: str) -> List[str]:
    try:
        return _prompts_from_json(json.loads(candidate))
    except (json.JSONDecodeError, TypeError, ValueError):
        return []


def parse_prompts(
    text: str, expected_count: int = 1, min_paragraph_length: int = 20
) -> Tuple[List[str], str]:
    """Recover prompt strings from model output.

    Tried in order: the whole text as JSON, the inside of a markdown code
    fence, the first ``[...]`` span, paragraph splitting, and finally the raw
    text repeated ``expected_count`` times.
    """
    trimmed = text.strip()
    if not trimmed:
        return [], "empty"

    prompts = _try_json(trimmed)
    if prompts:
        return prompts, "json"

    fence = _FENCE_RE.search(trimmed)
    if fence:
        prompts = _try_json(fence.group(1).strip())
        if prompts:
            return prompts, "fenced"

    array = _ARRAY_RE.search(trimmed)
    if array:
        prompts = _try_json(array.group(0))
        if prompts:
            return prompts, "array"

    segments = [s.strip() for s in _PARAGRAPH_SPLIT_RE.split(trimmed)]
    paragraphs = [s for s in segments if len(s) > min_paragraph_length]
    if paragraphs:
        return paragraphs, "paragraphs"

    return [trimmed] * max(1, expected_count), "raw"
